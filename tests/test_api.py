import unittest
from unittest.mock import patch

from fastapi import HTTPException
from pydantic import ValidationError as PydanticValidationError

from apis.billing import (
    AddonPurchaseRequest,
    CreateSubscriptionRequest,
    PaymentEventRequest,
    RedeemCodeRequest,
    create_subscription,
    list_my_addons,
    payment_event,
    purchase_addon,
    redeem_code,
    subscription_overview,
)
from apis.jobs import TriggerJobRequest, trigger_job
from apis.platform import (
    ExchangeRateRequest,
    PartnershipCodeRequest,
    currency_settings,
    currency_update_rate,
    partnership_code_create,
)
from core.db import DB
from core.payment_gateway import MockGateway
from core.pricing_service import seed_default_catalog

PASTOR = {"tenant_id": "church-api", "username": "pastor", "role": "user"}
ADMIN = {"tenant_id": "", "username": "ops", "role": "admin"}


class BillingApiTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        DB.create_tables()
        session = DB.get_session()
        try:
            seed_default_catalog(session)
        finally:
            session.close()

    async def asyncTearDown(self):
        DB.drop_tables()

    async def test_create_subscription_once_per_tenant(self):
        with self.assertRaises(HTTPException) as ctx:
            await subscription_overview(current_user=PASTOR)
        self.assertEqual(ctx.exception.status_code, 404)

        payload = CreateSubscriptionRequest(tier_name="TIER_1", authorization_code="AUTH_OK")
        result = await create_subscription(payload, current_user=PASTOR)
        self.assertEqual(result.get("code"), 0)
        self.assertEqual(result["data"]["tier"], "TIER_1")
        self.assertEqual(result["data"]["status"], "ACTIVE")

        with self.assertRaises(HTTPException) as ctx:
            await create_subscription(payload, current_user=PASTOR)
        self.assertEqual(ctx.exception.status_code, 409)

    async def test_addon_purchase_activated_by_webhook(self):
        await create_subscription(CreateSubscriptionRequest(tier_name="TIER_1", authorization_code="AUTH_OK"), current_user=PASTOR)
        gateway = MockGateway()
        with patch("apis.billing.get_payment_gateway", return_value=gateway):
            result = await purchase_addon(AddonPurchaseRequest(addon_name="STORAGE_5GB"), current_user=PASTOR)
        reference = result["data"]["reference"]
        self.assertEqual(gateway.calls[0][0], "authorize")

        event = await payment_event(PaymentEventRequest(reference=reference, success=True, transaction_id="txn-api"))
        self.assertEqual(event["data"]["status"], "COMPLETED")

        addons = await list_my_addons(current_user=PASTOR)
        self.assertEqual([x["status"] for x in addons["data"]["addons"]], ["ACTIVE"])

        with self.assertRaises(HTTPException) as ctx:
            await payment_event(PaymentEventRequest(reference="ADDON-UNKNOWN", success=True))
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_platform_endpoints_require_admin(self):
        with self.assertRaises(HTTPException) as ctx:
            await currency_settings(current_user=PASTOR)
        self.assertEqual(ctx.exception.status_code, 403)
        with self.assertRaises(HTTPException) as ctx:
            await trigger_job(TriggerJobRequest(job_name="subscription_lifecycle"), current_user=PASTOR)
        self.assertEqual(ctx.exception.status_code, 403)

    async def test_exchange_rate_version_check(self):
        current = await currency_settings(current_user=ADMIN)
        version = current["data"]["version"]

        updated = await currency_update_rate(
            ExchangeRateRequest(exchange_rate="13.5", expected_version=version), current_user=ADMIN
        )
        self.assertEqual(updated["data"]["exchange_rate"], "13.5000")
        self.assertEqual(updated["data"]["last_updated_by"], "ops")

        with self.assertRaises(HTTPException) as ctx:
            await currency_update_rate(ExchangeRateRequest(exchange_rate="14", expected_version=version), current_user=ADMIN)
        self.assertEqual(ctx.exception.status_code, 409)

        with self.assertRaises(PydanticValidationError):
            ExchangeRateRequest(exchange_rate="0")

    async def test_partnership_code_redeem(self):
        await create_subscription(CreateSubscriptionRequest(tier_name="TIER_1"), current_user=PASTOR)
        await partnership_code_create(PartnershipCodeRequest(code="easter", grace_period_days=21), current_user=ADMIN)

        result = await redeem_code(RedeemCodeRequest(code="EASTER"), current_user=PASTOR)
        self.assertEqual(result["data"]["grace_period_days"], 21)
        with self.assertRaises(HTTPException) as ctx:
            await redeem_code(RedeemCodeRequest(code="EASTER"), current_user=PASTOR)
        self.assertEqual(ctx.exception.status_code, 409)

    async def test_unknown_job_trigger(self):
        with self.assertRaises(HTTPException) as ctx:
            await trigger_job(TriggerJobRequest(job_name="nope"), current_user=ADMIN)
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
