import unittest
from datetime import date
from decimal import Decimal

from billing_case import BillingTestCase
from core import proration_service
from core.billing_service import handle_payment_event
from core.currency_service import get_rate_snapshot
from core.errors import ConcurrencyConflict, NotFoundError, PaymentFailure, ValidationError
from core.models.billing_payment import PaymentStatus
from core.models.tenant_subscription import SubscriptionStatus as S
from core.models.tier_change import TierChangeRecord, TierChangeType
from core.payment_gateway import MockGateway
from core.pricing_service import get_interval_by_name, get_tier_by_name

# 2024-04-01 → 2024-05-01 共 30 天
PERIOD_START = date(2024, 4, 1)
MID_PERIOD = date(2024, 4, 16)


class ProrationTestCase(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.make_flat_tier("BASIC", Decimal("10"))
        self.make_flat_tier("PLUS", Decimal("20"))
        self.sub = self.make_subscription(tier="BASIC", start=PERIOD_START)
        self.gateway = MockGateway()

    def test_mid_period_upgrade_quote(self):
        quote = proration_service.calculate_tier_change(
            self.sub,
            get_tier_by_name(self.session, "PLUS"),
            self.sub.interval,
            MID_PERIOD,
            get_rate_snapshot(self.session),
        )
        self.assertEqual(quote.period_length_days, 30)
        self.assertEqual(quote.days_used, 15)
        self.assertEqual(quote.days_remaining, 15)
        self.assertEqual(quote.unused_credit_usd, Decimal("5.00"))
        self.assertEqual(quote.prorated_charge_usd, Decimal("10.00"))
        self.assertEqual(quote.net_charge_usd, Decimal("5.00"))
        self.assertEqual(quote.net_charge_display, Decimal("60.00"))
        self.assertEqual(quote.change_type, TierChangeType.TIER_UPGRADE)

    def test_days_are_clamped_to_period(self):
        snapshot = get_rate_snapshot(self.session)
        plus = get_tier_by_name(self.session, "PLUS")
        before = proration_service.calculate_tier_change(self.sub, plus, self.sub.interval, date(2024, 3, 1), snapshot)
        self.assertEqual((before.days_used, before.days_remaining), (0, 30))
        after = proration_service.calculate_tier_change(self.sub, plus, self.sub.interval, date(2024, 6, 1), snapshot)
        self.assertEqual((after.days_used, after.days_remaining), (30, 0))
        self.assertEqual(after.net_charge_usd, Decimal("0.00"))

    def test_same_plan_is_rejected(self):
        with self.assertRaises(ValidationError):
            proration_service.preview_tier_change(self.session, self.sub.tenant_id, new_tier_name="BASIC", today=MID_PERIOD)

    def test_member_count_must_fit_new_tier(self):
        with self.assertRaises(ValidationError):
            proration_service.preview_tier_change(
                self.session, self.sub.tenant_id, new_tier_name="TIER_1", member_count=450, today=MID_PERIOD
            )

    def test_upgrade_is_applied_after_payment_event(self):
        result = proration_service.request_tier_change(
            self.session, self.sub.tenant_id, self.gateway, new_tier_name="PLUS", requested_by="pastor", today=MID_PERIOD
        )
        self.assertEqual(result["status"], "PENDING")
        self.assertTrue(result["authorization_url"].startswith("mockpay://"))
        kind, tenant_id, amount, currency, reference = self.gateway.calls[0]
        self.assertEqual((kind, amount, currency), ("authorize", Decimal("60.00"), "GHS"))
        self.assertEqual(self.sub.tier.tier_name, "BASIC")

        handle_payment_event(self.session, result["reference"], success=True, transaction_id="txn-9")
        self.assertEqual(self.sub.tier.tier_name, "PLUS")
        self.assertEqual(self.sub.next_billing_date, date(2024, 5, 1))

        record = self.session.query(TierChangeRecord).filter(TierChangeRecord.payment_reference == reference).first()
        self.assertEqual(record.payment_status, PaymentStatus.COMPLETED)
        self.assertIsNone(record.pending_tenant_id)

    def test_at_most_one_pending_change(self):
        proration_service.request_tier_change(self.session, self.sub.tenant_id, self.gateway, new_tier_name="PLUS", today=MID_PERIOD)
        with self.assertRaises(ConcurrencyConflict):
            proration_service.request_tier_change(
                self.session, self.sub.tenant_id, self.gateway, new_interval_name="ANNUAL", today=MID_PERIOD
            )

        proration_service.cancel_pending_tier_change(self.session, self.sub.tenant_id, canceled_by="pastor")
        self.assertIsNone(proration_service.get_pending_tier_change(self.session, self.sub.tenant_id))
        with self.assertRaises(NotFoundError):
            proration_service.cancel_pending_tier_change(self.session, self.sub.tenant_id)
        proration_service.request_tier_change(self.session, self.sub.tenant_id, self.gateway, new_tier_name="PLUS", today=MID_PERIOD)

    def test_finalize_is_idempotent(self):
        result = proration_service.request_tier_change(
            self.session, self.sub.tenant_id, self.gateway, new_tier_name="PLUS", today=MID_PERIOD
        )
        reference = result["reference"]
        proration_service.finalize_tier_change(self.session, reference, success=False, reason="declined")
        record = proration_service.finalize_tier_change(self.session, reference, success=True, transaction_id="late")
        self.assertEqual(record.payment_status, PaymentStatus.FAILED)
        self.assertEqual(self.sub.tier.tier_name, "BASIC")

    def test_payment_after_cancel_is_owed_back(self):
        result = proration_service.request_tier_change(
            self.session, self.sub.tenant_id, self.gateway, new_tier_name="PLUS", today=MID_PERIOD
        )
        proration_service.cancel_pending_tier_change(self.session, self.sub.tenant_id, canceled_by="pastor")

        event = handle_payment_event(self.session, result["reference"], success=True, transaction_id="txn-paid")
        self.assertEqual(event["status"], "FAILED")
        self.assertEqual(self.sub.tier.tier_name, "BASIC")
        record = self.session.query(TierChangeRecord).filter(TierChangeRecord.payment_reference == result["reference"]).one()
        self.assertEqual(record.gateway_transaction_id, "txn-paid")

        handle_payment_event(self.session, result["reference"], success=True, transaction_id="txn-paid")
        owed = proration_service.list_credits_owed(self.session)
        self.assertEqual([(x["reference"], x["credit_owed_usd"]) for x in owed], [(result["reference"], "5.00")])

    def test_downgrade_applies_immediately_and_records_credit(self):
        plus_sub = self.make_subscription("church-2", tier="PLUS", start=PERIOD_START)
        result = proration_service.request_tier_change(
            self.session, plus_sub.tenant_id, self.gateway, new_tier_name="BASIC", today=MID_PERIOD
        )
        self.assertEqual(result["status"], "COMPLETED")
        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(plus_sub.tier.tier_name, "BASIC")

        owed = proration_service.list_credits_owed(self.session)
        self.assertEqual(len(owed), 1)
        self.assertEqual(owed[0]["credit_owed_usd"], "5.00")
        self.assertEqual(owed[0]["net_charge_usd"], "-5.00")

    def test_interval_change_takes_effect_at_next_renewal(self):
        result = proration_service.request_tier_change(
            self.session, self.sub.tenant_id, self.gateway, new_interval_name="ANNUAL", today=MID_PERIOD
        )
        # 平价档位的年付月均价与月付相同，差额为 0，直接生效
        self.assertEqual(result["status"], "COMPLETED")
        self.assertEqual(result["quote"]["change_type"], TierChangeType.INTERVAL_CHANGE.value)
        self.assertEqual(self.sub.interval.name, "ANNUAL")
        self.assertEqual(self.sub.next_billing_date, date(2024, 5, 1))

    def test_gateway_failure_marks_change_failed(self):
        gateway = MockGateway(fail_authorize=True)
        with self.assertRaises(PaymentFailure):
            proration_service.request_tier_change(
                self.session, self.sub.tenant_id, gateway, new_tier_name="PLUS", today=MID_PERIOD
            )
        self.assertIsNone(proration_service.get_pending_tier_change(self.session, self.sub.tenant_id))
        rows = proration_service.list_tier_changes(self.session, tenant_id=self.sub.tenant_id)
        self.assertEqual(rows[0]["payment_status"], "FAILED")

    def test_only_active_subscription_can_change(self):
        self.sub.status = S.PAST_DUE
        self.session.commit()
        with self.assertRaises(ValidationError):
            proration_service.request_tier_change(
                self.session, self.sub.tenant_id, self.gateway, new_tier_name="PLUS", today=MID_PERIOD
            )


if __name__ == "__main__":
    unittest.main()
