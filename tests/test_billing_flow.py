import unittest
from datetime import date
from decimal import Decimal

from billing_case import BillingTestCase
from core.billing_service import (
    charge_renewal,
    handle_payment_event,
    list_payments,
    retry_failed_payment,
    revenue_summary,
)
from core.currency_service import update_exchange_rate
from core.errors import NotFoundError, ValidationError
from core.models.billing_payment import PaymentStatus, PaymentType
from core.models.tenant_notice import TenantNotice
from core.models.tenant_subscription import SubscriptionStatus as S
from core.payment_gateway import MockGateway


class BillingFlowTestCase(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.sub = self.make_subscription(start=date(2024, 1, 1))

    def test_successful_renewal_charges_display_currency(self):
        gateway = MockGateway()
        payment = charge_renewal(self.session, self.sub, gateway)
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(payment.payment_type, PaymentType.RENEWAL)
        self.assertEqual(payment.amount_usd, Decimal("5.99"))
        self.assertEqual(payment.amount_display, Decimal("71.88"))
        self.assertEqual(gateway.calls[0][:4], ("charge", "AUTH_OK", Decimal("71.88"), "GHS"))
        self.assertEqual(self.sub.next_billing_date, date(2024, 3, 1))
        notice = self.session.query(TenantNotice).filter(TenantNotice.template == "RENEWAL_SUCCEEDED").first()
        self.assertIsNotNone(notice)

    def test_rate_change_applies_to_next_charge(self):
        update_exchange_rate(self.session, "15", updated_by="ops")
        payment = charge_renewal(self.session, self.sub, MockGateway())
        self.assertEqual(payment.amount_display, Decimal("89.85"))
        self.assertEqual(payment.exchange_rate, Decimal("15.0000"))

    def test_declined_charge_moves_to_past_due(self):
        payment = charge_renewal(self.session, self.sub, MockGateway(charge_succeeds=False, decline_message="insufficient funds"))
        self.assertEqual(payment.status, PaymentStatus.FAILED)
        self.assertEqual(payment.failure_reason, "insufficient funds")
        self.assertEqual(self.sub.status, S.PAST_DUE)
        self.assertEqual(self.sub.failed_payment_attempts, 1)
        self.assertEqual(self.sub.next_billing_date, date(2024, 2, 1))

    def test_missing_payment_method_fails_without_gateway_call(self):
        self.sub.gateway_authorization_code = None
        self.session.commit()
        gateway = MockGateway()
        payment = charge_renewal(self.session, self.sub, gateway)
        self.assertEqual(payment.status, PaymentStatus.FAILED)
        self.assertEqual(gateway.calls, [])
        self.assertEqual(self.sub.status, S.PAST_DUE)

    def test_retry_after_failure_restores_active(self):
        with self.assertRaises(ValidationError):
            retry_failed_payment(self.session, self.sub.tenant_id, MockGateway())

        charge_renewal(self.session, self.sub, MockGateway(charge_succeeds=False))
        charge_renewal(self.session, self.sub, MockGateway(charge_succeeds=False))
        self.assertEqual(self.sub.failed_payment_attempts, 2)

        payment = retry_failed_payment(self.session, self.sub.tenant_id, MockGateway())
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.sub.status, S.ACTIVE)
        self.assertEqual(self.sub.failed_payment_attempts, 0)
        self.assertEqual(self.sub.next_billing_date, date(2024, 3, 1))

    def test_payment_event_for_unknown_reference(self):
        with self.assertRaises(NotFoundError):
            handle_payment_event(self.session, "RENEWAL-DOESNOTEXIST", success=True)

    def test_listing_and_revenue(self):
        charge_renewal(self.session, self.sub, MockGateway())
        charge_renewal(self.session, self.sub, MockGateway(charge_succeeds=False))
        rows = list_payments(self.session, tenant_id=self.sub.tenant_id)
        self.assertEqual(len(rows), 2)
        self.assertEqual(len(list_payments(self.session, status="failed")), 1)
        summary = revenue_summary(self.session)
        self.assertEqual(summary["total_usd"], "5.99")
        self.assertEqual(summary["by_type"], {"RENEWAL": "5.99"})
        self.assertEqual(summary["count"], 1)


if __name__ == "__main__":
    unittest.main()
