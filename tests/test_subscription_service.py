import unittest
from datetime import date, datetime, timedelta

from billing_case import BillingTestCase
from core import subscription_service
from core.errors import ConcurrencyConflict, InvalidTransition, NotFoundError, ValidationError
from core.lifecycle import RetentionPolicy
from core.models.tenant_notice import TenantNotice
from core.models.tenant_subscription import SubscriptionStatus as S


class SubscriptionServiceTestCase(BillingTestCase):
    def test_create_subscription_sets_first_period(self):
        sub = self.make_subscription(start=date(2024, 1, 31), interval="QUARTERLY")
        self.assertEqual(sub.status, S.ACTIVE)
        self.assertEqual(sub.current_period_start, date(2024, 1, 31))
        self.assertEqual(sub.current_period_end, date(2024, 4, 30))
        self.assertEqual(sub.next_billing_date, date(2024, 4, 30))
        self.assertEqual(sub.grace_period_days, 0)
        self.assertTrue(sub.auto_renew)

    def test_one_subscription_per_tenant(self):
        self.make_subscription()
        with self.assertRaises(ConcurrencyConflict):
            self.make_subscription()
        with self.assertRaises(NotFoundError):
            subscription_service.get_subscription(self.session, "nobody")

    def test_renewal_advances_from_billing_date(self):
        sub = self.make_subscription(start=date(2024, 1, 1))
        subscription_service.record_payment_failure(self.session, sub, reason="card declined")
        self.assertEqual(sub.status, S.PAST_DUE)
        self.assertEqual(sub.failed_payment_attempts, 1)
        self.assertEqual(sub.last_failure_reason, "card declined")

        subscription_service.apply_successful_renewal(self.session, sub, transaction_id="txn-1")
        self.assertEqual(sub.status, S.ACTIVE)
        self.assertEqual(sub.failed_payment_attempts, 0)
        self.assertEqual(sub.current_period_start, date(2024, 2, 1))
        self.assertEqual(sub.next_billing_date, date(2024, 3, 1))

    def test_promotional_credit_consumption(self):
        sub = self.make_subscription(start=date(2024, 1, 1), interval="ANNUAL", free_months_remaining=1)
        subscription_service.consume_promotional_credit(self.session, sub)
        self.assertEqual(sub.free_months_remaining, 0)
        self.assertEqual(sub.next_billing_date, date(2025, 2, 1))
        with self.assertRaises(ValidationError):
            subscription_service.consume_promotional_credit(self.session, sub)

    def test_suspend_requires_past_due(self):
        sub = self.make_subscription()
        with self.assertRaises(InvalidTransition):
            subscription_service.suspend_subscription(self.session, sub)

    def test_suspend_sets_retention_window(self):
        sub = self.make_subscription(status=S.PAST_DUE)
        suspended_at = datetime(2024, 3, 7, 2, 0)
        subscription_service.suspend_subscription(self.session, sub, now=suspended_at)
        self.assertEqual(sub.status, S.SUSPENDED)
        self.assertEqual(sub.data_retention_end_date, date(2024, 3, 7) + timedelta(days=90))

    def test_retention_extension_rebases_from_suspended_at(self):
        sub = self.make_subscription(status=S.PAST_DUE)
        suspended_at = datetime(2024, 3, 7, 2, 0)
        subscription_service.suspend_subscription(self.session, sub, now=suspended_at)

        subscription_service.extend_retention(self.session, sub, 15, note="教会申请", extended_by="ops", today=date(2024, 3, 7))
        self.assertEqual(sub.data_retention_end_date, date(2024, 3, 7) + timedelta(days=105))
        subscription_service.extend_retention(self.session, sub, 5, extended_by="ops", today=date(2024, 3, 8))
        self.assertEqual(sub.retention_extension_days, 20)
        self.assertEqual(sub.data_retention_end_date, date(2024, 3, 7) + timedelta(days=110))
        self.assertIn("+15d ops", sub.retention_extension_note)

        with self.assertRaises(ValidationError):
            subscription_service.extend_retention(self.session, sub, 0)

    def test_extension_clears_warning_when_new_warning_date_is_later(self):
        policy = RetentionPolicy()
        sub = self.make_subscription(status=S.PAST_DUE)
        subscription_service.suspend_subscription(self.session, sub, now=datetime(2024, 3, 1))
        warned_at = datetime(2024, 5, 24)
        subscription_service.mark_deletion_warning_sent(self.session, sub, now=warned_at)
        self.assertEqual(sub.deletion_warning_sent_at, warned_at)

        subscription_service.extend_retention(self.session, sub, 30, today=date(2024, 5, 25), policy=policy)
        self.assertIsNone(sub.deletion_warning_sent_at)

    def test_deletion_flag_is_monotonic(self):
        sub = self.make_subscription(status=S.PAST_DUE)
        subscription_service.suspend_subscription(self.session, sub, now=datetime(2024, 3, 1))
        first = datetime(2024, 6, 15)
        subscription_service.flag_for_deletion(self.session, sub, now=first)
        subscription_service.flag_for_deletion(self.session, sub, now=first + timedelta(days=1))
        self.assertEqual(sub.deletion_eligible_at, first)
        notices = self.session.query(TenantNotice).filter(TenantNotice.template == "DELETION_ELIGIBLE").count()
        self.assertEqual(notices, 1)

    def test_reactivation_clears_retention_state(self):
        sub = self.make_subscription(status=S.PAST_DUE, failed_payment_attempts=3)
        subscription_service.suspend_subscription(self.session, sub, now=datetime(2024, 3, 1))
        subscription_service.extend_retention(self.session, sub, 10, today=date(2024, 3, 2))
        subscription_service.reactivate_subscription(self.session, sub, reactivated_by="ops", today=date(2024, 4, 10))

        self.assertEqual(sub.status, S.ACTIVE)
        self.assertIsNone(sub.suspended_at)
        self.assertIsNone(sub.data_retention_end_date)
        self.assertIsNone(sub.deletion_warning_sent_at)
        self.assertEqual(sub.retention_extension_days, 0)
        self.assertEqual(sub.failed_payment_attempts, 0)
        self.assertEqual(sub.next_billing_date, date(2024, 5, 10))

    def test_cancel_keeps_service_until_period_end(self):
        sub = self.make_subscription(start=date(2024, 1, 1))
        subscription_service.cancel_subscription(self.session, sub, reason="合并到总会")
        self.assertEqual(sub.status, S.CANCELED)
        self.assertFalse(sub.auto_renew)
        data = subscription_service.subscription_to_dict(sub, today=date(2024, 1, 20))
        self.assertTrue(data["service_active"])
        with self.assertRaises(InvalidTransition):
            subscription_service.reactivate_subscription(self.session, sub)
        with self.assertRaises(ValidationError):
            subscription_service.set_auto_renew(self.session, sub, True)

    def test_grace_grant_takes_larger_value(self):
        sub = self.make_subscription()
        subscription_service.grant_grace_period(self.session, sub, 14)
        subscription_service.grant_grace_period(self.session, sub, 7)
        subscription_service.grant_grace_period(self.session, sub, 14)
        self.assertEqual(sub.grace_period_days, 14)
        with self.assertRaises(ValidationError):
            subscription_service.grant_grace_period(self.session, sub, -1)

    def test_promotional_credits_grant_and_revoke(self):
        sub = self.make_subscription()
        subscription_service.grant_promotional_credits(self.session, sub, 3, note="新教会", granted_by="ops")
        subscription_service.grant_promotional_credits(self.session, sub, 2, granted_by="ops")
        self.assertEqual(sub.free_months_remaining, 5)
        subscription_service.revoke_promotional_credits(self.session, sub, revoked_by="ops")
        self.assertEqual(sub.free_months_remaining, 0)

    def test_payment_method_update(self):
        sub = self.make_subscription(auth=None)
        subscription_service.update_payment_method(self.session, sub, "AUTH_NEW", card_last4="123456", card_brand="visa")
        self.assertEqual(sub.gateway_authorization_code, "AUTH_NEW")
        self.assertEqual(sub.card_last4, "3456")
        with self.assertRaises(ValidationError):
            subscription_service.update_payment_method(self.session, sub, " ")

    def test_pending_deletions_and_due_list(self):
        self.make_subscription("church-a", start=date(2024, 1, 1))
        b = self.make_subscription("church-b", start=date(2024, 1, 1), status=S.PAST_DUE)
        subscription_service.suspend_subscription(self.session, b, now=datetime(2024, 2, 10))

        rows = subscription_service.list_pending_deletions(self.session, today=date(2024, 5, 8))
        self.assertEqual([x["tenant_id"] for x in rows], ["church-b"])
        self.assertEqual(rows[0]["days_until_deletion"], 2)
        self.assertEqual(rows[0]["urgency"], "CRITICAL")

        due = subscription_service.due_within(self.session, days=3, today=date(2024, 1, 30))
        self.assertEqual([x.tenant_id for x in due], ["church-a"])


if __name__ == "__main__":
    unittest.main()
