import unittest
from datetime import date, datetime, timedelta
from types import SimpleNamespace

from core.errors import InvalidTransition
from core.lifecycle import (
    LifecycleAction,
    RetentionPolicy,
    deletion_urgency,
    ensure_transition,
    is_eligible_for_deletion,
    is_in_grace_period,
    is_service_active,
    needs_deletion_warning,
    next_lifecycle_action,
    retention_end_date,
    should_suspend,
)
from core.models.tenant_subscription import SubscriptionStatus as S

DAY0 = date(2024, 3, 1)


def make_sub(**fields):
    data = dict(
        status=S.ACTIVE,
        next_billing_date=DAY0,
        auto_renew=True,
        grace_period_days=0,
        free_months_remaining=0,
        suspended_at=None,
        data_retention_end_date=None,
        deletion_warning_sent_at=None,
        deletion_eligible_at=None,
        retention_extension_days=0,
    )
    data.update(fields)
    return SimpleNamespace(**data)


class TransitionTestCase(unittest.TestCase):
    def test_allowed_transitions(self):
        ensure_transition(S.ACTIVE, S.PAST_DUE)
        ensure_transition(S.PAST_DUE, S.ACTIVE)
        ensure_transition(S.PAST_DUE, S.SUSPENDED)
        ensure_transition(S.SUSPENDED, S.ACTIVE)
        ensure_transition(S.ACTIVE, S.CANCELED)

    def test_rejected_transitions(self):
        for current, target in [
            (S.ACTIVE, S.SUSPENDED),
            (S.SUSPENDED, S.PAST_DUE),
            (S.SUSPENDED, S.CANCELED),
            (S.CANCELED, S.ACTIVE),
            (S.PAST_DUE, S.CANCELED),
        ]:
            with self.assertRaises(InvalidTransition) as ctx:
                ensure_transition(current, target)
            self.assertEqual(ctx.exception.current, current.value)
            self.assertEqual(ctx.exception.target, target.value)


class GracePeriodTestCase(unittest.TestCase):
    def test_grace_window_is_offset_from_billing_date(self):
        sub = make_sub(status=S.PAST_DUE, grace_period_days=5)
        self.assertTrue(is_in_grace_period(sub, DAY0 + timedelta(days=3)))
        self.assertTrue(is_in_grace_period(sub, DAY0 + timedelta(days=4)))
        self.assertFalse(is_in_grace_period(sub, DAY0 + timedelta(days=5)))
        self.assertTrue(should_suspend(sub, DAY0 + timedelta(days=6)))

    def test_zero_grace_suspends_immediately(self):
        sub = make_sub(status=S.PAST_DUE)
        self.assertFalse(is_in_grace_period(sub, DAY0))
        self.assertTrue(should_suspend(sub, DAY0))

    def test_only_past_due_is_in_grace(self):
        sub = make_sub(status=S.ACTIVE, grace_period_days=30)
        self.assertFalse(is_in_grace_period(sub, DAY0))
        self.assertFalse(should_suspend(sub, DAY0))

    def test_service_active(self):
        self.assertTrue(is_service_active(make_sub(), DAY0))
        self.assertTrue(is_service_active(make_sub(status=S.PAST_DUE, grace_period_days=2), DAY0))
        self.assertFalse(is_service_active(make_sub(status=S.SUSPENDED), DAY0))
        canceled = make_sub(status=S.CANCELED, next_billing_date=DAY0 + timedelta(days=10))
        self.assertTrue(is_service_active(canceled, DAY0))
        self.assertFalse(is_service_active(canceled, DAY0 + timedelta(days=10)))


class RetentionTestCase(unittest.TestCase):
    def test_retention_end_rebases_from_suspended_at(self):
        suspended_at = datetime(2024, 3, 7, 2, 0)
        self.assertEqual(retention_end_date(suspended_at, 0), date(2024, 6, 5))
        self.assertEqual(retention_end_date(suspended_at, 15), date(2024, 3, 7) + timedelta(days=105))

    def test_warning_and_deletion_eligibility(self):
        policy = RetentionPolicy(retention_days=90, warning_days=7, cooling_days=7)
        end = date(2024, 6, 5)
        sub = make_sub(status=S.SUSPENDED, data_retention_end_date=end)
        self.assertFalse(needs_deletion_warning(sub, end - timedelta(days=8), policy))
        self.assertTrue(needs_deletion_warning(sub, end - timedelta(days=7), policy))

        now = datetime(2024, 6, 6, 3, 0)
        # 从未发送预警，不能进入删除
        self.assertFalse(is_eligible_for_deletion(sub, now.date(), now, policy))
        sub.deletion_warning_sent_at = now - timedelta(days=3)
        self.assertFalse(is_eligible_for_deletion(sub, now.date(), now, policy))
        sub.deletion_warning_sent_at = now - timedelta(days=7)
        self.assertTrue(is_eligible_for_deletion(sub, now.date(), now, policy))
        # 截止日当天还不能删除
        self.assertFalse(is_eligible_for_deletion(sub, end, now, policy))

    def test_urgency_buckets(self):
        self.assertEqual(deletion_urgency(0), "OVERDUE")
        self.assertEqual(deletion_urgency(3), "CRITICAL")
        self.assertEqual(deletion_urgency(7), "HIGH")
        self.assertEqual(deletion_urgency(14), "MEDIUM")
        self.assertEqual(deletion_urgency(30), "LOW")


class NextActionTestCase(unittest.TestCase):
    def setUp(self):
        self.now = datetime(2024, 3, 1, 2, 0)

    def test_due_subscription_is_charged_once(self):
        sub = make_sub()
        self.assertEqual(next_lifecycle_action(sub, DAY0, self.now), LifecycleAction.CHARGE)
        self.assertIsNone(next_lifecycle_action(sub, DAY0, self.now, done=[LifecycleAction.CHARGE]))

    def test_not_yet_due(self):
        self.assertIsNone(next_lifecycle_action(make_sub(), DAY0 - timedelta(days=1), self.now))

    def test_promotional_credit_preferred_over_charge(self):
        sub = make_sub(free_months_remaining=2)
        self.assertEqual(next_lifecycle_action(sub, DAY0, self.now), LifecycleAction.CONSUME_CREDIT)

    def test_non_renewing_subscription_expires(self):
        sub = make_sub(auto_renew=False, free_months_remaining=3)
        self.assertEqual(next_lifecycle_action(sub, DAY0, self.now), LifecycleAction.EXPIRE)

    def test_failed_charge_then_suspend_in_same_run(self):
        sub = make_sub(status=S.PAST_DUE)
        self.assertEqual(
            next_lifecycle_action(sub, DAY0, self.now, done=[LifecycleAction.CHARGE]),
            LifecycleAction.SUSPEND,
        )

    def test_suspension_timer_with_grace(self):
        sub = make_sub(status=S.PAST_DUE, grace_period_days=5)
        day3 = DAY0 + timedelta(days=3)
        self.assertIsNone(next_lifecycle_action(sub, day3, self.now, done=[LifecycleAction.CHARGE]))
        day6 = DAY0 + timedelta(days=6)
        self.assertEqual(
            next_lifecycle_action(sub, day6, self.now, done=[LifecycleAction.CHARGE]),
            LifecycleAction.SUSPEND,
        )

    def test_suspended_sequence(self):
        end = date(2024, 6, 5)
        sub = make_sub(status=S.SUSPENDED, data_retention_end_date=end)
        warn_day = end - timedelta(days=7)
        now = datetime.combine(warn_day, datetime.min.time())
        self.assertEqual(next_lifecycle_action(sub, warn_day, now), LifecycleAction.SEND_DELETION_WARNING)
        sub.deletion_warning_sent_at = now
        self.assertIsNone(next_lifecycle_action(sub, warn_day, now))

        later = datetime(2024, 6, 20)
        self.assertEqual(next_lifecycle_action(sub, later.date(), later), LifecycleAction.FLAG_FOR_DELETION)
        sub.deletion_eligible_at = later
        self.assertIsNone(next_lifecycle_action(sub, later.date(), later))


if __name__ == "__main__":
    unittest.main()
