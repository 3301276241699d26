import unittest
from decimal import Decimal

from billing_case import BillingTestCase
from core.currency_service import (
    RateSnapshot,
    format_dual_currency,
    get_current_settings,
    get_exchange_rate_stats,
    get_rate_history,
    get_rate_snapshot,
    update_display_preferences,
    update_exchange_rate,
)
from core.errors import ConcurrencyConflict, ValidationError


class CurrencyServiceTestCase(BillingTestCase):
    def test_default_settings_created_lazily(self):
        settings = get_current_settings(self.session)
        self.assertEqual(settings.base_currency, "USD")
        self.assertEqual(settings.display_currency, "GHS")
        self.assertEqual(Decimal(str(settings.exchange_rate)), Decimal("12.0000"))
        self.assertEqual(get_current_settings(self.session).id, settings.id)

    def test_update_rate_keeps_history_and_bumps_version(self):
        before = get_rate_snapshot(self.session)
        settings = update_exchange_rate(self.session, "15.5", updated_by="ops", note="月初调整")
        self.assertEqual(Decimal(str(settings.exchange_rate)), Decimal("15.5000"))
        self.assertEqual(Decimal(str(settings.previous_rate)), Decimal("12.0000"))
        self.assertEqual(settings.version, before.version + 1)

        history = get_rate_history(self.session)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["old_rate"], "12.0000")
        self.assertEqual(history[0]["new_rate"], "15.5000")
        self.assertEqual(history[0]["changed_by"], "ops")

    def test_snapshot_is_not_affected_by_later_update(self):
        snapshot = get_rate_snapshot(self.session)
        update_exchange_rate(self.session, "20", updated_by="ops")
        self.assertEqual(snapshot.to_display(Decimal("10")), Decimal("120.00"))
        self.assertEqual(get_rate_snapshot(self.session).to_display(Decimal("10")), Decimal("200.00"))

    def test_rejects_non_positive_rate(self):
        for bad in ("0", "-1", "abc"):
            with self.assertRaises(ValidationError):
                update_exchange_rate(self.session, bad, updated_by="ops")
        self.assertEqual(get_rate_history(self.session), [])

    def test_stale_version_is_rejected(self):
        version = get_rate_snapshot(self.session).version
        update_exchange_rate(self.session, "13", updated_by="a", expected_version=version)
        with self.assertRaises(ConcurrencyConflict):
            update_exchange_rate(self.session, "14", updated_by="b", expected_version=version)
        self.assertEqual(get_rate_snapshot(self.session).rate, Decimal("13.0000"))

    def test_stats_and_preferences(self):
        update_exchange_rate(self.session, "10", updated_by="ops")
        update_exchange_rate(self.session, "12.5", updated_by="ops")
        stats = get_exchange_rate_stats(self.session)
        self.assertEqual(stats["current_rate"], "12.5000")
        self.assertEqual(stats["change_pct"], "25.00")
        self.assertEqual(stats["min_rate"], "10.0000")
        self.assertEqual(stats["total_changes"], 2)

        settings = update_display_preferences(self.session, show_both_currencies=False, primary_display_currency="usd")
        self.assertFalse(settings.show_both_currencies)
        self.assertEqual(settings.primary_display_currency, "USD")
        with self.assertRaises(ValidationError):
            update_display_preferences(self.session, primary_display_currency="EUR")


class RateSnapshotTestCase(unittest.TestCase):
    def test_conversion_rounds_half_up(self):
        snapshot = RateSnapshot("USD", "GHS", Decimal("12.0000"), 1)
        self.assertEqual(snapshot.to_display(Decimal("5.99")), Decimal("71.88"))
        self.assertEqual(snapshot.to_base(Decimal("71.88")), Decimal("5.99"))
        self.assertEqual(format_dual_currency(snapshot, Decimal("5.99")), "GHS 71.88 ($5.99)")


if __name__ == "__main__":
    unittest.main()
