import unittest
from decimal import Decimal

from billing_case import BillingTestCase
from core.errors import ConcurrencyConflict, NotFoundError, ValidationError
from core.models.billing_interval import BillingInterval
from core.models.pricing_tier import PricingTier
from core.pricing_service import (
    calculate_savings,
    create_tier,
    find_tier_for_member_count,
    get_interval_price,
    get_monthly_equivalent,
    get_period_price,
    get_pricing_catalog,
    get_tier_by_name,
    list_active_tiers,
    normalize_interval_name,
    seed_default_catalog,
    validate_tier_partition,
)
from core.currency_service import get_rate_snapshot


class PricingServiceTestCase(BillingTestCase):
    def test_seed_is_idempotent(self):
        created = seed_default_catalog(self.session)
        self.assertEqual(created, {"intervals": 0, "tiers": 0, "addons": 0})
        self.assertEqual(self.session.query(BillingInterval).count(), 4)
        self.assertEqual(self.session.query(PricingTier).count(), 5)

    def test_default_tiers_partition_member_range(self):
        self.assertEqual(validate_tier_partition(list_active_tiers(self.session)), [])
        self.assertEqual(find_tier_for_member_count(self.session, 1).tier_name, "TIER_1")
        self.assertEqual(find_tier_for_member_count(self.session, 200).tier_name, "TIER_1")
        self.assertEqual(find_tier_for_member_count(self.session, 201).tier_name, "TIER_2")
        self.assertEqual(find_tier_for_member_count(self.session, 100000).tier_name, "TIER_5")

    def test_partition_problems_are_reported(self):
        create_tier(self.session, "OVERLAP", "Overlap", 150, 300, [Decimal("1")] * 4)
        problems = validate_tier_partition(list_active_tiers(self.session))
        self.assertTrue(any("重叠" in p for p in problems))

        tier = get_tier_by_name(self.session, "TIER_2")
        tier.is_active = False
        self.session.commit()
        tiers = [t for t in list_active_tiers(self.session) if t.tier_name != "OVERLAP"]
        self.assertTrue(any("空档" in p for p in validate_tier_partition(tiers)))

    def test_interval_prices(self):
        tier = get_tier_by_name(self.session, "tier_1")
        self.assertEqual(get_interval_price(tier, "monthly"), Decimal("5.99"))
        self.assertEqual(get_interval_price(tier, "ANNUAL"), Decimal("59.99"))
        self.assertEqual(calculate_savings(tier, "ANNUAL"), Decimal("11.89"))
        self.assertEqual(get_period_price(tier, "MONTHLY", 3), Decimal("17.97"))
        self.assertEqual(get_monthly_equivalent(tier, "QUARTERLY"), Decimal("16.47") / 3)

    def test_unknown_names(self):
        with self.assertRaises(ValidationError):
            normalize_interval_name("WEEKLY")
        with self.assertRaises(NotFoundError):
            get_tier_by_name(self.session, "TIER_99")

    def test_create_tier_validation(self):
        with self.assertRaises(ValidationError):
            create_tier(self.session, "BAD", "Bad", 10, 5, [Decimal("1")] * 4)
        with self.assertRaises(ValidationError):
            create_tier(self.session, "FREE", "Free", 1, 5, [Decimal("0")] * 4)
        with self.assertRaises(ConcurrencyConflict):
            create_tier(self.session, "tier_1", "Dup", 1, 5, [Decimal("1")] * 4)

    def test_catalog_includes_display_prices(self):
        catalog = get_pricing_catalog(self.session, get_rate_snapshot(self.session))
        self.assertEqual(len(catalog["tiers"]), 5)
        self.assertEqual([x["name"] for x in catalog["intervals"]], ["MONTHLY", "QUARTERLY", "BIANNUAL", "ANNUAL"])
        first = catalog["tiers"][0]["prices"]["MONTHLY"]
        self.assertEqual(first["price_usd"], "5.99")
        self.assertEqual(first["price_display"], "71.88")
        self.assertEqual(catalog["display_currency"], "GHS")


if __name__ == "__main__":
    unittest.main()
