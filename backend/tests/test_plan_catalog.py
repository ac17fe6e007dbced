"""
Plan catalog: limits, feature flags, ordering, pricing and Stripe price mapping.
"""
import pytest

from models import BillingCycle, PlanTier, ResourceKind
from services.plan_catalog import (
    FEATURE_FLAGS, LIMIT_KEYS, PLAN_ORDER, UNLIMITED, PlanCatalog, plan_catalog,
)


class TestLimits:
    def test_free_plan_limits(self):
        assert plan_catalog.get_limit(PlanTier.FREE, "max_catalogues") == 1
        assert plan_catalog.get_limit(PlanTier.FREE, "max_exports_per_month") == 5
        assert plan_catalog.get_limit(PlanTier.FREE, "max_products_per_catalogue") == UNLIMITED
        assert plan_catalog.get_limit(PlanTier.FREE, "max_team_members") == 0

    def test_business_is_unlimited_everywhere(self):
        for key in LIMIT_KEYS:
            assert plan_catalog.get_limit(PlanTier.BUSINESS, key) == UNLIMITED

    def test_accepts_tier_names(self):
        assert plan_catalog.get_limit("standard", "max_catalogues") == 5

    def test_unknown_limit_key_raises(self):
        with pytest.raises(KeyError):
            plan_catalog.get_limit(PlanTier.FREE, "max_widgets")

    def test_metered_limits_never_decrease_with_tier(self):
        """A higher tier never grants fewer catalogues, exports or seats."""
        def as_number(value):
            return float("inf") if value == UNLIMITED else value

        for lower, higher in zip(PLAN_ORDER, PLAN_ORDER[1:]):
            for key in ("max_catalogues", "max_exports_per_month", "max_storage_units", "max_team_members"):
                assert as_number(plan_catalog.get_limit(higher, key)) >= as_number(plan_catalog.get_limit(lower, key)), (lower, higher, key)
            for flag in FEATURE_FLAGS:
                if plan_catalog.has_feature(lower, flag):
                    assert plan_catalog.has_feature(higher, flag), (lower, higher, flag)

    def test_resource_mapping(self):
        assert plan_catalog.limit_for_resource(PlanTier.PROFESSIONAL, ResourceKind.TEAM_MEMBER) == 5
        assert plan_catalog.limit_for_resource(PlanTier.STANDARD, ResourceKind.PRODUCT) == 50
        assert plan_catalog.feature_for_resource(ResourceKind.TEAM_MEMBER) == "team_collaboration"
        assert plan_catalog.feature_for_resource(ResourceKind.CATALOGUE) is None


class TestFeatures:
    def test_team_collaboration_by_tier(self):
        assert not plan_catalog.has_feature(PlanTier.FREE, "team_collaboration")
        assert not plan_catalog.has_feature(PlanTier.STANDARD, "team_collaboration")
        assert plan_catalog.has_feature(PlanTier.PROFESSIONAL, "team_collaboration")
        assert plan_catalog.has_feature(PlanTier.BUSINESS, "team_collaboration")

    def test_unknown_flag_is_false(self):
        assert plan_catalog.has_feature(PlanTier.BUSINESS, "time_travel") is False


class TestOrdering:
    def test_is_at_least(self):
        assert plan_catalog.is_at_least(PlanTier.BUSINESS, PlanTier.STANDARD)
        assert plan_catalog.is_at_least(PlanTier.STANDARD, PlanTier.STANDARD)
        assert not plan_catalog.is_at_least(PlanTier.FREE, PlanTier.STANDARD)

    def test_next_tier_stops_at_business(self):
        assert plan_catalog.next_tier(PlanTier.FREE) == PlanTier.STANDARD
        assert plan_catalog.next_tier(PlanTier.BUSINESS) == PlanTier.BUSINESS

    def test_upgrade_message_names_next_plan(self):
        message = plan_catalog.get_upgrade_message(PlanTier.STANDARD, "team collaboration")
        assert message == "Upgrade to Professional plan to access team collaboration"


class TestPricing:
    def test_price_for_cycle(self):
        assert plan_catalog.price_for(PlanTier.STANDARD, BillingCycle.MONTHLY) == 599
        assert plan_catalog.price_for(PlanTier.STANDARD, "yearly") == 5391

    def test_yearly_savings(self):
        assert PlanCatalog.yearly_savings(599, 5391) == 599 * 12 - 5391
        assert PlanCatalog.yearly_savings_percentage(599, 5391) == 25
        assert PlanCatalog.yearly_savings_percentage(0, 0) == 0

    def test_list_plans_in_order(self):
        plans = plan_catalog.list_plans()
        assert [p["tier"] for p in plans] == ["FREE", "STANDARD", "PROFESSIONAL", "BUSINESS"]
        assert plans[1]["yearly_savings_percentage"] == 25
        assert plans[0]["currency"] == plan_catalog.currency

    def test_currency_override(self):
        assert PlanCatalog(currency="usd").currency == "USD"


class TestStripePriceMapping:
    def test_price_id_from_env(self, monkeypatch):
        monkeypatch.setenv("STRIPE_PRICE_PROFESSIONAL_YEARLY", "price_pro_year")
        assert plan_catalog.price_id_for(PlanTier.PROFESSIONAL, BillingCycle.YEARLY) == "price_pro_year"
        assert plan_catalog.plan_from_price_id("price_pro_year") == PlanTier.PROFESSIONAL
        assert plan_catalog.billing_cycle_from_price({"id": "price_pro_year"}) == BillingCycle.YEARLY

    def test_missing_price_id(self, monkeypatch):
        monkeypatch.delenv("STRIPE_PRICE_STANDARD_MONTHLY", raising=False)
        assert plan_catalog.price_id_for(PlanTier.STANDARD, BillingCycle.MONTHLY) is None
        assert plan_catalog.plan_from_price_id(None) is None
        assert plan_catalog.plan_from_price_id("price_unknown") is None

    def test_cycle_from_recurring_interval(self):
        assert plan_catalog.billing_cycle_from_price({"id": "price_x", "recurring": {"interval": "year"}}) == BillingCycle.YEARLY
        assert plan_catalog.billing_cycle_from_price({"id": "price_x", "recurring": {"interval": "month"}}) == BillingCycle.MONTHLY
        assert plan_catalog.billing_cycle_from_price({"id": "price_yearly_x"}) == BillingCycle.YEARLY
        assert plan_catalog.billing_cycle_from_price(None) == BillingCycle.MONTHLY
