"""Plan Catalog - the single source of truth for plan tiers and entitlements.

Every limit and feature flag used anywhere in the engine is read from here;
no other module carries limit constants.

Plan Structure:
- FREE: 1 catalogue, 5 exports/month
- STANDARD: 5 catalogues, 50 products each, 50 exports/month (₹599/mo, ₹5,391/yr)
- PROFESSIONAL: 20 catalogues, 500 products each, 200 exports/month, 5 team seats (₹1,399/mo, ₹12,591/yr)
- BUSINESS: unlimited (₹1,499/mo, ₹13,491/yr)

A limit of -1 means unlimited.
"""
import os
import logging
from typing import Dict, List, Optional, Any, Union

from pydantic import BaseModel, ConfigDict

from models import PlanTier, BillingCycle, ResourceKind

logger = logging.getLogger(__name__)

UNLIMITED = -1

# ============================================================================
# PLAN ORDER - total order used for upgrade paths
# ============================================================================
PLAN_ORDER: List[PlanTier] = [
    PlanTier.FREE,
    PlanTier.STANDARD,
    PlanTier.PROFESSIONAL,
    PlanTier.BUSINESS,
]

LIMIT_KEYS = (
    "max_catalogues",
    "max_products_per_catalogue",
    "max_categories",
    "max_exports_per_month",
    "max_storage_units",
    "max_team_members",
)

FEATURE_FLAGS = (
    "custom_domain",
    "advanced_analytics",
    "white_label",
    "priority_support",
    "api_access",
    "custom_branding",
    "advanced_exports",
    "team_collaboration",
    "advanced_seo",
    "custom_themes",
)

# Which limit governs each metered resource kind
RESOURCE_LIMIT_KEYS: Dict[ResourceKind, str] = {
    ResourceKind.CATALOGUE: "max_catalogues",
    ResourceKind.PRODUCT: "max_products_per_catalogue",
    ResourceKind.CATEGORY: "max_categories",
    ResourceKind.EXPORT: "max_exports_per_month",
    ResourceKind.TEAM_MEMBER: "max_team_members",
}

# Resource kinds that additionally require a feature flag
RESOURCE_FEATURE_FLAGS: Dict[ResourceKind, str] = {
    ResourceKind.TEAM_MEMBER: "team_collaboration",
}


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: PlanTier
    name: str
    description: str
    monthly_price: int
    yearly_price: int
    currency: str
    limits: Dict[str, int]
    features: Dict[str, bool]
    included: List[str]
    excluded: List[str]


def _features(*enabled: str) -> Dict[str, bool]:
    return {flag: flag in enabled for flag in FEATURE_FLAGS}


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
PLAN_DEFINITIONS: Dict[PlanTier, Dict[str, Any]] = {
    PlanTier.FREE: {
        "name": "Free",
        "description": "Perfect for getting started",
        "monthly_price": 0,
        "yearly_price": 0,
        "limits": {
            "max_catalogues": 1,
            "max_products_per_catalogue": UNLIMITED,
            "max_categories": UNLIMITED,
            "max_exports_per_month": 5,
            "max_storage_units": 50,
            "max_team_members": 0,
        },
        "features": _features(),
        "included": [
            "1 catalogue",
            "Unlimited products",
            "Unlimited categories",
            "5 PDF exports per month",
            "50 MB storage",
            "Basic themes",
        ],
        "excluded": [
            "Custom domain",
            "Advanced analytics",
            "Custom branding",
            "Team collaboration",
        ],
    },
    PlanTier.STANDARD: {
        "name": "Standard",
        "description": "For growing businesses",
        "monthly_price": 599,
        "yearly_price": 5391,
        "limits": {
            "max_catalogues": 5,
            "max_products_per_catalogue": 50,
            "max_categories": UNLIMITED,
            "max_exports_per_month": 50,
            "max_storage_units": 100,
            "max_team_members": 0,
        },
        "features": _features(
            "custom_domain",
            "advanced_analytics",
            "custom_branding",
            "advanced_exports",
            "advanced_seo",
            "custom_themes",
        ),
        "included": [
            "5 catalogues",
            "50 products per catalogue",
            "50 PDF exports per month",
            "100 MB storage",
            "Custom domain",
            "Advanced analytics",
            "Custom branding",
        ],
        "excluded": [
            "White label",
            "Priority support",
            "API access",
            "Team collaboration",
        ],
    },
    PlanTier.PROFESSIONAL: {
        "name": "Professional",
        "description": "For established teams",
        "monthly_price": 1399,
        "yearly_price": 12591,
        "limits": {
            "max_catalogues": 20,
            "max_products_per_catalogue": 500,
            "max_categories": UNLIMITED,
            "max_exports_per_month": 200,
            "max_storage_units": 500,
            "max_team_members": 5,
        },
        "features": _features(*FEATURE_FLAGS),
        "included": [
            "20 catalogues",
            "500 products per catalogue",
            "200 PDF exports per month",
            "500 MB storage",
            "White label",
            "Priority support",
            "API access",
            "Team collaboration (5 seats)",
        ],
        "excluded": [],
    },
    PlanTier.BUSINESS: {
        "name": "Business",
        "description": "Unlimited scale",
        "monthly_price": 1499,
        "yearly_price": 13491,
        "limits": {key: UNLIMITED for key in LIMIT_KEYS},
        "features": _features(*FEATURE_FLAGS),
        "included": [
            "Unlimited catalogues",
            "Unlimited products",
            "Unlimited PDF exports",
            "Unlimited storage",
            "Unlimited team members",
            "Everything in Professional",
        ],
        "excluded": [],
    },
}


def _as_tier(tier: Union[PlanTier, str]) -> PlanTier:
    return tier if isinstance(tier, PlanTier) else PlanTier(str(tier).upper())


def _as_cycle(cycle: Union[BillingCycle, str]) -> BillingCycle:
    return cycle if isinstance(cycle, BillingCycle) else BillingCycle(str(cycle).upper())


class PlanCatalog:
    """Read-only lookups over PLAN_DEFINITIONS."""

    def __init__(self, currency: Optional[str] = None):
        self.currency = (currency or os.getenv("DEFAULT_CURRENCY") or "INR").upper()
        self._plans: Dict[PlanTier, Plan] = {
            tier: Plan(tier=tier, currency=self.currency, **definition)
            for tier, definition in PLAN_DEFINITIONS.items()
        }

    # =========================================================================
    # Entitlements
    # =========================================================================

    def get_plan_features(self, tier: Union[PlanTier, str]) -> Plan:
        return self._plans[_as_tier(tier)]

    def get_limit(self, tier: Union[PlanTier, str], limit_key: str) -> int:
        limits = self.get_plan_features(tier).limits
        if limit_key not in limits:
            raise KeyError(f"Unknown limit: {limit_key}")
        return limits[limit_key]

    def has_feature(self, tier: Union[PlanTier, str], flag: str) -> bool:
        return bool(self.get_plan_features(tier).features.get(flag, False))

    def limit_for_resource(self, tier: Union[PlanTier, str], kind: ResourceKind) -> int:
        return self.get_limit(tier, RESOURCE_LIMIT_KEYS[kind])

    def feature_for_resource(self, kind: ResourceKind) -> Optional[str]:
        return RESOURCE_FEATURE_FLAGS.get(kind)

    # =========================================================================
    # Ordering
    # =========================================================================

    def is_at_least(self, tier_a: Union[PlanTier, str], tier_b: Union[PlanTier, str]) -> bool:
        return PLAN_ORDER.index(_as_tier(tier_a)) >= PLAN_ORDER.index(_as_tier(tier_b))

    def next_tier(self, tier: Union[PlanTier, str]) -> PlanTier:
        idx = PLAN_ORDER.index(_as_tier(tier))
        return PLAN_ORDER[min(idx + 1, len(PLAN_ORDER) - 1)]

    def get_upgrade_message(self, tier: Union[PlanTier, str], feature_label: str) -> str:
        upgrade_to = self.get_plan_features(self.next_tier(tier))
        return f"Upgrade to {upgrade_to.name} plan to access {feature_label}"

    # =========================================================================
    # Pricing
    # =========================================================================

    def price_for(self, tier: Union[PlanTier, str], cycle: Union[BillingCycle, str]) -> int:
        plan = self.get_plan_features(tier)
        return plan.yearly_price if _as_cycle(cycle) == BillingCycle.YEARLY else plan.monthly_price

    @staticmethod
    def yearly_savings(monthly_price: float, yearly_price: float) -> float:
        return monthly_price * 12 - yearly_price

    @staticmethod
    def yearly_savings_percentage(monthly_price: float, yearly_price: float) -> int:
        if monthly_price <= 0:
            return 0
        return round((monthly_price * 12 - yearly_price) / (monthly_price * 12) * 100)

    def list_plans(self) -> List[Dict[str, Any]]:
        """Display data for the pricing page."""
        plans = []
        for tier in PLAN_ORDER:
            plan = self._plans[tier]
            data = plan.model_dump()
            data["tier"] = tier.value
            data["yearly_savings"] = self.yearly_savings(plan.monthly_price, plan.yearly_price)
            data["yearly_savings_percentage"] = self.yearly_savings_percentage(plan.monthly_price, plan.yearly_price)
            plans.append(data)
        return plans

    # =========================================================================
    # Stripe price mapping (STRIPE_PRICE_<TIER>_<CYCLE>)
    # =========================================================================

    def price_id_for(self, tier: Union[PlanTier, str], cycle: Union[BillingCycle, str]) -> Optional[str]:
        env_key = f"STRIPE_PRICE_{_as_tier(tier).value}_{_as_cycle(cycle).value}"
        value = (os.getenv(env_key) or "").strip()
        return value or None

    def _price_index(self) -> Dict[str, tuple]:
        index = {}
        for tier in PLAN_ORDER[1:]:
            for cycle in BillingCycle:
                price_id = self.price_id_for(tier, cycle)
                if price_id:
                    index[price_id] = (tier, cycle)
        return index

    def plan_from_price_id(self, price_id: Optional[str]) -> Optional[PlanTier]:
        if not price_id:
            return None
        match = self._price_index().get(price_id)
        return match[0] if match else None

    def billing_cycle_from_price(self, price: Optional[Dict[str, Any]]) -> BillingCycle:
        """Billing cycle for a Stripe price: configured mapping, then recurring interval, then id."""
        price = price or {}
        match = self._price_index().get(price.get("id") or "")
        if match:
            return match[1]
        interval = (price.get("recurring") or {}).get("interval")
        if interval == "year":
            return BillingCycle.YEARLY
        if interval == "month":
            return BillingCycle.MONTHLY
        return BillingCycle.YEARLY if "yearly" in (price.get("id") or "").lower() else BillingCycle.MONTHLY


# Singleton instance
plan_catalog = PlanCatalog()
