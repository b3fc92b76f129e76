"""Plan Catalog - single source of truth for plan tiers.

Authoritative for:
- Tier identifiers and display names
- Monthly price in COP (charged by the provider) and USD (display)
- Trial length
- Resource limits (-1 = unlimited)
- Feature entitlements

Prices are static configuration: changing a price requires a deployment.
Existing subscriptions keep the amount they were created with until the
next change-plan.

Plan Structure:
- basic: 50 properties, 2 team members, 100 conversations/mo
- power: 200 properties, 5 team members, 500 conversations/mo
- omni: unlimited properties and team, 2000 conversations/mo
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from models import PlanTier, PlanStatus
from services.billing_errors import BillingValidationError
from utils.billing_dates import first_of_next_month

logger = logging.getLogger(__name__)

UNLIMITED = -1
DEFAULT_TRIAL_DAYS = 15


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
PLAN_DEFINITIONS = {
    PlanTier.BASIC: {
        "tier": "basic",
        "name": "Basic",
        "description": "For independent agents getting started",

        # Pricing (minor units)
        "prices": {"COP": 32_000_000, "USD": 8_000},
        "trial_days": DEFAULT_TRIAL_DAYS,

        # Limits
        "max_properties": 50,
        "max_team_members": 2,
        "max_conversations_per_month": 100,

        # Agent customization level
        "agent_customization": "basic",
    },
    PlanTier.POWER: {
        "tier": "power",
        "name": "Power",
        "description": "For growing brokerages",

        "prices": {"COP": 79_900_000, "USD": 19_900},
        "trial_days": DEFAULT_TRIAL_DAYS,

        "max_properties": 200,
        "max_team_members": 5,
        "max_conversations_per_month": 500,

        "agent_customization": "full",
    },
    PlanTier.OMNI: {
        "tier": "omni",
        "name": "Omni",
        "description": "For agencies running multiple brands",

        "prices": {"COP": 119_900_000, "USD": 29_900},
        "trial_days": DEFAULT_TRIAL_DAYS,

        "max_properties": UNLIMITED,
        "max_team_members": UNLIMITED,
        "max_conversations_per_month": 2000,

        "agent_customization": "full",
    },
}

LIMIT_FIELDS = ("max_properties", "max_team_members", "max_conversations_per_month")


# ============================================================================
# FEATURE MATRIX
# ============================================================================
FEATURE_MATRIX = {
    PlanTier.BASIC: {
        "custom_tags": False,
        "export_leads": False,
        "full_customization": False,
        "custom_domain": False,
    },
    PlanTier.POWER: {
        "custom_tags": True,
        "export_leads": True,
        "full_customization": True,
        "custom_domain": False,
    },
    PlanTier.OMNI: {
        "custom_tags": True,
        "export_leads": True,
        "full_customization": True,
        "custom_domain": True,
    },
}

MINIMUM_PLAN_FOR_FEATURE = {
    "custom_tags": PlanTier.POWER,
    "export_leads": PlanTier.POWER,
    "full_customization": PlanTier.POWER,
    "custom_domain": PlanTier.OMNI,
}

FEATURE_NAMES = {
    "custom_tags": "Custom Tags",
    "export_leads": "Lead Export",
    "full_customization": "Full Agent Customization",
    "custom_domain": "Custom Domain",
}

TIER_ORDER = [PlanTier.BASIC, PlanTier.POWER, PlanTier.OMNI]


# ============================================================================
# PRICE FORMATTING
# ============================================================================
def format_price(amount_cents: int, currency: str = "COP") -> str:
    """Human-readable monthly price.

    COP is shown as whole pesos with '.' thousands grouping ($320.000);
    other currencies with two decimals ($80.00).
    """
    if (currency or "").upper() == "COP":
        whole = round(amount_cents / 100)
        return "$" + f"{whole:,}".replace(",", ".")
    return f"${amount_cents / 100:,.2f}"


# ============================================================================
# PLAN CATALOG SERVICE
# ============================================================================
class PlanCatalogService:
    """Read-only access to plan definitions."""

    def resolve_tier(self, value: Any) -> PlanTier:
        """Parse a tier identifier; raises BillingValidationError for unknown values."""
        if isinstance(value, PlanTier):
            return value
        try:
            return PlanTier(str(value or "").strip().lower())
        except ValueError:
            raise BillingValidationError(
                f"Invalid plan tier '{value}'. Must be one of: basic, power, omni"
            )

    def get_plan(self, tier: Any) -> Dict[str, Any]:
        """Complete plan definition; unknown tiers fall back to basic."""
        try:
            plan_tier = self.resolve_tier(tier)
        except BillingValidationError:
            plan_tier = PlanTier.BASIC
        plan = PLAN_DEFINITIONS[plan_tier].copy()
        plan["prices"] = dict(plan["prices"])
        return plan

    def get_all_plans(self) -> List[Dict[str, Any]]:
        return [
            {**self.get_plan(tier), "features": FEATURE_MATRIX[tier].copy()}
            for tier in TIER_ORDER
        ]

    def get_price(self, tier: Any, currency: str = "COP") -> int:
        prices = self.get_plan(tier)["prices"]
        currency = (currency or "COP").upper()
        if currency not in prices:
            raise BillingValidationError(f"No price configured for currency {currency}")
        return prices[currency]

    def get_limits(self, tier: Any) -> Dict[str, int]:
        plan = self.get_plan(tier)
        return {field: plan[field] for field in LIMIT_FIELDS}

    def get_features(self, tier: Any) -> Dict[str, bool]:
        try:
            plan_tier = self.resolve_tier(tier)
        except BillingValidationError:
            plan_tier = PlanTier.BASIC
        return FEATURE_MATRIX[plan_tier].copy()

    def get_minimum_plan_for_feature(self, feature: str) -> Optional[PlanTier]:
        return MINIMUM_PLAN_FOR_FEATURE.get(feature)

    def tier_rank(self, tier: Any) -> int:
        return TIER_ORDER.index(self.resolve_tier(tier))


def initial_billing_fields(now: datetime, tier: PlanTier = PlanTier.BASIC) -> Dict[str, Any]:
    """Billing fields for a freshly signed-up organization."""
    plan = plan_catalog.get_plan(tier)
    return {
        "plan_tier": plan["tier"],
        "plan_status": PlanStatus.TRIALING.value,
        "trial_ends_at": (now + timedelta(days=plan["trial_days"])).isoformat(),
        "conversations_used_this_month": 0,
        "conversations_reset_at": first_of_next_month(now).isoformat(),
        **plan_catalog.get_limits(tier),
    }


# Singleton instance
plan_catalog = PlanCatalogService()
