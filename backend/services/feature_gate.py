"""Feature Gate - pure plan entitlement checks.

No I/O: callers pass in the organization data they already loaded. The same
rules back server-side enforcement (middleware.require_feature /
require_limit) and the upgrade prompts rendered by the client.

Rules:
- A limit of -1 means unlimited and always passes.
- Otherwise a count is allowed while it is strictly below the limit.
- Feature access is decided by the minimum tier in the plan catalog.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from models import PlanStatus, PlanTier
from services.plan_catalog import (
    FEATURE_NAMES,
    MINIMUM_PLAN_FOR_FEATURE,
    UNLIMITED,
    plan_catalog,
)
from services.billing_errors import BillingValidationError

SUBSCRIPTION_STATUSES_ALLOWING_FEATURE_ACCESS = frozenset({
    PlanStatus.TRIALING.value,
    PlanStatus.ACTIVE.value,
})

LIMIT_REGISTRY = {
    "properties": {
        "field": "max_properties",
        "label": "properties",
        "counter": None,
    },
    "team_members": {
        "field": "max_team_members",
        "label": "team members",
        "counter": None,
    },
    "conversations": {
        "field": "max_conversations_per_month",
        "label": "conversations this month",
        "counter": "conversations_used_this_month",
    },
}


@dataclass
class FeatureCheck:
    allowed: bool
    message: Optional[str] = None
    required_plan: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LimitCheck:
    allowed: bool
    current: int
    max: int
    remaining: int
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def subscription_allows_feature_access(plan_status: Optional[str]) -> bool:
    """True if the plan status still grants access to plan features."""
    return (plan_status or "") in SUBSCRIPTION_STATUSES_ALLOWING_FEATURE_ACCESS


def _tier_or_basic(tier: Any) -> PlanTier:
    try:
        return plan_catalog.resolve_tier(tier)
    except BillingValidationError:
        return PlanTier.BASIC


def has_feature(tier: Any, feature: str) -> FeatureCheck:
    required = MINIMUM_PLAN_FOR_FEATURE.get(feature)
    if required is None:
        return FeatureCheck(allowed=False, message=f"Unknown feature: {feature}")

    plan_tier = _tier_or_basic(tier)
    if plan_catalog.get_features(plan_tier).get(feature, False):
        return FeatureCheck(allowed=True)

    required_plan = plan_catalog.get_plan(required)
    return FeatureCheck(
        allowed=False,
        message=f"{FEATURE_NAMES.get(feature, feature)} requires the {required_plan['name']} plan or higher.",
        required_plan=required.value,
    )


def check_limit(org: Dict[str, Any], limit_type: str, current_count: Optional[int] = None) -> LimitCheck:
    """Evaluate a numeric plan limit for an organization document."""
    entry = LIMIT_REGISTRY.get(limit_type)
    if entry is None:
        raise BillingValidationError(f"Unknown limit type: {limit_type}")

    if current_count is None:
        current_count = int(org.get(entry["counter"]) or 0) if entry["counter"] else 0

    limit = org.get(entry["field"])
    if limit is None:
        limit = plan_catalog.get_limits(_tier_or_basic(org.get("plan_tier")))[entry["field"]]

    if limit == UNLIMITED:
        return LimitCheck(allowed=True, current=current_count, max=UNLIMITED, remaining=UNLIMITED)

    allowed = current_count < limit
    message = None
    if not allowed:
        message = (
            f"{entry['label'].capitalize()} limit reached ({current_count}/{limit}). "
            "Upgrade your plan to increase it."
        )
    return LimitCheck(
        allowed=allowed,
        current=current_count,
        max=limit,
        remaining=max(0, limit - current_count),
        message=message,
    )


def org_has_feature(org: Dict[str, Any], feature: str) -> FeatureCheck:
    """has_feature plus the plan status gate."""
    if not subscription_allows_feature_access(org.get("plan_status")):
        return FeatureCheck(
            allowed=False,
            message="Subscription not active. Please update your billing to access features.",
        )
    return has_feature(org.get("plan_tier"), feature)


def check_org_limit(org: Dict[str, Any], limit_type: str, current_count: Optional[int] = None) -> LimitCheck:
    """check_limit plus the plan status gate."""
    result = check_limit(org, limit_type, current_count)
    if subscription_allows_feature_access(org.get("plan_status")):
        return result
    result.allowed = False
    result.message = "Subscription not active. Please update your billing to continue."
    return result
