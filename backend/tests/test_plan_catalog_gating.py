"""
Plan catalog and feature gate: prices, limits, unlimited sentinel, status gating.
"""
from datetime import datetime, timezone

import pytest

from models import PlanStatus, PlanTier
from services.billing_errors import BillingValidationError
from services.feature_gate import (
    check_limit,
    check_org_limit,
    has_feature,
    org_has_feature,
    subscription_allows_feature_access,
)
from services.plan_catalog import format_price, initial_billing_fields, plan_catalog
from utils.billing_dates import add_months, days_remaining, first_of_next_month


class TestPlanCatalog:
    def test_prices_in_minor_units(self):
        assert plan_catalog.get_price("basic", "COP") == 32_000_000
        assert plan_catalog.get_price("power", "COP") == 79_900_000
        assert plan_catalog.get_price("omni", "COP") == 119_900_000
        assert plan_catalog.get_price(PlanTier.POWER, "usd") == 19_900

    def test_unknown_currency_is_rejected(self):
        with pytest.raises(BillingValidationError):
            plan_catalog.get_price("basic", "EUR")

    def test_resolve_tier_rejects_unknown(self):
        with pytest.raises(BillingValidationError) as exc:
            plan_catalog.resolve_tier("platinum")
        assert "platinum" in exc.value.message
        assert plan_catalog.resolve_tier(" Power ") == PlanTier.POWER

    def test_get_plan_falls_back_to_basic(self):
        assert plan_catalog.get_plan("nope")["tier"] == "basic"

    def test_omni_limits_are_unlimited_except_conversations(self):
        limits = plan_catalog.get_limits("omni")
        assert limits == {
            "max_properties": -1,
            "max_team_members": -1,
            "max_conversations_per_month": 2000,
        }

    def test_all_plans_in_tier_order(self):
        tiers = [p["tier"] for p in plan_catalog.get_all_plans()]
        assert tiers == ["basic", "power", "omni"]
        assert plan_catalog.tier_rank("omni") > plan_catalog.tier_rank("basic")

    def test_format_price(self):
        assert format_price(32_000_000, "COP") == "$320.000"
        assert format_price(119_900_000, "COP") == "$1.199.000"
        assert format_price(8_000, "USD") == "$80.00"

    def test_initial_billing_fields(self):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        fields = initial_billing_fields(now)
        assert fields["plan_tier"] == "basic"
        assert fields["plan_status"] == "trialing"
        assert fields["trial_ends_at"] == datetime(2026, 3, 25, 12, 0, tzinfo=timezone.utc).isoformat()
        assert fields["conversations_reset_at"] == datetime(2026, 4, 1, tzinfo=timezone.utc).isoformat()
        assert fields["max_properties"] == 50


class TestBillingDates:
    def test_add_months_clamps_to_month_end(self):
        jan31 = datetime(2026, 1, 31, tzinfo=timezone.utc)
        assert add_months(jan31, 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
        assert add_months(datetime(2026, 12, 5, tzinfo=timezone.utc), 1).year == 2027

    def test_first_of_next_month_rolls_year(self):
        assert first_of_next_month(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc)) == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_days_remaining_rounds_up(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert days_remaining(datetime(2026, 3, 2, 1, tzinfo=timezone.utc), now) == 2
        assert days_remaining(datetime(2026, 2, 1, tzinfo=timezone.utc), now) == 0
        assert days_remaining(None, now) == 0


class TestHasFeature:
    def test_basic_lacks_power_features(self):
        result = has_feature("basic", "custom_tags")
        assert result.allowed is False
        assert result.required_plan == "power"
        assert "Power" in result.message

    def test_power_has_export_but_not_custom_domain(self):
        assert has_feature("power", "export_leads").allowed is True
        result = has_feature("power", "custom_domain")
        assert result.allowed is False
        assert result.required_plan == "omni"

    def test_omni_has_everything(self):
        for feature in ("custom_tags", "export_leads", "full_customization", "custom_domain"):
            assert has_feature("omni", feature).allowed is True

    def test_unknown_feature_denied(self):
        result = has_feature("omni", "teleportation")
        assert result.allowed is False
        assert result.required_plan is None

    def test_unknown_tier_treated_as_basic(self):
        assert has_feature("legacy", "custom_tags").allowed is False


class TestCheckLimit:
    def test_unlimited_always_allowed(self):
        org = {"plan_tier": "omni", "max_properties": -1}
        result = check_limit(org, "properties", 10_000_000)
        assert result.allowed is True
        assert result.max == -1
        assert result.remaining == -1

    def test_allowed_strictly_below_limit(self):
        org = {"plan_tier": "basic", "max_properties": 50}
        assert check_limit(org, "properties", 49).allowed is True
        blocked = check_limit(org, "properties", 50)
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert "50/50" in blocked.message

    def test_conversations_default_to_org_counter(self):
        org = {"plan_tier": "basic", "max_conversations_per_month": 100, "conversations_used_this_month": 100}
        result = check_limit(org, "conversations")
        assert result.current == 100
        assert result.allowed is False

    def test_missing_limit_falls_back_to_catalog(self):
        result = check_limit({"plan_tier": "power"}, "team_members", 3)
        assert result.max == 5
        assert result.remaining == 2

    def test_unknown_limit_type_raises(self):
        with pytest.raises(BillingValidationError):
            check_limit({"plan_tier": "basic"}, "storage", 1)


class TestStatusGate:
    @pytest.mark.parametrize("plan_status,allowed", [
        (PlanStatus.TRIALING.value, True),
        (PlanStatus.ACTIVE.value, True),
        (PlanStatus.PAST_DUE.value, False),
        (PlanStatus.UNPAID.value, False),
        (PlanStatus.CANCELED.value, False),
        (None, False),
    ])
    def test_subscription_allows_feature_access(self, plan_status, allowed):
        assert subscription_allows_feature_access(plan_status) is allowed

    def test_org_has_feature_blocks_past_due(self):
        org = {"plan_tier": "omni", "plan_status": "past_due"}
        result = org_has_feature(org, "custom_domain")
        assert result.allowed is False
        assert "not active" in result.message

    def test_check_org_limit_blocks_canceled_even_under_limit(self):
        org = {"plan_tier": "basic", "plan_status": "canceled", "max_properties": 50}
        result = check_org_limit(org, "properties", 1)
        assert result.allowed is False
        assert result.current == 1
