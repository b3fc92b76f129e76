"""Subscription Engine - owns the organization billing lifecycle.

Plan status state machine (organization.plan_status):

    trialing -> active | past_due | canceled
    active   -> past_due | unpaid | canceled
    past_due -> active | unpaid | canceled
    unpaid   -> active | canceled
    canceled -> trialing | active        (only through a fresh subscription)

Rules:
- Activation only happens from provider state (payment webhook, preapproval
  authorization, reconciliation), never synchronously from subscribe().
- The subscription row is written before the organization so a reader never
  sees organization.plan_tier ahead of its subscription.
- Every organization write is guarded by the state it was computed from.
- Invoices are upserted by provider payment id; repeated webhooks converge
  on the same end state.
"""
import asyncio
import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models import (
    AuditAction,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    PaymentMethodStatus,
    PlanStatus,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    UserRole,
    utc_now,
)
from services.billing_errors import (
    BillingConsistencyError,
    BillingProviderError,
    BillingValidationError,
)
from services.payment_provider import PaymentProvider, SubscriptionStatusResult, get_payment_provider
from services.plan_catalog import format_price, plan_catalog
from utils.audit import create_audit_log
from utils.billing_dates import add_months, days_remaining, parse_iso

logger = logging.getLogger(__name__)


PLAN_STATUS_TRANSITIONS = {
    PlanStatus.TRIALING: frozenset({PlanStatus.ACTIVE, PlanStatus.PAST_DUE, PlanStatus.CANCELED}),
    PlanStatus.ACTIVE: frozenset({PlanStatus.PAST_DUE, PlanStatus.UNPAID, PlanStatus.CANCELED}),
    PlanStatus.PAST_DUE: frozenset({PlanStatus.ACTIVE, PlanStatus.UNPAID, PlanStatus.CANCELED}),
    PlanStatus.UNPAID: frozenset({PlanStatus.ACTIVE, PlanStatus.CANCELED}),
    PlanStatus.CANCELED: frozenset({PlanStatus.TRIALING, PlanStatus.ACTIVE}),
}

NON_TERMINAL_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.PENDING.value,
    SubscriptionStatus.AUTHORIZED.value,
    SubscriptionStatus.PAUSED.value,
})
ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.AUTHORIZED.value,
    SubscriptionStatus.PAUSED.value,
})

PAID_PAYMENT_STATUSES = frozenset({"approved"})
FAILED_PAYMENT_STATUSES = frozenset({"rejected", "cancelled", "refunded", "charged_back"})

# Organization states a recorded paid invoice should already have moved to active
AWAITING_PAYMENT_PLAN_STATUSES = frozenset({
    PlanStatus.TRIALING.value,
    PlanStatus.PAST_DUE.value,
    PlanStatus.UNPAID.value,
})

# Consecutive failed charges before the organization is marked unpaid
UNPAID_AFTER_FAILED_PAYMENTS = 3

LOCAL_WRITE_ATTEMPTS = 3
LOCAL_WRITE_BACKOFF_SECONDS = [0.1, 0.3]


def is_valid_transition(current: Optional[str], target: PlanStatus) -> bool:
    """True when current -> target is an edge of the plan status state machine."""
    try:
        current_status = PlanStatus(current)
    except ValueError:
        return False
    return target in PLAN_STATUS_TRANSITIONS[current_status]


def invoice_status_for_payment(provider_status: Optional[str]) -> InvoiceStatus:
    status = (provider_status or "").lower()
    if status in PAID_PAYMENT_STATUSES:
        return InvoiceStatus.PAID
    if status in FAILED_PAYMENT_STATUSES:
        return InvoiceStatus.FAILED
    return InvoiceStatus.PENDING


def _subscription_reason(plan_name: str) -> str:
    app_name = os.getenv("APP_NAME", "Redbot")
    return f"{app_name} {plan_name} - Monthly"


class SubscriptionEngine:
    """Orchestrates subscriptions between the organization record and the payment provider."""

    def __init__(self, provider: Optional[PaymentProvider] = None):
        self._provider = provider

    @property
    def provider(self) -> PaymentProvider:
        return self._provider or get_payment_provider()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def _load_org(self, db, organization_id: str) -> Dict[str, Any]:
        org = await db.organizations.find_one({"organization_id": organization_id}, {"_id": 0})
        if not org:
            raise BillingConsistencyError("Organization not found")
        return org

    async def _latest_subscription(self, db, organization_id: str, statuses=None) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {"organization_id": organization_id}
        if statuses is not None:
            query["status"] = {"$in": sorted(statuses)}
        rows = await db.subscriptions.find(query, {"_id": 0}).sort("created_at", -1).limit(1).to_list(1)
        return rows[0] if rows else None

    async def get_subscription_info(self, organization_id: str) -> Optional[Dict[str, Any]]:
        """Newest subscription that is not cancelled, or None."""
        db = database.get_db()
        rows = await db.subscriptions.find(
            {"organization_id": organization_id, "status": {"$ne": SubscriptionStatus.CANCELLED.value}},
            {"_id": 0},
        ).sort("created_at", -1).limit(1).to_list(1)
        return rows[0] if rows else None

    async def get_invoices(self, organization_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        db = database.get_db()
        return await db.invoices.find(
            {"organization_id": organization_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(limit)

    # -------------------------------------------------------------------------
    # Organization writes
    # -------------------------------------------------------------------------

    async def set_plan_status(
        self,
        organization_id: str,
        target: PlanStatus,
        org: Optional[Dict[str, Any]] = None,
        reason: str = "",
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move organization.plan_status along the state machine.

        The write is guarded by the status it was computed from; a miss means
        another writer got there first and is logged, not overwritten.
        Returns True when the organization document was modified.
        """
        db = database.get_db()
        if org is None:
            org = await self._load_org(db, organization_id)
        current = org.get("plan_status")
        fields = dict(extra_fields or {})

        if current != target.value and not is_valid_transition(current, target):
            logger.warning(
                "PLAN_STATUS_TRANSITION_REJECTED organization_id=%s from=%s to=%s reason=%s",
                organization_id, current, target.value, reason,
            )
            return False
        if current == target.value and not fields:
            return False

        fields["plan_status"] = target.value
        fields["updated_at"] = utc_now().isoformat()
        result = await db.organizations.update_one(
            {"organization_id": organization_id, "plan_status": current},
            {"$set": fields},
        )
        if result.matched_count == 0:
            logger.warning(
                "PLAN_STATUS_CONFLICT organization_id=%s expected=%s target=%s reason=%s",
                organization_id, current, target.value, reason,
            )
            return False

        if current != target.value:
            logger.info(
                "PLAN_STATUS_CHANGED organization_id=%s from=%s to=%s reason=%s",
                organization_id, current, target.value, reason,
            )
            await create_audit_log(
                action=AuditAction.PLAN_STATUS_CHANGED,
                organization_id=organization_id,
                resource_type="organization",
                resource_id=organization_id,
                before_state={"plan_status": current},
                after_state={"plan_status": target.value},
                reason_code=reason or None,
            )
        return result.modified_count > 0

    async def update_org_plan_status(
        self,
        organization_id: str,
        plan_tier: str,
        plan_status: PlanStatus,
        org: Optional[Dict[str, Any]] = None,
        reason: str = "",
    ) -> bool:
        """Write status together with tier, limits and provider."""
        extra = {
            "plan_tier": plan_catalog.resolve_tier(plan_tier).value,
            "payment_provider": self.provider.name,
            **plan_catalog.get_limits(plan_tier),
        }
        return await self.set_plan_status(organization_id, plan_status, org=org, reason=reason, extra_fields=extra)

    async def sync_limits(self, organization_id: str, plan_tier: str) -> None:
        db = database.get_db()
        await db.organizations.update_one(
            {"organization_id": organization_id},
            {"$set": {
                "plan_tier": plan_catalog.resolve_tier(plan_tier).value,
                **plan_catalog.get_limits(plan_tier),
                "updated_at": utc_now().isoformat(),
            }},
        )

    async def record_conversation(self, organization_id: str) -> bool:
        """Count one conversation against the monthly allowance."""
        db = database.get_db()
        result = await db.organizations.update_one(
            {"organization_id": organization_id},
            {"$inc": {"conversations_used_this_month": 1}},
        )
        return result.matched_count > 0

    async def _with_local_retry(self, operation: str, organization_id: str, fn, *args):
        """Retry a local write that must follow an already-applied remote call."""
        last_error = None
        for attempt in range(1, LOCAL_WRITE_ATTEMPTS + 1):
            try:
                return await fn(*args)
            except PyMongoError as e:
                last_error = e
                logger.warning(
                    "LOCAL_WRITE_RETRY operation=%s organization_id=%s attempt=%s error=%s",
                    operation, organization_id, attempt, e,
                )
                if attempt < LOCAL_WRITE_ATTEMPTS:
                    await asyncio.sleep(LOCAL_WRITE_BACKOFF_SECONDS[attempt - 1])
        logger.error(
            "LOCAL_WRITE_FAILED operation=%s organization_id=%s attempts=%s error=%s",
            operation, organization_id, LOCAL_WRITE_ATTEMPTS, last_error,
        )
        raise BillingConsistencyError(
            f"{operation} was accepted by the payment provider but could not be saved. Please retry."
        ) from last_error

    # -------------------------------------------------------------------------
    # Subscribe
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        organization_id: str,
        plan_tier: Any,
        payer_email: str,
        card_token_id: Optional[str] = None,
        card_last_four: Optional[str] = None,
        card_brand: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start a checkout for `plan_tier`.

        Creates a pending remote subscription and a matching local row.
        The organization's plan_status is untouched; activation arrives
        asynchronously from the provider.
        """
        tier = plan_catalog.resolve_tier(plan_tier)
        payer_email = (payer_email or "").strip()
        if not payer_email:
            raise BillingValidationError("Payer email is required")

        db = database.get_db()
        org = await self._load_org(db, organization_id)
        provider = self.provider

        existing = await self._latest_subscription(db, organization_id, NON_TERMINAL_SUBSCRIPTION_STATUSES)
        if existing and existing["status"] in ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES:
            raise BillingConsistencyError(
                "Organization already has an active subscription. Use change-plan to switch tiers, or cancel first."
            )
        if existing:
            await self._supersede_pending(db, existing, provider)

        now = utc_now()
        trial_days = 0
        if org.get("plan_status") == PlanStatus.TRIALING.value:
            trial_days = days_remaining(parse_iso(org.get("trial_ends_at")), now)

        plan = plan_catalog.get_plan(tier)
        currency = provider.currency
        amount_cents = plan_catalog.get_price(tier, currency)
        app_url = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

        created = await provider.create_subscription(
            payer_email=payer_email,
            reason=_subscription_reason(plan["name"]),
            amount_cents=amount_cents,
            currency=currency,
            external_reference=organization_id,
            back_url=f"{app_url}/admin/billing",
            free_trial_days=trial_days,
            card_token_id=card_token_id,
        )

        trial_ends_at = now + timedelta(days=trial_days) if trial_days else None
        subscription = Subscription(
            organization_id=organization_id,
            provider=provider.name,
            provider_subscription_id=created.provider_subscription_id,
            plan_tier=tier,
            amount_cents=amount_cents,
            currency=currency,
            status=SubscriptionStatus.PENDING,
            trial_ends_at=trial_ends_at.isoformat() if trial_ends_at else None,
            current_period_start=now.isoformat(),
            current_period_end=(trial_ends_at or add_months(now, 1)).isoformat(),
        )
        try:
            await db.subscriptions.insert_one(subscription.model_dump(mode="json"))
        except PyMongoError as e:
            logger.error(
                "SUBSCRIBE_LOCAL_INSERT_FAILED organization_id=%s provider_subscription_id=%s error=%s",
                organization_id, created.provider_subscription_id, e,
            )
            try:
                await provider.cancel_subscription(created.provider_subscription_id)
            except BillingProviderError as cancel_error:
                logger.error(
                    "SUBSCRIBE_COMPENSATION_FAILED provider_subscription_id=%s error=%s",
                    created.provider_subscription_id, cancel_error,
                )
            raise BillingConsistencyError("Could not save the subscription. No charge was made; please retry.") from e

        if card_last_four and card_brand:
            try:
                await self.add_payment_method(organization_id, card_last_four, card_brand, payer_email)
            except (BillingValidationError, BillingProviderError) as e:
                logger.warning("Payment method display record skipped for %s: %s", organization_id, e)

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            actor_role=UserRole.ROLE_ORG_ADMIN if actor_id else UserRole.ROLE_SYSTEM,
            actor_id=actor_id,
            organization_id=organization_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            metadata={
                "plan_tier": tier.value,
                "amount_cents": amount_cents,
                "currency": currency,
                "provider": provider.name,
                "provider_subscription_id": created.provider_subscription_id,
                "free_trial_days": trial_days,
            },
        )
        logger.info(
            "SUBSCRIPTION_CREATED organization_id=%s subscription_id=%s tier=%s trial_days=%s",
            organization_id, subscription.subscription_id, tier.value, trial_days,
        )
        return {
            "subscription_id": subscription.subscription_id,
            "provider_subscription_id": created.provider_subscription_id,
            "init_point": created.init_point,
        }

    async def _supersede_pending(self, db, existing: Dict[str, Any], provider: PaymentProvider) -> None:
        """Cancel an abandoned checkout so a new one never stacks on top of it."""
        try:
            await provider.cancel_subscription(existing["provider_subscription_id"])
        except BillingProviderError as e:
            if e.status_code != 404:
                raise
        now = utc_now().isoformat()
        await db.subscriptions.update_one(
            {"subscription_id": existing["subscription_id"], "status": SubscriptionStatus.PENDING.value},
            {"$set": {
                "status": SubscriptionStatus.CANCELLED.value,
                "superseded_at": now,
                "canceled_at": now,
                "updated_at": now,
            }},
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_SUPERSEDED,
            organization_id=existing["organization_id"],
            resource_type="subscription",
            resource_id=existing["subscription_id"],
            metadata={"provider_subscription_id": existing["provider_subscription_id"]},
        )
        logger.info(
            "SUBSCRIPTION_SUPERSEDED organization_id=%s subscription_id=%s",
            existing["organization_id"], existing["subscription_id"],
        )

    # -------------------------------------------------------------------------
    # Change plan
    # -------------------------------------------------------------------------

    async def change_plan(self, organization_id: str, new_plan_tier: Any, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Switch the active subscription to another tier.

        The provider amount changes first; the new price applies from the
        next billing cycle (no proration). The subscription and organization
        are then updated, retrying transient write failures.
        """
        new_tier = plan_catalog.resolve_tier(new_plan_tier)
        db = database.get_db()
        org = await self._load_org(db, organization_id)
        sub = await self._latest_subscription(db, organization_id, ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES)
        if not sub:
            raise BillingConsistencyError("No active subscription to change. Subscribe to a plan first.")

        plan = plan_catalog.get_plan(new_tier)
        expected_org_tier = org.get("plan_tier")

        if sub["plan_tier"] == new_tier.value:
            if expected_org_tier == new_tier.value:
                raise BillingConsistencyError(f"Organization is already on the {plan['name']} plan")
            # A previous change reached the subscription but not the organization
            await self._with_local_retry(
                "Plan change", organization_id,
                self._write_org_tier, db, organization_id, expected_org_tier, new_tier,
            )
            return {"success": True, "plan_tier": new_tier.value}

        currency = sub.get("currency") or self.provider.currency
        amount_cents = plan_catalog.get_price(new_tier, currency)

        await self.provider.update_subscription(
            sub["provider_subscription_id"],
            amount_cents,
            currency,
            reason=_subscription_reason(plan["name"]),
        )

        await self._with_local_retry(
            "Plan change", organization_id,
            self._apply_plan_change, db, organization_id, sub, expected_org_tier, new_tier, amount_cents,
        )

        await create_audit_log(
            action=AuditAction.PLAN_CHANGED,
            actor_role=UserRole.ROLE_ORG_ADMIN if actor_id else UserRole.ROLE_SYSTEM,
            actor_id=actor_id,
            organization_id=organization_id,
            resource_type="subscription",
            resource_id=sub["subscription_id"],
            before_state={"plan_tier": sub["plan_tier"], "amount_cents": sub.get("amount_cents")},
            after_state={"plan_tier": new_tier.value, "amount_cents": amount_cents},
        )
        logger.info(
            "PLAN_CHANGED organization_id=%s from=%s to=%s amount_cents=%s",
            organization_id, sub["plan_tier"], new_tier.value, amount_cents,
        )
        return {"success": True, "plan_tier": new_tier.value}

    async def _apply_plan_change(self, db, organization_id, sub, expected_org_tier, new_tier: PlanTier, amount_cents: int):
        await db.subscriptions.update_one(
            {"subscription_id": sub["subscription_id"], "organization_id": organization_id},
            {"$set": {
                "plan_tier": new_tier.value,
                "amount_cents": amount_cents,
                "updated_at": utc_now().isoformat(),
            }},
        )
        await self._write_org_tier(db, organization_id, expected_org_tier, new_tier)

    async def _write_org_tier(self, db, organization_id, expected_org_tier, new_tier: PlanTier):
        result = await db.organizations.update_one(
            {"organization_id": organization_id, "plan_tier": expected_org_tier},
            {"$set": {
                "plan_tier": new_tier.value,
                **plan_catalog.get_limits(new_tier),
                "updated_at": utc_now().isoformat(),
            }},
        )
        if result.matched_count:
            return
        current = await db.organizations.find_one({"organization_id": organization_id}, {"_id": 0, "plan_tier": 1})
        if current is None:
            raise BillingConsistencyError("Organization not found")
        if current.get("plan_tier") == new_tier.value:
            logger.info("PLAN_CHANGE_ALREADY_APPLIED organization_id=%s tier=%s", organization_id, new_tier.value)
            return
        logger.error(
            "PLAN_CHANGE_CONFLICT organization_id=%s expected=%s found=%s target=%s",
            organization_id, expected_org_tier, current.get("plan_tier"), new_tier.value,
        )
        raise BillingConsistencyError("The organization's plan was changed concurrently. Please reload and retry.")

    # -------------------------------------------------------------------------
    # Cancel / reactivate
    # -------------------------------------------------------------------------

    async def cancel_subscription(self, organization_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Request cancellation.

        Deferred to the end of the paid period, except for checkouts that
        were never completed and subscriptions still inside the
        provider-side free trial, which are cancelled immediately.
        """
        db = database.get_db()
        sub = await self._latest_subscription(db, organization_id, NON_TERMINAL_SUBSCRIPTION_STATUSES)
        if not sub:
            raise BillingConsistencyError("No active subscription to cancel")

        now = utc_now()
        trial_end = parse_iso(sub.get("trial_ends_at"))
        immediate = sub["status"] == SubscriptionStatus.PENDING.value or (trial_end is not None and trial_end > now)

        if immediate:
            await self.provider.cancel_subscription(sub["provider_subscription_id"])
            await db.subscriptions.update_one(
                {"subscription_id": sub["subscription_id"], "organization_id": organization_id},
                {"$set": {
                    "status": SubscriptionStatus.CANCELLED.value,
                    "cancel_at_period_end": False,
                    "canceled_at": now.isoformat(),
                    "updated_at": now.isoformat(),
                }},
            )
            await create_audit_log(
                action=AuditAction.CANCELLATION_FINALIZED,
                actor_id=actor_id,
                organization_id=organization_id,
                resource_type="subscription",
                resource_id=sub["subscription_id"],
                metadata={"immediate": True, "previous_status": sub["status"]},
            )
            logger.info(
                "SUBSCRIPTION_CANCELLED_IMMEDIATELY organization_id=%s subscription_id=%s status=%s",
                organization_id, sub["subscription_id"], sub["status"],
            )
            return {"success": True, "message": "Subscription cancelled", "immediate": True}

        if sub.get("cancel_at_period_end"):
            return {
                "success": True,
                "message": "Subscription is already set to cancel at the end of the current period",
                "immediate": False,
            }

        await db.subscriptions.update_one(
            {"subscription_id": sub["subscription_id"], "organization_id": organization_id},
            {"$set": {"cancel_at_period_end": True, "updated_at": now.isoformat()}},
        )
        await create_audit_log(
            action=AuditAction.CANCELLATION_REQUESTED,
            actor_role=UserRole.ROLE_ORG_ADMIN if actor_id else UserRole.ROLE_SYSTEM,
            actor_id=actor_id,
            organization_id=organization_id,
            resource_type="subscription",
            resource_id=sub["subscription_id"],
            metadata={"current_period_end": sub.get("current_period_end")},
        )
        logger.info(
            "CANCELLATION_REQUESTED organization_id=%s subscription_id=%s period_end=%s",
            organization_id, sub["subscription_id"], sub.get("current_period_end"),
        )
        return {
            "success": True,
            "message": "Subscription will be cancelled at the end of the current period",
            "immediate": False,
        }

    async def reactivate_subscription(self, organization_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        db = database.get_db()
        rows = await db.subscriptions.find(
            {
                "organization_id": organization_id,
                "cancel_at_period_end": True,
                "status": {"$in": sorted(ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES)},
            },
            {"_id": 0},
        ).sort("created_at", -1).limit(1).to_list(1)

        if not rows:
            latest = await self._latest_subscription(db, organization_id)
            if latest and latest["status"] == SubscriptionStatus.CANCELLED.value:
                raise BillingConsistencyError("Subscription is already cancelled. Subscribe again to restore access.")
            raise BillingConsistencyError("No subscription is pending cancellation")

        sub = rows[0]
        await db.subscriptions.update_one(
            {"subscription_id": sub["subscription_id"], "organization_id": organization_id},
            {"$set": {"cancel_at_period_end": False, "updated_at": utc_now().isoformat()}},
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_REACTIVATED,
            actor_role=UserRole.ROLE_ORG_ADMIN if actor_id else UserRole.ROLE_SYSTEM,
            actor_id=actor_id,
            organization_id=organization_id,
            resource_type="subscription",
            resource_id=sub["subscription_id"],
        )
        logger.info("SUBSCRIPTION_REACTIVATED organization_id=%s subscription_id=%s", organization_id, sub["subscription_id"])
        return {"success": True, "message": "Cancellation reverted"}

    async def finalize_deferred_cancellation(self, sub: Dict[str, Any]) -> bool:
        """Cancel a flagged subscription whose period has ended (reconciliation pass 1)."""
        db = database.get_db()
        await self.provider.cancel_subscription(sub["provider_subscription_id"])

        now = utc_now().isoformat()
        result = await db.subscriptions.update_one(
            {
                "subscription_id": sub["subscription_id"],
                "cancel_at_period_end": True,
                "status": {"$in": sorted(ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES)},
            },
            {"$set": {
                "status": SubscriptionStatus.CANCELLED.value,
                "cancel_at_period_end": False,
                "canceled_at": now,
                "updated_at": now,
            }},
        )
        if not result.modified_count:
            return False

        await self.set_plan_status(sub["organization_id"], PlanStatus.CANCELED, reason="cancel_at_period_end")
        await create_audit_log(
            action=AuditAction.CANCELLATION_FINALIZED,
            organization_id=sub["organization_id"],
            resource_type="subscription",
            resource_id=sub["subscription_id"],
            metadata={"immediate": False, "current_period_end": sub.get("current_period_end")},
        )
        return True

    # -------------------------------------------------------------------------
    # Provider-driven updates
    # -------------------------------------------------------------------------

    async def handle_subscription_payment(self, provider_payment_id: str) -> Dict[str, Any]:
        """Record a payment reported by the provider and apply its effect.

        The payment is always re-fetched from the provider. Safe to call any
        number of times with the same id: the invoice is keyed by the
        provider payment id and effects only apply when it is new or its
        status was settled.
        """
        payment = await self.provider.get_payment(str(provider_payment_id))
        organization_id = payment.external_reference
        if not organization_id:
            logger.warning("BILLING_PAYMENT_UNMATCHED payment_id=%s reason=no_external_reference", provider_payment_id)
            return {"handled": False, "reason": "no_external_reference"}

        db = database.get_db()
        org = await db.organizations.find_one({"organization_id": organization_id}, {"_id": 0})
        if not org:
            logger.warning("BILLING_PAYMENT_UNMATCHED payment_id=%s reason=organization_not_found", provider_payment_id)
            return {"handled": False, "reason": "organization_not_found"}

        sub = None
        if payment.provider_subscription_id:
            sub = await db.subscriptions.find_one(
                {"organization_id": organization_id, "provider_subscription_id": payment.provider_subscription_id},
                {"_id": 0},
            )
        if sub is None:
            sub = await self._latest_subscription(db, organization_id, NON_TERMINAL_SUBSCRIPTION_STATUSES)
        if sub is None:
            logger.warning("BILLING_PAYMENT_UNMATCHED payment_id=%s reason=subscription_not_found", provider_payment_id)
            return {"handled": False, "reason": "subscription_not_found"}

        now = utc_now()
        period_end = add_months(now, 1)
        invoice_status = invoice_status_for_payment(payment.status)
        invoice = Invoice(
            organization_id=organization_id,
            subscription_id=sub["subscription_id"],
            amount_cents=payment.amount_cents or sub.get("amount_cents") or 0,
            currency=payment.currency or sub.get("currency"),
            status=invoice_status,
            provider_payment_id=payment.provider_payment_id,
            failure_reason=payment.status_detail if invoice_status == InvoiceStatus.FAILED else None,
            period_start=now.isoformat(),
            period_end=period_end.isoformat(),
            paid_at=(payment.date_approved or now.isoformat()) if invoice_status == InvoiceStatus.PAID else None,
        )
        is_new, settled = await self._upsert_invoice(db, invoice)
        if not is_new and not settled:
            logger.info(
                "BILLING_PAYMENT_DUPLICATE payment_id=%s status=%s organization_id=%s",
                payment.provider_payment_id, invoice_status.value, organization_id,
            )
            # A previous delivery may have stored the invoice and then failed mid-way
            repaired = False
            if invoice_status == InvoiceStatus.PAID:
                repaired = await self._repair_paid_state(db, sub, payment.provider_payment_id)
            return {
                "handled": True,
                "duplicate": True,
                "repaired": repaired,
                "organization_id": organization_id,
                "invoice_status": invoice_status.value,
            }

        if sub["status"] == SubscriptionStatus.CANCELLED.value:
            logger.warning(
                "BILLING_PAYMENT_FOR_CANCELLED_SUBSCRIPTION payment_id=%s subscription_id=%s",
                payment.provider_payment_id, sub["subscription_id"],
            )
        elif invoice_status == InvoiceStatus.PAID:
            await self._apply_successful_payment(db, org, sub, now, period_end)
        elif invoice_status == InvoiceStatus.FAILED:
            await self._apply_failed_payment(db, org, sub, payment.status_detail)

        await create_audit_log(
            action=AuditAction.PAYMENT_RECORDED if invoice_status != InvoiceStatus.FAILED else AuditAction.PAYMENT_FAILED,
            organization_id=organization_id,
            resource_type="invoice",
            resource_id=payment.provider_payment_id,
            metadata={
                "invoice_status": invoice_status.value,
                "provider_status": payment.status,
                "status_detail": payment.status_detail,
                "amount_cents": invoice.amount_cents,
                "subscription_id": sub["subscription_id"],
            },
        )
        logger.info(
            "BILLING_PAYMENT_RECORDED payment_id=%s organization_id=%s status=%s new=%s",
            payment.provider_payment_id, organization_id, invoice_status.value, is_new,
        )
        return {
            "handled": True,
            "duplicate": False,
            "organization_id": organization_id,
            "invoice_status": invoice_status.value,
        }

    async def _upsert_invoice(self, db, invoice: Invoice):
        """Insert-once by provider payment id. Returns (is_new, settled)."""
        is_new = False
        try:
            result = await db.invoices.update_one(
                {"provider_payment_id": invoice.provider_payment_id},
                {"$setOnInsert": invoice.model_dump(mode="json")},
                upsert=True,
            )
            is_new = result.upserted_id is not None
        except DuplicateKeyError:
            # Concurrent delivery inserted it first
            is_new = False
        if is_new or invoice.status == InvoiceStatus.PENDING:
            return is_new, False

        result = await db.invoices.update_one(
            {"provider_payment_id": invoice.provider_payment_id, "status": InvoiceStatus.PENDING.value},
            {"$set": {
                "status": invoice.status.value,
                "failure_reason": invoice.failure_reason,
                "paid_at": invoice.paid_at,
            }},
        )
        return False, result.modified_count > 0

    async def _apply_successful_payment(self, db, org, sub, period_start, period_end) -> None:
        await db.subscriptions.update_one(
            {"subscription_id": sub["subscription_id"]},
            {"$set": {
                "status": SubscriptionStatus.AUTHORIZED.value,
                "retry_count": 0,
                "trial_ends_at": None,
                "current_period_start": period_start.isoformat(),
                "current_period_end": period_end.isoformat(),
                "updated_at": utc_now().isoformat(),
            }},
        )
        await self.update_org_plan_status(
            org["organization_id"], sub["plan_tier"], PlanStatus.ACTIVE, org=org, reason="payment_approved",
        )

    async def _repair_paid_state(self, db, sub: Dict[str, Any], provider_payment_id: Optional[str] = None) -> bool:
        """Re-apply the latest paid invoice when its effects never reached the subscription or organization.

        Only the subscription's most recent invoice counts, so an old approved
        payment redelivered after later failures does not reactivate anything.
        Returns True when a repair was written.
        """
        if sub["status"] not in (SubscriptionStatus.PENDING.value, SubscriptionStatus.AUTHORIZED.value):
            return False
        latest = await db.invoices.find_one(
            {"subscription_id": sub["subscription_id"]}, {"_id": 0}, sort=[("created_at", -1)],
        )
        if not latest or latest.get("status") != InvoiceStatus.PAID.value:
            return False
        if provider_payment_id and latest.get("provider_payment_id") != provider_payment_id:
            return False

        org = await db.organizations.find_one({"organization_id": sub["organization_id"]}, {"_id": 0})
        if not org:
            return False
        sub_behind = sub["status"] == SubscriptionStatus.PENDING.value or int(sub.get("retry_count") or 0) > 0
        org_behind = org.get("plan_status") in AWAITING_PAYMENT_PLAN_STATUSES
        if not (sub_behind or org_behind):
            return False

        logger.warning(
            "BILLING_PAYMENT_EFFECTS_REAPPLIED organization_id=%s subscription_id=%s payment_id=%s plan_status=%s",
            sub["organization_id"], sub["subscription_id"], latest.get("provider_payment_id"), org.get("plan_status"),
        )
        now = utc_now()
        period_start = parse_iso(latest.get("period_start")) or now
        period_end = parse_iso(latest.get("period_end")) or add_months(period_start, 1)
        await self._apply_successful_payment(db, org, sub, period_start, period_end)
        return True

    async def _apply_failed_payment(self, db, org, sub, status_detail: Optional[str]) -> None:
        retry_count = int(sub.get("retry_count") or 0) + 1
        await db.subscriptions.update_one(
            {"subscription_id": sub["subscription_id"]},
            {"$set": {"retry_count": retry_count, "updated_at": utc_now().isoformat()}},
        )
        target = PlanStatus.UNPAID if retry_count >= UNPAID_AFTER_FAILED_PAYMENTS else PlanStatus.PAST_DUE
        if target == PlanStatus.UNPAID and not is_valid_transition(org.get("plan_status"), target):
            target = PlanStatus.PAST_DUE
        logger.warning(
            "BILLING_PAYMENT_FAILED organization_id=%s retry_count=%s detail=%s target=%s",
            org["organization_id"], retry_count, status_detail, target.value,
        )
        await self.set_plan_status(org["organization_id"], target, org=org, reason="payment_failed")

    async def handle_subscription_authorized(self, provider_subscription_id: str) -> Dict[str, Any]:
        """Apply the provider's current state for a preapproval event."""
        remote = await self.provider.get_subscription_status(str(provider_subscription_id))
        db = database.get_db()
        sub = await db.subscriptions.find_one({"provider_subscription_id": str(provider_subscription_id)}, {"_id": 0})
        if not sub:
            logger.warning("BILLING_PREAPPROVAL_UNMATCHED provider_subscription_id=%s", provider_subscription_id)
            return {"handled": False, "reason": "subscription_not_found"}
        changed = await self.apply_provider_status(sub, remote)
        return {"handled": True, "changed": changed, "status": remote.status.value}

    async def apply_provider_status(self, sub: Dict[str, Any], remote: SubscriptionStatusResult) -> bool:
        """Reconcile one local subscription with its provider status. Returns True if anything changed."""
        db = database.get_db()
        local = sub["status"]
        target = remote.status
        organization_id = sub["organization_id"]

        if local == SubscriptionStatus.CANCELLED.value:
            return False
        if local == target.value:
            if local == SubscriptionStatus.AUTHORIZED.value:
                repaired = await self._repair_paid_state(db, sub)
                tier_synced = await self._ensure_tier_synced(db, sub)
                return repaired or tier_synced
            return False

        now = utc_now()
        update: Dict[str, Any] = {"status": target.value, "updated_at": now.isoformat()}
        if target == SubscriptionStatus.CANCELLED:
            update["canceled_at"] = now.isoformat()
            update["cancel_at_period_end"] = False
        result = await db.subscriptions.update_one(
            {"subscription_id": sub["subscription_id"], "status": local},
            {"$set": update},
        )
        if not result.modified_count:
            return False

        if target == SubscriptionStatus.AUTHORIZED:
            trial_end = parse_iso(sub.get("trial_ends_at"))
            in_trial = local == SubscriptionStatus.PENDING.value and trial_end is not None and trial_end > now
            await self.update_org_plan_status(
                organization_id,
                sub["plan_tier"],
                PlanStatus.TRIALING if in_trial else PlanStatus.ACTIVE,
                reason="subscription_authorized",
            )
        elif target == SubscriptionStatus.PAUSED:
            await self.set_plan_status(organization_id, PlanStatus.PAST_DUE, reason="subscription_paused")
        elif target == SubscriptionStatus.CANCELLED and local in ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES:
            await self.set_plan_status(organization_id, PlanStatus.CANCELED, reason="subscription_cancelled_by_provider")

        await create_audit_log(
            action=(
                AuditAction.SUBSCRIPTION_AUTHORIZED
                if local == SubscriptionStatus.PENDING.value and target == SubscriptionStatus.AUTHORIZED
                else AuditAction.SUBSCRIPTION_STATUS_SYNCED
            ),
            organization_id=organization_id,
            resource_type="subscription",
            resource_id=sub["subscription_id"],
            before_state={"status": local},
            after_state={"status": target.value},
            metadata={"provider_raw_status": remote.raw_status},
        )
        logger.info(
            "SUBSCRIPTION_STATUS_SYNCED subscription_id=%s organization_id=%s from=%s to=%s",
            sub["subscription_id"], organization_id, local, target.value,
        )
        return True

    async def _ensure_tier_synced(self, db, sub: Dict[str, Any]) -> bool:
        org = await db.organizations.find_one({"organization_id": sub["organization_id"]}, {"_id": 0})
        if not org or org.get("plan_tier") == sub["plan_tier"]:
            return False
        logger.warning(
            "PLAN_TIER_REPAIRED organization_id=%s org_tier=%s subscription_tier=%s",
            sub["organization_id"], org.get("plan_tier"), sub["plan_tier"],
        )
        await self.sync_limits(sub["organization_id"], sub["plan_tier"])
        return True

    # -------------------------------------------------------------------------
    # Payment methods (display metadata only)
    # -------------------------------------------------------------------------

    async def list_payment_methods(self, organization_id: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        return await db.payment_methods.find(
            {"organization_id": organization_id, "status": PaymentMethodStatus.ACTIVE.value},
            {"_id": 0},
        ).sort("created_at", -1).to_list(100)

    async def has_payment_method(self, organization_id: str) -> bool:
        db = database.get_db()
        count = await db.payment_methods.count_documents(
            {"organization_id": organization_id, "status": PaymentMethodStatus.ACTIVE.value}
        )
        return count > 0

    async def add_payment_method(
        self,
        organization_id: str,
        last_four: str,
        brand: str,
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store display metadata for a card; the first one becomes the default."""
        last_four = (last_four or "").strip()
        brand = (brand or "").strip()
        if len(last_four) != 4 or not last_four.isdigit():
            raise BillingValidationError("lastFour must be exactly 4 digits")
        if not brand:
            raise BillingValidationError("brand is required")

        source = await self.provider.create_payment_source(organization_id, last_four, brand, customer_email)
        is_default = not await self.has_payment_method(organization_id)
        method = PaymentMethod(
            organization_id=organization_id,
            provider=self.provider.name,
            provider_payment_method_id=source.provider_payment_method_id,
            last_four=source.last_four,
            brand=source.brand,
            customer_email=customer_email,
            is_default=is_default,
        )
        db = database.get_db()
        doc = method.model_dump(mode="json")
        await db.payment_methods.insert_one(dict(doc))
        if is_default:
            await db.payment_methods.update_many(
                {"organization_id": organization_id, "payment_method_id": {"$ne": method.payment_method_id}},
                {"$set": {"is_default": False}},
            )
        await create_audit_log(
            action=AuditAction.PAYMENT_METHOD_ADDED,
            organization_id=organization_id,
            resource_type="payment_method",
            resource_id=method.payment_method_id,
            metadata={"brand": method.brand, "last_four": method.last_four, "is_default": is_default},
        )
        return doc

    async def remove_payment_method(self, organization_id: str, payment_method_id: str) -> None:
        """Soft-delete; the newest remaining method inherits the default flag."""
        db = database.get_db()
        existing = await db.payment_methods.find_one(
            {
                "payment_method_id": payment_method_id,
                "organization_id": organization_id,
                "status": PaymentMethodStatus.ACTIVE.value,
            },
            {"_id": 0},
        )
        if not existing:
            raise BillingConsistencyError("Payment method not found")

        await db.payment_methods.update_one(
            {"payment_method_id": payment_method_id, "organization_id": organization_id},
            {"$set": {"status": PaymentMethodStatus.INACTIVE.value, "is_default": False}},
        )
        if existing.get("is_default"):
            remaining = await self.list_payment_methods(organization_id)
            if remaining:
                await db.payment_methods.update_one(
                    {"payment_method_id": remaining[0]["payment_method_id"]},
                    {"$set": {"is_default": True}},
                )
        await create_audit_log(
            action=AuditAction.PAYMENT_METHOD_REMOVED,
            organization_id=organization_id,
            resource_type="payment_method",
            resource_id=payment_method_id,
        )

    # -------------------------------------------------------------------------
    # Status summary
    # -------------------------------------------------------------------------

    async def get_billing_status(self, organization_id: str) -> Dict[str, Any]:
        db = database.get_db()
        org = await self._load_org(db, organization_id)
        plan = plan_catalog.get_plan(org.get("plan_tier"))
        sub = await self.get_subscription_info(organization_id)

        subscription = None
        if sub:
            subscription = {
                "id": sub["subscription_id"],
                "planTier": sub["plan_tier"],
                "status": sub["status"],
                "amountCents": sub.get("amount_cents"),
                "currency": sub.get("currency"),
                "formattedPrice": format_price(sub.get("amount_cents") or 0, sub.get("currency") or "COP"),
                "currentPeriodStart": sub.get("current_period_start"),
                "currentPeriodEnd": sub.get("current_period_end"),
                "cancelAtPeriodEnd": bool(sub.get("cancel_at_period_end")),
                "trialEndsAt": sub.get("trial_ends_at"),
            }

        return {
            "plan": {
                "tier": plan["tier"],
                "name": plan["name"],
                "status": org.get("plan_status"),
                "trialEndsAt": org.get("trial_ends_at"),
            },
            "subscription": subscription,
            "hasPaymentMethod": await self.has_payment_method(organization_id),
            "provider": org.get("payment_provider") or self.provider.name,
        }


# Singleton instance
subscription_engine = SubscriptionEngine()
