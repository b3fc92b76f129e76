"""Billing reconciliation sweep - time-driven transitions and provider re-sync.

Runs daily (APScheduler job and POST /api/cron/billing). Four independent
passes; each one catches its own failures and collects per-item errors so
one bad organization never aborts the sweep:

1. Finalize deferred cancellations whose period has ended.
2. Cancel organizations whose trial ended without an authorized subscription.
3. Re-sync every non-terminal subscription with the provider (missed webhooks).
4. Reset monthly conversation counters whose cycle boundary has passed.

All passes are idempotent; re-running the sweep converges on the same state.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from database import database
from models import AuditAction, PlanStatus, utc_now
from services.subscription_engine import (
    ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES,
    NON_TERMINAL_SUBSCRIPTION_STATUSES,
    SubscriptionEngine,
    subscription_engine,
)
from utils.audit import create_audit_log
from utils.billing_dates import first_of_next_month

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


def _batch_size() -> int:
    return int(os.getenv("BILLING_SWEEP_BATCH_SIZE", DEFAULT_BATCH_SIZE))


async def _iter_batches(
    collection,
    query: Dict[str, Any],
    projection: Dict[str, Any],
    key: str,
) -> AsyncIterator[Dict[str, Any]]:
    """Yield every matching document, paging on `key` in batches.

    Rows a pass leaves untouched stay in the query, so each page resumes
    after the last key seen instead of re-reading the head of the set.
    """
    page_size = _batch_size()
    last_key = None
    while True:
        page_query = query if last_key is None else {"$and": [query, {key: {"$gt": last_key}}]}
        page = await collection.find(page_query, projection).sort(key, 1).limit(page_size).to_list(page_size)
        for doc in page:
            yield doc
        if len(page) < page_size:
            return
        last_key = page[-1][key]


async def finalize_deferred_cancellations(engine: SubscriptionEngine, now: datetime, errors: List[str]) -> int:
    db = database.get_db()
    subs = _iter_batches(
        db.subscriptions,
        {
            "cancel_at_period_end": True,
            "status": {"$in": sorted(ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES)},
            "current_period_end": {"$lt": now.isoformat()},
        },
        {"_id": 0},
        "subscription_id",
    )

    count = 0
    async for sub in subs:
        try:
            if await engine.finalize_deferred_cancellation(sub):
                count += 1
                logger.info(
                    "RECONCILE_CANCELLATION_FINALIZED organization_id=%s subscription_id=%s",
                    sub["organization_id"], sub["subscription_id"],
                )
        except Exception as e:
            logger.error(
                "RECONCILE_CANCELLATION_FAILED organization_id=%s subscription_id=%s error=%s",
                sub.get("organization_id"), sub.get("subscription_id"), e,
            )
            errors.append(f"Cancel failed for org {sub.get('organization_id')}: {e}")
    return count


async def expire_trials(now: datetime, errors: List[str]) -> int:
    db = database.get_db()
    orgs = _iter_batches(
        db.organizations,
        {"plan_status": PlanStatus.TRIALING.value, "trial_ends_at": {"$lt": now.isoformat()}},
        {"_id": 0, "organization_id": 1, "trial_ends_at": 1},
        "organization_id",
    )

    count = 0
    async for org in orgs:
        organization_id = org["organization_id"]
        try:
            authorized = await db.subscriptions.count_documents({
                "organization_id": organization_id,
                "status": {"$in": sorted(ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES)},
            })
            if authorized:
                # First charge still outstanding; the payment webhook or pass 3 settles it
                continue
            result = await db.organizations.update_one(
                {"organization_id": organization_id, "plan_status": PlanStatus.TRIALING.value},
                {"$set": {"plan_status": PlanStatus.CANCELED.value, "updated_at": now.isoformat()}},
            )
            if result.modified_count:
                count += 1
                await create_audit_log(
                    action=AuditAction.TRIAL_EXPIRED,
                    organization_id=organization_id,
                    resource_type="organization",
                    resource_id=organization_id,
                    before_state={"plan_status": PlanStatus.TRIALING.value},
                    after_state={"plan_status": PlanStatus.CANCELED.value},
                    metadata={"trial_ends_at": org.get("trial_ends_at")},
                )
                logger.info("RECONCILE_TRIAL_EXPIRED organization_id=%s", organization_id)
        except Exception as e:
            logger.error("RECONCILE_TRIAL_EXPIRY_FAILED organization_id=%s error=%s", organization_id, e)
            errors.append(f"Trial expiry failed for org {organization_id}: {e}")
    return count


async def sync_subscription_statuses(engine: SubscriptionEngine, errors: List[str]) -> int:
    db = database.get_db()
    subs = _iter_batches(
        db.subscriptions,
        {
            "status": {"$in": sorted(NON_TERMINAL_SUBSCRIPTION_STATUSES)},
            "provider_subscription_id": {"$ne": None},
        },
        {"_id": 0},
        "subscription_id",
    )

    count = 0
    async for sub in subs:
        try:
            remote = await engine.provider.get_subscription_status(sub["provider_subscription_id"])
            if await engine.apply_provider_status(sub, remote):
                count += 1
        except Exception as e:
            logger.error(
                "RECONCILE_SYNC_FAILED organization_id=%s subscription_id=%s error=%s",
                sub.get("organization_id"), sub.get("subscription_id"), e,
            )
            errors.append(f"Sync failed for org {sub.get('organization_id')}: {e}")
    return count


async def reset_conversation_counters(now: datetime, errors: List[str]) -> int:
    db = database.get_db()
    orgs = _iter_batches(
        db.organizations,
        {"$or": [
            {"conversations_reset_at": {"$lt": now.isoformat()}},
            {"conversations_reset_at": None},
        ]},
        {"_id": 0, "organization_id": 1, "conversations_reset_at": 1, "conversations_used_this_month": 1},
        "organization_id",
    )

    next_reset = first_of_next_month(now).isoformat()
    count = 0
    async for org in orgs:
        organization_id = org["organization_id"]
        try:
            # Guarded on the boundary we read so each cycle resets once
            result = await db.organizations.update_one(
                {"organization_id": organization_id, "conversations_reset_at": org.get("conversations_reset_at")},
                {"$set": {
                    "conversations_used_this_month": 0,
                    "conversations_reset_at": next_reset,
                }},
            )
            if result.modified_count:
                count += 1
                await create_audit_log(
                    action=AuditAction.USAGE_COUNTERS_RESET,
                    organization_id=organization_id,
                    resource_type="organization",
                    resource_id=organization_id,
                    metadata={
                        "previous_count": org.get("conversations_used_this_month", 0),
                        "next_reset_at": next_reset,
                    },
                )
        except Exception as e:
            logger.error("RECONCILE_RESET_FAILED organization_id=%s error=%s", organization_id, e)
            errors.append(f"Counter reset failed for org {organization_id}: {e}")
    return count


async def reconcile_billing(
    now: Optional[datetime] = None,
    engine: Optional[SubscriptionEngine] = None,
) -> Dict[str, Any]:
    """Run all four passes and return counts plus per-organization errors."""
    now = now or utc_now()
    engine = engine or subscription_engine
    errors: List[str] = []
    summary: Dict[str, Any] = {
        "canceled_at_period_end": 0,
        "expired_trials": 0,
        "status_synced": 0,
        "conversations_reset": 0,
        "errors": errors,
    }

    passes = [
        ("canceled_at_period_end", lambda: finalize_deferred_cancellations(engine, now, errors)),
        ("expired_trials", lambda: expire_trials(now, errors)),
        ("status_synced", lambda: sync_subscription_statuses(engine, errors)),
        ("conversations_reset", lambda: reset_conversation_counters(now, errors)),
    ]
    for key, run_pass in passes:
        try:
            summary[key] = await run_pass()
        except Exception as e:
            logger.exception("RECONCILE_PASS_FAILED pass=%s error=%s", key, e)
            errors.append(f"Pass {key} failed: {e}")

    logger.info(
        "RECONCILE_COMPLETE canceled=%s trials_expired=%s synced=%s conversations_reset=%s errors=%s",
        summary["canceled_at_period_end"], summary["expired_trials"], summary["status_synced"],
        summary["conversations_reset"], len(errors),
    )
    return summary
