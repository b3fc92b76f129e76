"""Admin Billing Routes - platform-wide billing overview.

Endpoints:
- GET /api/admin/billing/plans - Organization count per tier and monthly recurring revenue
- GET /api/admin/billing/organizations/{organization_id} - Billing snapshot for one organization
- GET /api/admin/billing/jobs/status - Scheduled billing jobs
- POST /api/admin/billing/jobs/run - Run a billing job now

Read-only except for job runs; every manual run is audit-logged.
"""
import logging
from typing import Any, Dict
from fastapi import APIRouter, HTTPException, Request, status, Depends
from pydantic import BaseModel
from database import database
from middleware import admin_route_guard
from models import AuditAction, UserRole
from utils.audit import create_audit_log, get_audit_logs_for_organization
from services.plan_catalog import TIER_ORDER, format_price, plan_catalog
from services.subscription_engine import ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"], dependencies=[Depends(admin_route_guard)])

ORGANIZATION_BILLING_FIELDS = {
    "_id": 0,
    "organization_id": 1,
    "name": 1,
    "plan_tier": 1,
    "plan_status": 1,
    "trial_ends_at": 1,
    "payment_provider": 1,
    "max_properties": 1,
    "max_team_members": 1,
    "max_conversations_per_month": 1,
    "conversations_used_this_month": 1,
    "conversations_reset_at": 1,
}


class RunJobRequest(BaseModel):
    job: str


@router.get("/plans")
async def get_plan_overview():
    """Per-tier organization counts and monthly revenue from paying subscriptions."""
    db = database.get_db()
    try:
        tiers: Dict[str, Dict[str, Any]] = {}
        for tier in TIER_ORDER:
            plan = plan_catalog.get_plan(tier)
            tiers[tier.value] = {
                "tier": tier.value,
                "name": plan["name"],
                "organizations": await db.organizations.count_documents({"plan_tier": tier.value}),
                "activeSubscriptions": 0,
                "monthlyRevenue": {},
            }

        subs = await db.subscriptions.find(
            {"status": {"$in": sorted(ACTIVE_EQUIVALENT_SUBSCRIPTION_STATUSES)}},
            {"_id": 0, "plan_tier": 1, "amount_cents": 1, "currency": 1},
        ).to_list(10000)

        totals: Dict[str, int] = {}
        for sub in subs:
            row = tiers.get(sub.get("plan_tier"))
            if row is None:
                continue
            currency = sub.get("currency") or "COP"
            amount = sub.get("amount_cents") or 0
            row["activeSubscriptions"] += 1
            row["monthlyRevenue"][currency] = row["monthlyRevenue"].get(currency, 0) + amount
            totals[currency] = totals.get(currency, 0) + amount

        return {
            "plans": list(tiers.values()),
            "totalMonthlyRevenue": totals,
            "formattedTotals": {c: format_price(a, c) for c, a in totals.items()},
        }
    except Exception as e:
        logger.error(f"Plan overview error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load plan overview"
        )


@router.get("/organizations/{organization_id}")
async def get_organization_billing(organization_id: str):
    """Full billing snapshot: org fields, subscription history, recent audit trail."""
    db = database.get_db()
    org = await db.organizations.find_one({"organization_id": organization_id}, ORGANIZATION_BILLING_FIELDS)
    if not org:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    subscriptions = await db.subscriptions.find(
        {"organization_id": organization_id}, {"_id": 0}
    ).sort("created_at", -1).to_list(50)
    invoices = await db.invoices.find(
        {"organization_id": organization_id}, {"_id": 0}
    ).sort("created_at", -1).limit(20).to_list(20)

    return {
        "organization": org,
        "subscriptions": subscriptions,
        "invoices": invoices,
        "auditLogs": await get_audit_logs_for_organization(organization_id, limit=50),
    }


@router.get("/jobs/status")
async def get_jobs_status():
    from server import scheduler
    jobs = []
    if scheduler.running:
        for job in scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None
            })
    return {"scheduler_running": scheduler.running, "scheduled_jobs": jobs}


@router.post("/jobs/run")
async def run_job_now(request: Request, body: RunJobRequest):
    """Run a billing job by id and return its summary message."""
    user = await admin_route_guard(request)
    from job_runner import JOB_RUNNERS

    job_id = (body.job or "").strip()
    if not job_id or job_id not in JOB_RUNNERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid job. Use one of: {', '.join(sorted(JOB_RUNNERS.keys()))}"
        )
    try:
        result = await JOB_RUNNERS[job_id]()
    except Exception as e:
        logger.error(f"Manual job run error ({job_id}): {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to run job: {job_id}"
        )

    await create_audit_log(
        action=AuditAction.ADMIN_JOB_RUN,
        actor_role=UserRole.ROLE_SUPER_ADMIN,
        actor_id=user.get("user_id"),
        metadata={"job_id": job_id, "message": result.get("message")},
    )
    return {"success": True, "job": job_id, "message": result.get("message")}
