"""Cron Routes - externally scheduled billing sweep.

POST /api/cron/billing - Run the reconciliation sweep. Requires
``Authorization: Bearer <CRON_SECRET>``; intended for an external scheduler
when the in-process APScheduler job is disabled.
"""
from fastapi import APIRouter, HTTPException, Request, status
from job_runner import run_billing_reconciliation
import hmac
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])


def _cron_token_ok(auth_header: str, secret: str) -> bool:
    if not auth_header or not auth_header.startswith("Bearer "):
        return False
    return hmac.compare_digest(auth_header[len("Bearer "):].strip(), secret)


@router.post("/billing")
async def run_billing_cron(request: Request):
    secret = (os.getenv("CRON_SECRET") or "").strip()
    if not secret:
        logger.error("CRON_SECRET is not set; refusing to run billing sweep")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Cron not configured"
        )
    if not _cron_token_ok(request.headers.get("Authorization", ""), secret):
        logger.warning("Billing cron rejected: missing or invalid bearer token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        result = await run_billing_reconciliation()
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Billing reconciliation failed"
        )

    return {
        "canceledAtPeriodEnd": result["canceled_at_period_end"],
        "expiredTrials": result["expired_trials"],
        "statusSynced": result["status_synced"],
        "conversationsReset": result["conversations_reset"],
        "errors": result["errors"],
    }
