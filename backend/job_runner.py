"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and the cron trigger endpoint.
Each run_* returns a dict with "message" plus the job's counts.
"""
import logging

logger = logging.getLogger(__name__)


async def run_billing_reconciliation():
    try:
        from services.billing_reconciliation_service import reconcile_billing
        summary = await reconcile_billing()
        message = (
            f"Billing reconciliation: {summary['canceled_at_period_end']} cancelled at period end, "
            f"{summary['expired_trials']} trials expired, {summary['status_synced']} synced, "
            f"{summary['conversations_reset']} counters reset, {len(summary['errors'])} errors"
        )
        logger.info(message)
        return {"message": message, **summary}
    except Exception as e:
        logger.error(f"Billing reconciliation job failed: {e}")
        raise


JOB_RUNNERS = {
    "billing_reconciliation": run_billing_reconciliation,
}
