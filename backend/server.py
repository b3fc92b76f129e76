from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import billing, webhooks, cron, admin_billing

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

RUNNING_UNDER_PYTEST = bool(os.environ.get("PYTEST_RUNNING"))


def _scheduler_enabled() -> bool:
    if RUNNING_UNDER_PYTEST:
        return False
    return os.environ.get("BILLING_SCHEDULER_ENABLED", "true").strip().lower() not in ("0", "false", "no")


# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'billing')

jobstores = {}
if _scheduler_enabled():
    try:
        from pymongo import MongoClient
        mongo_client = MongoClient(mongo_url)
        jobstores['default'] = MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

# Job runners are shared with the cron endpoint and admin run-now
from job_runner import run_billing_reconciliation


def _log_provider_config():
    """Log which payment provider is active and whether its credentials are present (never the values)."""
    provider_name = (os.environ.get("PAYMENT_PROVIDER") or "mercadopago").strip().lower()
    logger.info("PAYMENT_PROVIDER = %s", provider_name)
    if provider_name == "mercadopago":
        if not (os.environ.get("MERCADO_PAGO_ACCESS_TOKEN") or "").strip():
            logger.error("MERCADO_PAGO_ACCESS_TOKEN is not set. Subscribe and webhook processing will fail.")
        if not (os.environ.get("MERCADO_PAGO_WEBHOOK_SECRET") or "").strip():
            logger.error("MERCADO_PAGO_WEBHOOK_SECRET is not set. All webhooks will be rejected.")
    if not (os.environ.get("CRON_SECRET") or "").strip():
        logger.warning("CRON_SECRET is not set. POST /api/cron/billing is disabled.")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Billing API")
    await database.connect()
    _log_provider_config()

    if _scheduler_enabled():
        # Daily billing reconciliation (deferred cancels, trials, provider sync, usage reset)
        scheduler.add_job(
            run_billing_reconciliation,
            CronTrigger(hour=int(os.environ.get("BILLING_CRON_HOUR", "3")), minute=0),
            id="billing_reconciliation",
            name="Billing Reconciliation Sweep",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")
    else:
        logger.info("Background job scheduler disabled")

    yield

    # Shutdown
    logger.info("Shutting down Billing API")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Billing API",
    description="Subscription billing, provider webhooks and plan gating",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(billing.router)  # Subscriptions, invoices, payment methods
app.include_router(webhooks.router)  # Provider webhooks
app.include_router(cron.router)  # External scheduler trigger
app.include_router(admin_billing.router)  # Platform admin overview

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Billing API",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + field errors for billing request debugging
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    path = getattr(request, "url", None) and getattr(request.url, "path", "") or ""
    if path.startswith("/api/billing"):
        logger.warning(
            "Billing validation failed request_id=%s path=%s errors=%s",
            request_id,
            path,
            [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
        )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
