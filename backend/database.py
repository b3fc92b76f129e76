from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None
    
    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")
            
            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise
    
    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
    
    def get_db(self):
        return self.db
    
    async def _create_indexes(self):
        """Create MongoDB indexes for billing lookups and uniqueness guarantees."""
        # Webhook idempotency relies on this index; startup must fail without it
        try:
            await self.db.invoices.create_index("provider_payment_id", unique=True, sparse=True)
        except Exception as e:
            logger.error(f"INVOICE_IDEMPOTENCY_INDEX_MISSING error={e}")
            raise

        try:
            await self.db.organizations.create_index("organization_id", unique=True)
            await self.db.organizations.create_index([("plan_status", 1), ("trial_ends_at", 1)])
            await self.db.organizations.create_index("conversations_reset_at")

            # Subscriptions - one row per checkout; status filters drive the sweep
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index([("organization_id", 1), ("status", 1)])
            await self.db.subscriptions.create_index([("organization_id", 1), ("created_at", -1)])
            await self.db.subscriptions.create_index([("cancel_at_period_end", 1), ("current_period_end", 1)])
            await self.db.subscriptions.create_index("provider_subscription_id", sparse=True)

            # Invoices - provider payment id is the idempotency key for webhooks
            await self.db.invoices.create_index("invoice_id", unique=True)
            await self.db.invoices.create_index([("organization_id", 1), ("created_at", -1)])

            await self.db.payment_methods.create_index("payment_method_id", unique=True)
            await self.db.payment_methods.create_index([("organization_id", 1), ("status", 1)])

            # Audit log indexes - for per-organization billing history
            await self.db.audit_logs.create_index([("organization_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.
    
    Usage in scripts:
        async with get_db_context() as db:
            await db.organizations.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = AsyncIOMotorClient(mongo_url)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
