from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

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
        """Create MongoDB indexes for lookups and idempotency guarantees."""
        try:
            await self.db.subscription_plans.create_index("plan_id", unique=True)
            
            await self.db.user_permissions.create_index("user_id", unique=True)
            
            # Subscriptions - one row per user, updated in place, never deleted
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            try:
                await self.db.subscriptions.create_index("user_id", unique=True)
            except OperationFailure as e:
                logger.warning(f"Unique index not created (duplicates present?): {e}")
            await self.db.subscriptions.create_index("payment_intent_id")
            # Idempotency key: an intent id can be recorded on at most one subscription.
            # Partial so free and bank-transfer rows (no intents) do not collide.
            try:
                await self.db.subscriptions.create_index(
                    "payment_intent_ids",
                    unique=True,
                    partialFilterExpression={"payment_intent_ids": {"$type": "string"}},
                )
            except OperationFailure as e:
                logger.warning(f"Unique index not created (duplicates present?): {e}")
            
            # Payment attempts - correlation data for webhook reconciliation
            await self.db.payment_attempts.create_index("attempt_id", unique=True)
            try:
                await self.db.payment_attempts.create_index(
                    "intent_id",
                    unique=True,
                    partialFilterExpression={"intent_id": {"$type": "string"}},
                )
            except OperationFailure as e:
                logger.warning(f"Unique index not created (duplicates present?): {e}")
            await self.db.payment_attempts.create_index([("user_id", 1), ("created_at", -1)])
            
            # Webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.webhook_events.create_index("event_id", unique=True)
            except OperationFailure as e:
                logger.warning(f"Unique index not created (duplicates present?): {e}")
            
            # Persistence failures awaiting manual reconciliation
            await self.db.reconciliation_flags.create_index("flag_id", unique=True)
            await self.db.reconciliation_flags.create_index([("status", 1), ("created_at", -1)])
            await self.db.reconciliation_flags.create_index("intent_id")
            
            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            
            logger.info("Database indexes created successfully")
        except Exception as e:
            logger.warning(f"Index creation warning (may already exist): {e}")

database = Database()
