from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from quota_settings import get_mongo_timeout_ms

logger = logging.getLogger(__name__)


def _client_options() -> dict:
    timeout_ms = get_mongo_timeout_ms()
    return {
        "serverSelectionTimeoutMS": timeout_ms,
        "connectTimeoutMS": timeout_ms,
        "socketTimeoutMS": timeout_ms,
        "tz_aware": True,
    }


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, **_client_options())
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
        """Create MongoDB indexes used by the limit gate, sweeps and ground-truth counts."""
        try:
            # Subscriptions are keyed by _id == tenant_id, which already enforces one per tenant
            await self.db.subscriptions.create_index([("status", 1), ("expiry_date", 1)])
            await self.db.subscriptions.create_index([("status", 1), ("grace_period_end", 1)])
            await self.db.subscriptions.create_index("plan_tier")

            # Ground-truth counting
            await self.db.exams.create_index("teacher_id")
            await self.db.subjects.create_index([("school_id", 1), ("status", 1)])
            await self.db.subjects.create_index([("teacher_id", 1), ("status", 1)])
            await self.db.users.create_index([("role", 1), ("school_id", 1), ("status", 1)])

            await self.db.subscription_events.create_index([("tenant_id", 1), ("timestamp", -1)])
            await self.db.subscription_events.create_index([("event_type", 1), ("timestamp", -1)])
            await self.db.mail.create_index([("status", 1), ("created_at", 1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

