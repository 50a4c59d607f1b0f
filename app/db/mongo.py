import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from app.core.config import settings

logger = logging.getLogger(__name__)


class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    mongodb.db = mongodb.client[settings.DATABASE_NAME]

    await create_indexes()
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)

async def close_mongo_connection():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
    logger.info("Disconnected from MongoDB")

async def create_indexes():
    """Create database indexes."""
    bookings = mongodb.db["bookings"]

    # Webhook lookups by gateway ids
    await bookings.create_index("payment_history.reference_id")
    await bookings.create_index("payment_history.session_id")
    await bookings.create_index("stripe_payment_intent_id", sparse=True)
    await bookings.create_index("stripe_checkout_session_id", sparse=True)

def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db
