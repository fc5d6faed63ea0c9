"""Async MongoDB Client using Motor for async operations"""
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global async client instance
_async_client: Optional[AsyncIOMotorClient] = None
_async_database: Optional[AsyncIOMotorDatabase] = None

ENTITIES = "core_entities"
DYNAMIC_DATA = "core_dynamic_data"
RELATIONSHIPS = "core_relationships"
TRANSACTIONS = "universal_transactions"


def get_async_client() -> AsyncIOMotorClient:
    """Get or create async MongoDB client using Motor"""
    global _async_client
    if _async_client is None:
        logger.info(f"Creating async MongoDB client for: {settings.mongo_uri}")
        _async_client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
            tz_aware=True,
        )
    return _async_client


def get_async_database() -> AsyncIOMotorDatabase:
    """Get the async application database"""
    global _async_database
    if _async_database is None:
        client = get_async_client()
        _async_database = client[settings.mongo_db]
        logger.info(f"Using async database: {settings.mongo_db}")
    return _async_database


async def create_indexes(db: Optional[AsyncIOMotorDatabase] = None) -> None:
    """Create all required indexes"""
    db = db if db is not None else get_async_database()
    logger.info("Creating MongoDB indexes...")

    entities = db[ENTITIES]
    await entities.create_index([("organization_id", ASCENDING), ("entity_type", ASCENDING)])
    await entities.create_index("smart_code")
    # Store-level uniqueness used by idempotency records to settle races
    await entities.create_index(
        [("organization_id", ASCENDING), ("entity_type", ASCENDING), ("entity_code", ASCENDING)],
        unique=True,
        partialFilterExpression={"entity_code": {"$type": "string"}},
        name="uniq_org_type_code",
    )

    dynamic = db[DYNAMIC_DATA]
    await dynamic.create_index(
        [("organization_id", ASCENDING), ("entity_id", ASCENDING), ("field_name", ASCENDING)],
        unique=True,
    )

    relationships = db[RELATIONSHIPS]
    await relationships.create_index([
        ("organization_id", ASCENDING),
        ("from_entity_id", ASCENDING),
        ("relationship_type", ASCENDING),
        ("is_active", ASCENDING),
    ])
    await relationships.create_index("to_entity_id")

    transactions = db[TRANSACTIONS]
    await transactions.create_index([("organization_id", ASCENDING), ("transaction_type", ASCENDING)])
    await transactions.create_index([("source_entity_id", ASCENDING), ("transaction_date", ASCENDING)])
    await transactions.create_index([("metadata.status", ASCENDING), ("metadata.wake_at", ASCENDING)])
    await transactions.create_index([("metadata.status", ASCENDING), ("metadata.timeout_at", ASCENDING)])
    await transactions.create_index("transaction_date", background=True)

    logger.info("MongoDB indexes created successfully")


async def close_async_connection() -> None:
    """Close async MongoDB connection"""
    global _async_client, _async_database
    if _async_client is not None:
        _async_client.close()
        _async_client = None
        _async_database = None
        logger.info("Async MongoDB connection closed")


async def async_health_check() -> dict:
    """Check async MongoDB health"""
    try:
        client = get_async_client()
        await client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok",
            "type": "async"
        }
    except Exception as e:
        logger.error(f"Async MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e),
            "type": "async"
        }
