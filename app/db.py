from functools import lru_cache
import os

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConfigurationError

QUARANTINE_COLLECTION = "quarantined_files"
UPLOADED_COLLECTION = "uploaded_files"
ACCESS_LOG_COLLECTION = "file_access_logs"


@lru_cache
def _mongo_uri() -> str:
    return os.getenv("MONGODB_URI", "mongodb://localhost:27017/intake")


@lru_cache
def get_mongo_client() -> AsyncIOMotorClient:
    # Singleton – Motor manages its own connection pool internally.
    return AsyncIOMotorClient(_mongo_uri())


def get_db():
    client = get_mongo_client()
    try:
        # Preferred: database name in URI path (e.g. ...mongodb.net/intake)
        return client.get_default_database()
    except ConfigurationError:
        # Fallback for URIs without db path.
        return client.get_database(os.getenv("MONGO_DB", "intake"))


async def ensure_indexes():
    """
    Ensure indexes for the per-user listings, the metrics windows and
    access-log lookups. Quarantine and upload records are kept forever,
    so there is no TTL index here.
    """
    db = get_db()
    await db[UPLOADED_COLLECTION].create_index("id", unique=True)
    await db[UPLOADED_COLLECTION].create_index(
        [("user_id", ASCENDING), ("created_at", DESCENDING)]
    )
    await db[QUARANTINE_COLLECTION].create_index(
        [("user_id", ASCENDING), ("created_at", DESCENDING)]
    )
    await db[QUARANTINE_COLLECTION].create_index("created_at")
    await db[ACCESS_LOG_COLLECTION].create_index("file_id")
