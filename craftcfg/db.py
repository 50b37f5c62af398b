from functools import lru_cache
import os

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConfigurationError


@lru_cache
def _mongo_uri() -> str:
    return os.getenv("MONGODB_URI", "mongodb://localhost:27017/craftcfg")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


@lru_cache
def get_mongo_client() -> AsyncIOMotorClient:
    # Singleton – Motor manages its own connection pool internally.
    return AsyncIOMotorClient(
        _mongo_uri(),
        serverSelectionTimeoutMS=_env_int("MONGODB_TIMEOUT_MS", 2000),
    )


def get_db():
    client = get_mongo_client()
    try:
        # Preferred: database name in URI path (e.g. ...mongodb.net/craftcfg)
        return client.get_default_database()
    except ConfigurationError:
        # Fallback for URIs without db path.
        return client.get_database(os.getenv("MONGO_DB", "craftcfg"))


async def ensure_upload_indexes():
    """
    Ensure indexes needed for record lookups and automatic retention.
    """
    db = get_db()
    retention_days = _env_int("UPLOAD_RETENTION_DAYS", 90)
    await db.uploads.create_index("sha256")
    await db.uploads.create_index("user_id")
    await db.uploads.create_index(
        "created_at",
        expireAfterSeconds=retention_days * 24 * 60 * 60,
        name="uploads_created_at_ttl",
    )
