"""
MongoDB connection management using Motor (async driver).

Architecture decision: single DatabaseClient instance shared across all
requests via a module-level singleton. FastAPI's dependency injection
(get_db, and get_report_store on top of it) gives routes clean access
without importing the singleton directly.

Local dev: connects to the Docker Compose mongo container.
Production: connects to MongoDB Atlas (same code, different URI).

The connection is opened in FastAPI's lifespan (startup) and closed
on shutdown.
"""

import logging
import re

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING

from pothole_map.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Holds the Motor client and selected database.

    A class rather than bare globals so tests can swap .client and .db.
    """

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


# Module-level singleton — all app code references this object
db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection, validate it with a ping and ensure indexes.

    If MongoDB is unavailable the API still starts; report endpoints answer
    503 until it comes back, and /health reports "disconnected".
    """
    if settings.report_store != "mongo":
        logger.info("Report store is '%s' — skipping MongoDB connection", settings.report_store)
        return

    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            tlsCAFile=certifi.where(),
        )
        db_client.db = db_client.client[settings.mongo_db_name]
        await db_client.client.admin.command("ping")
        await ensure_indexes(db_client.db)
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        logger.warning(
            "MongoDB unavailable at startup: %s. "
            "API running in degraded mode — report endpoints will return 503.",
            exc,
        )
        db_client.client = None
        db_client.db = None


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Indexes the duplicate guard and map snapshot rely on. Idempotent."""
    await db["reports"].create_index([("latitude", ASCENDING), ("longitude", ASCENDING)])
    await db["reports"].create_index("status")
    await db["reports"].create_index([("location", "2dsphere")])
    # Stale geocell locks vanish on their own once expires_at passes.
    await db["geocell_locks"].create_index("expires_at", expireAfterSeconds=0)
    # Coarse writers look for live fine locks.
    await db["geocell_locks"].create_index([("kind", ASCENDING), ("expires_at", ASCENDING)])


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


def get_db() -> AsyncIOMotorDatabase | None:
    """
    FastAPI dependency — the database handle, or None when MongoDB is down.
    """
    return db_client.db


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
