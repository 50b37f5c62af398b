from collections import deque
from datetime import UTC, datetime
from threading import Lock
from time import monotonic, time
import logging
import math
import os
from typing import Protocol

from craftcfg.db import get_db

logger = logging.getLogger("craftcfg.rate_limit")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


RATE_LIMIT_MAX_UPLOADS = _env_int("UPLOAD_RATE_LIMIT_MAX", 5)
RATE_LIMIT_WINDOW_SECONDS = _env_int("UPLOAD_RATE_LIMIT_WINDOW_SECONDS", 15 * 60)
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory").strip().lower()


def _retry_after(oldest: float, now: float, window_seconds: int) -> int:
    remaining = math.ceil(oldest + window_seconds - now)
    return max(1, min(window_seconds, remaining))


class UploadRateLimiter(Protocol):
    async def retry_after(self, identity: str, now: float | None = None) -> int:
        """Return 0 when an upload is allowed, otherwise seconds to wait."""

    async def record(self, identity: str, now: float | None = None) -> None:
        """Count one accepted upload for ``identity``."""


class InMemoryUploadRateLimiter:
    """Per-process trailing-window counter. Counters are lost on restart."""

    def __init__(self, max_uploads: int, window_seconds: int):
        self.max_uploads = max_uploads
        self.window_seconds = window_seconds
        self._lock = Lock()
        self._times: dict[str, deque[float]] = {}

    def _prune(self, identity: str, now: float) -> deque[float]:
        stale = [
            key for key, ts in self._times.items()
            if key != identity and (not ts or now - ts[-1] >= self.window_seconds)
        ]
        for key in stale:
            del self._times[key]

        timestamps = self._times.setdefault(identity, deque())
        while timestamps and now - timestamps[0] >= self.window_seconds:
            timestamps.popleft()
        return timestamps

    async def retry_after(self, identity: str, now: float | None = None) -> int:
        now = monotonic() if now is None else now
        with self._lock:
            timestamps = self._prune(identity, now)
            if len(timestamps) < self.max_uploads:
                return 0
            return _retry_after(timestamps[0], now, self.window_seconds)

    async def record(self, identity: str, now: float | None = None) -> None:
        now = monotonic() if now is None else now
        with self._lock:
            self._prune(identity, now).append(now)

    def clear(self) -> None:
        with self._lock:
            self._times.clear()


class MongoUploadRateLimiter:
    """
    Trailing-window counter shared by every instance through MongoDB.

    Timestamps are wall-clock epoch seconds since monotonic clocks are not
    comparable across hosts.
    """

    collection_name = "upload_attempts"

    def __init__(self, max_uploads: int, window_seconds: int):
        self.max_uploads = max_uploads
        self.window_seconds = window_seconds

    def _collection(self):
        return get_db()[self.collection_name]

    async def ensure_indexes(self) -> None:
        collection = self._collection()
        await collection.create_index([("identity", 1), ("ts", 1)])
        await collection.create_index(
            "created_at",
            expireAfterSeconds=self.window_seconds,
            name="upload_attempts_created_at_ttl",
        )

    async def retry_after(self, identity: str, now: float | None = None) -> int:
        now = time() if now is None else now
        query = {"identity": identity, "ts": {"$gt": now - self.window_seconds}}
        collection = self._collection()
        count = await collection.count_documents(query)
        if count < self.max_uploads:
            return 0
        oldest = await collection.find_one(query, {"_id": 0, "ts": 1}, sort=[("ts", 1)])
        if not oldest:
            return 0
        return _retry_after(float(oldest["ts"]), now, self.window_seconds)

    async def record(self, identity: str, now: float | None = None) -> None:
        now = time() if now is None else now
        await self._collection().insert_one(
            {
                "identity": identity,
                "ts": now,
                "created_at": datetime.fromtimestamp(now, UTC),
            }
        )

    async def clear(self) -> None:
        await self._collection().delete_many({})


def get_rate_limiter() -> InMemoryUploadRateLimiter | MongoUploadRateLimiter:
    if RATE_LIMIT_BACKEND == "mongo":
        logger.info(
            "Using MongoDB upload rate limiter (max=%s window=%ss)",
            RATE_LIMIT_MAX_UPLOADS, RATE_LIMIT_WINDOW_SECONDS,
        )
        return MongoUploadRateLimiter(RATE_LIMIT_MAX_UPLOADS, RATE_LIMIT_WINDOW_SECONDS)
    if RATE_LIMIT_BACKEND != "memory":
        logger.warning("Unknown RATE_LIMIT_BACKEND %r, using in-memory limiter", RATE_LIMIT_BACKEND)
    return InMemoryUploadRateLimiter(RATE_LIMIT_MAX_UPLOADS, RATE_LIMIT_WINDOW_SECONDS)
