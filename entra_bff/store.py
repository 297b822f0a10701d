"""
Server-side session storage.

Session records are plain JSON-compatible dictionaries keyed by an opaque
session id. Two interchangeable backends implement the same interface:

- MemorySessionStore: in-process, single instance only (default)
- RedisSessionStore: shared between instances, values stored as JSON with TTL

select_session_store() picks one backend once at startup. A configured but
unreachable Redis never blocks or crashes the process: the condition is
logged and the in-memory store is used for the rest of the process lifetime.

Every write is awaited by the caller; there is no background persistence.
"""

import asyncio
import copy
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from entra_bff.config import Settings

logger = logging.getLogger(__name__)


SessionFields = Dict[str, Any]


class SessionStore(ABC):
    """Key-value store for session records with TTL-based expiry."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionFields]:
        """Return the stored fields, or None if absent or expired."""

    @abstractmethod
    async def set(self, session_id: str, fields: SessionFields, ttl_seconds: int) -> None:
        """Persist fields, replacing any previous record and resetting the TTL."""

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove the record. Deleting an unknown id is not an error."""

    async def close(self) -> None:
        return None


# =============================================================================
# In-Memory Store
# =============================================================================

def _now() -> float:
    return time.monotonic()


class MemorySessionStore(SessionStore):
    """
    Volatile in-process store.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store. Expired records are dropped on read, and
    the whole store is swept at most once per purge interval on write.
    """

    name = "memory"

    def __init__(self, purge_interval_seconds: float = 60.0):
        self._data: Dict[str, Tuple[SessionFields, float]] = {}
        self.purge_interval_seconds = purge_interval_seconds
        self._next_purge = 0.0

    async def get(self, session_id: str) -> Optional[SessionFields]:
        entry = self._data.get(session_id)
        if entry is None:
            return None
        fields, expires_at = entry
        if expires_at <= _now():
            self._data.pop(session_id, None)
            return None
        return copy.deepcopy(fields)

    async def set(self, session_id: str, fields: SessionFields, ttl_seconds: int) -> None:
        now = _now()
        # Records of clients that never come back are only reclaimed here.
        if now >= self._next_purge:
            self.purge_expired()
            self._next_purge = now + self.purge_interval_seconds
        self._data[session_id] = (copy.deepcopy(fields), now + ttl_seconds)

    async def delete(self, session_id: str) -> None:
        self._data.pop(session_id, None)

    def purge_expired(self) -> int:
        """Drop every expired record and return how many were removed."""
        now = _now()
        expired = [sid for sid, (_, expires_at) in self._data.items() if expires_at <= now]
        for sid in expired:
            del self._data[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


# =============================================================================
# Redis Store
# =============================================================================

class RedisSessionStore(SessionStore):
    """
    Networked store backed by Redis.

    Records are serialized as JSON under ``{prefix}{session_id}`` with SETEX,
    so expiry is enforced by Redis itself. Errors after startup propagate to
    the caller: a lost write must fail the request.
    """

    name = "redis"

    def __init__(self, client: redis.Redis, key_prefix: str = "bff:session:"):
        self.client = client
        self.key_prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def get(self, session_id: str) -> Optional[SessionFields]:
        raw = await self.client.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable session record", extra={"store": self.name})
            await self.client.delete(self._key(session_id))
            return None

    async def set(self, session_id: str, fields: SessionFields, ttl_seconds: int) -> None:
        await self.client.setex(self._key(session_id), ttl_seconds, json.dumps(fields))

    async def delete(self, session_id: str) -> None:
        await self.client.delete(self._key(session_id))

    async def close(self) -> None:
        await self.client.aclose()


# =============================================================================
# Store Selection
# =============================================================================

async def connect_redis_store(url: str, timeout_seconds: float) -> RedisSessionStore:
    """
    Connect to Redis and verify the connection with a bounded PING.

    Args:
        url: Redis connection string
        timeout_seconds: Upper bound for connecting and answering PING

    Returns:
        A ready RedisSessionStore

    Raises:
        RedisError, OSError, asyncio.TimeoutError: If Redis is unreachable
        ValueError: If the connection string is malformed
    """
    client = redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=timeout_seconds,
        socket_timeout=timeout_seconds,
    )
    try:
        await asyncio.wait_for(client.ping(), timeout=timeout_seconds)
    except BaseException:
        await client.aclose()
        raise
    return RedisSessionStore(client)


async def select_session_store(settings: Settings) -> SessionStore:
    """
    Choose the session store for this process.

    Called once during application startup; the result is never
    re-evaluated per request.

    Args:
        settings: Application settings (REDIS_URL, REDIS_CONNECT_TIMEOUT_SECONDS)

    Returns:
        RedisSessionStore when REDIS_URL is set and reachable,
        MemorySessionStore otherwise.
    """
    if not settings.REDIS_URL:
        logger.info("Using in-memory session store (single instance only)")
        return MemorySessionStore()

    try:
        store = await connect_redis_store(settings.REDIS_URL, settings.REDIS_CONNECT_TIMEOUT_SECONDS)
    except (RedisError, OSError, asyncio.TimeoutError, ValueError) as e:
        logger.warning(
            f"Redis session store unavailable, falling back to in-memory store: {e}",
            extra={"exception_type": type(e).__name__},
        )
        return MemorySessionStore()

    logger.info("Using Redis session store")
    return store


__all__ = [
    "SessionStore",
    "SessionFields",
    "MemorySessionStore",
    "RedisSessionStore",
    "connect_redis_store",
    "select_session_store",
]
