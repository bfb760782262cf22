"""Persistent key/value stores for synchronized list state.

Every store exposes async ``get``/``set`` over string keys and string values.
Backend failures are raised as StorageUnavailableError; sync engines treat
them as soft failures (empty reads, logged writes).

- RedisStore: survives process restarts, keys prefixed with ``{prefix}:``
- MemoryStore: process-local dict, for tests and ephemeral sessions
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from src.leadsync.config import get_settings
from src.leadsync.errors import StorageUnavailableError

logger = structlog.get_logger(__name__)

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ── Store interface ─────────────────────────────────────────────────────────


class PersistentStore(ABC):
    """Abstract durable key/value storage."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None if the key is absent."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        ...


class MemoryStore(PersistentStore):
    """Process-local store. Values are lost when the process exits."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def clear(self) -> None:
        self._data.clear()


class RedisStore(PersistentStore):
    """Redis-backed store that auto-prefixes all keys with ``{prefix}:``.

    Args:
        redis_client: Async Redis client (decode_responses=True).
        prefix: Namespace for this deployment's keys.
    """

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "leadsync") -> None:
        self._redis = redis_client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(self._key(key))
        except RedisError as exc:
            raise StorageUnavailableError(f"Redis read failed for {key}: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self._redis.set(self._key(key), value)
        except RedisError as exc:
            raise StorageUnavailableError(f"Redis write failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> int:
        """Delete a key. Returns number of keys deleted."""
        try:
            return await self._redis.delete(self._key(key))
        except RedisError as exc:
            raise StorageUnavailableError(f"Redis delete failed for {key}: {exc}") from exc


def get_redis_store() -> RedisStore:
    """Get a RedisStore using the global Redis pool and configured prefix."""
    return RedisStore(get_redis_pool(), prefix=get_settings().CACHE_KEY_PREFIX)
