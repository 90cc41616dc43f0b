"""Key-value cache service used by the sync engine.

The orchestrator only depends on the CacheService protocol
(get / set-with-TTL / delete / pattern listing / delete-many). Two
implementations are provided:

- RedisCache: namespaced wrapper around redis.asyncio, every key prefixed
  with ``{prefix}:`` so several deployments can share one Redis.
- InMemoryCache: process-local store with per-entry expiry, used for
  development (mock connectors) and tests. Accepts an injectable clock.
"""

from __future__ import annotations

import fnmatch
import time
from collections.abc import Callable
from typing import Protocol

import redis.asyncio as aioredis

from src.crm_sync.config import get_settings


class CacheService(Protocol):
    """Protocol every cache backend must satisfy."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def keys(self, pattern: str = "*") -> list[str]: ...

    async def delete_many(self, keys: list[str]) -> int: ...


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


# ── Redis Cache ─────────────────────────────────────────────────────────────


class RedisCache:
    """Redis-backed cache that auto-prefixes all keys with ``{prefix}:``.

    Keys returned by keys() are stripped of the prefix so callers can feed
    them straight back into get()/delete().
    """

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "crm") -> None:
        self._redis = redis_client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _strip(self, full_key: str) -> str:
        return full_key[len(self._prefix) + 1:]

    async def get(self, key: str) -> str | None:
        """Get a value by prefixed key."""
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set a value with optional TTL (seconds)."""
        await self._redis.set(self._key(key), value, ex=ttl)

    async def delete(self, key: str) -> int:
        """Delete a key. Returns number of keys deleted."""
        return await self._redis.delete(self._key(key))

    async def keys(self, pattern: str = "*") -> list[str]:
        """List keys matching a glob pattern within the namespace."""
        found = [key async for key in self._redis.scan_iter(match=self._key(pattern))]
        return [self._strip(key) for key in found]

    async def delete_many(self, keys: list[str]) -> int:
        """Delete several keys in one round trip."""
        if not keys:
            return 0
        return await self._redis.delete(*(self._key(k) for k in keys))


# ── In-memory Cache ─────────────────────────────────────────────────────────


class InMemoryCache:
    """Process-local cache with per-entry expiry.

    Args:
        clock: Returns the current time in seconds. Defaults to time.monotonic.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}

    def _alive(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return False
        return True

    async def get(self, key: str) -> str | None:
        if not self._alive(key):
            return None
        return self._entries[key][0]

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> int:
        return 1 if self._entries.pop(key, None) is not None else 0

    async def keys(self, pattern: str = "*") -> list[str]:
        return [k for k in list(self._entries) if self._alive(k) and fnmatch.fnmatchcase(k, pattern)]

    async def delete_many(self, keys: list[str]) -> int:
        deleted = 0
        for key in keys:
            deleted += await self.delete(key)
        return deleted

    def ttl(self, key: str) -> float | None:
        """Seconds until expiry, or None for missing/non-expiring keys."""
        if not self._alive(key):
            return None
        expires_at = self._entries[key][1]
        return None if expires_at is None else expires_at - self._clock()
