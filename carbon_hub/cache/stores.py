"""Key/value stores backing the PersistentCache.

A store only needs four async operations: get, set (with TTL), delete and
list_keys(pattern). Values are opaque strings; the PersistentCache owns
serialization and tagging.

  - MemoryStore: process-local dict, for development and tests
  - RedisStore: redis.asyncio, shared by every API and Celery worker
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def list_keys(self, pattern: str = "*") -> list[str]: ...


class MemoryStore:
    """In-process store with lazy TTL expiry."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: dict[str, tuple[str, float | None]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _alive(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        expires_at = entry[1]
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._data[key][0] if self._alive(key) else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        async with self._lock:
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def list_keys(self, pattern: str = "*") -> list[str]:
        async with self._lock:
            return [k for k in list(self._data) if fnmatch.fnmatchcase(k, pattern) and self._alive(k)]

    async def aclose(self) -> None:
        return None


class RedisStore:
    """Redis-backed store (``redis.asyncio``)."""

    def __init__(self, url: str | None = None, client=None):
        """
        Args:
            url: Redis URL (defaults to settings.redis_url)
            client: Pre-built redis.asyncio.Redis (tests pass a fake)
        """
        if client is None:
            import redis.asyncio as aioredis

            from carbon_hub.core.config import settings

            client = aioredis.from_url(url or settings.redis_url, decode_responses=True)
        self._redis = client

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        if ttl:
            await self._redis.set(key, value, ex=int(ttl))
        else:
            await self._redis.set(key, value)

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(key))

    async def list_keys(self, pattern: str = "*") -> list[str]:
        keys = []
        async for key in self._redis.scan_iter(match=pattern, count=500):
            keys.append(key.decode("utf-8") if isinstance(key, bytes) else key)
        return keys

    async def aclose(self) -> None:
        await self._redis.aclose()


def build_store(backend: str | None = None) -> CacheStore:
    """Store selected by ``settings.cache_backend``."""
    from carbon_hub.core.config import settings

    backend = backend or settings.cache_backend
    if backend == "redis":
        logger.info("Persistent cache backed by Redis (%s)", settings.redis_url)
        return RedisStore(settings.redis_url)
    if backend != "memory":
        raise ValueError(f"Unknown cache backend: {backend}")
    return MemoryStore()
