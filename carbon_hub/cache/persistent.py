"""PersistentCache: TTL-scoped, type/vendor-tagged cache of normalized data.

Every entry is stored as a JSON envelope:

    {"value": ..., "type": "projects", "vendor": "cnaught",
     "cached_at": 1700000000.0, "expires_at": 1700003600.0}

The envelope's ``expires_at`` is authoritative: an entry is invisible once
``now > expires_at`` even if the backing store has not evicted it yet.
Type and vendor tags are independent, so invalidating one axis never
touches entries that only share the other.

Usage:
    cache = PersistentCache(MemoryStore())

    await cache.cache_projects(projects, vendor="cnaught")
    projects = await cache.get_cached_projects(vendor="cnaught")

    await cache.invalidate_by_vendor("cnaught")
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from carbon_hub.cache.stores import CacheStore, build_store
from carbon_hub.core.metrics import CACHE_LOOKUPS
from carbon_hub.gateway.types import Portfolio, Project

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


DEFAULT_TTLS = {
    "portfolios": 900,
    "projects": 3600,
    "project_details": 1800,
    "quotes": 300,
    "search_results": 600,
}


@dataclass
class CacheEntry:
    key: str
    value: Any
    type: str
    vendor: str
    cached_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


def _to_jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value


def _params_hash(params: Any) -> str:
    serialized = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(serialized.encode("utf-8")).hexdigest()


class PersistentCache:
    """Tagged TTL cache over a CacheStore."""

    def __init__(
        self,
        store: CacheStore | None = None,
        prefix: str | None = None,
        ttls: dict[str, int] | None = None,
        enabled: bool | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Backing store (defaults to settings.cache_backend)
            prefix: Namespace prepended to every key
            ttls: Default TTL (seconds) per entry type
            enabled: When False every lookup misses and writes are dropped
            clock: Wall-clock time source (seconds)
        """
        if prefix is None or ttls is None or enabled is None:
            from carbon_hub.core.config import settings

            prefix = settings.cache_prefix if prefix is None else prefix
            ttls = settings.cache_ttls if ttls is None else ttls
            enabled = settings.cache_enabled if enabled is None else enabled

        self.store = store if store is not None else build_store()
        self.prefix = prefix
        self.ttls = {**DEFAULT_TTLS, **ttls}
        self.enabled = enabled
        self._clock = clock
        self._key_locks: dict[str, _KeyLock] = {}

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def build_key(self, entry_type: str, vendor: str = "", params: Any = None) -> str:
        """Scope key ``type[:vendor][:param]``; mapping params are hashed."""
        parts = [entry_type]
        if vendor:
            parts.append(vendor)
        if params is not None and params != {}:
            parts.append(_params_hash(params) if isinstance(params, (dict, list, tuple)) else str(params))
        return ":".join(parts)

    def _full_key(self, scope_key: str) -> str:
        return f"{self.prefix}{scope_key}"

    @asynccontextmanager
    async def _key_lock(self, scope_key: str):
        """Serialize work on one key; the lock is dropped once nobody holds or awaits it."""
        entry = self._key_locks.get(scope_key)
        if entry is None:
            entry = self._key_locks[scope_key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._key_locks[scope_key]

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(
        self,
        scope_key: str,
        value: Any,
        ttl: int | None = None,
        entry_type: str = "unknown",
        vendor: str = "",
    ) -> bool:
        if not self.enabled:
            return False
        ttl = int(ttl if ttl is not None else self.ttls.get(entry_type, 600))
        if ttl <= 0:
            return False
        now = self._clock()
        envelope = {
            "value": _to_jsonable(value),
            "type": entry_type,
            "vendor": vendor,
            "cached_at": now,
            "expires_at": now + ttl,
        }
        await self.store.set(self._full_key(scope_key), json.dumps(envelope, default=str), ttl)
        logger.debug("Cached %s (%s/%s, ttl=%ds)", scope_key, entry_type, vendor or "-", ttl)
        return True

    async def _read(self, full_key: str) -> CacheEntry | None:
        raw = await self.store.get(full_key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CacheEntry(
                key=full_key,
                value=data.get("value"),
                type=data.get("type") or "unknown",
                vendor=data.get("vendor") or "",
                cached_at=float(data.get("cached_at") or 0),
                expires_at=float(data["expires_at"]),
            )
        except (ValueError, TypeError, KeyError, AttributeError):
            logger.warning("Dropping unreadable cache entry %s", full_key)
            await self.store.delete(full_key)
            return None

    async def get(self, scope_key: str, default: Any = None) -> Any:
        """Cached value, or ``default`` on a miss or expired entry."""
        value = await self._lookup(scope_key)
        return default if value is _MISSING else value

    async def _lookup(self, scope_key: str) -> Any:
        if not self.enabled:
            return _MISSING
        entry = await self._read(self._full_key(scope_key))
        entry_type = scope_key.split(":", 1)[0]
        if entry is None or entry.is_expired(self._clock()):
            CACHE_LOOKUPS.labels(type=entry_type, result="miss").inc()
            return _MISSING
        CACHE_LOOKUPS.labels(type=entry_type, result="hit").inc()
        return entry.value

    async def delete(self, scope_key: str) -> bool:
        return await self.store.delete(self._full_key(scope_key))

    async def entries(self) -> list[CacheEntry]:
        """Every entry under this cache's prefix, expired ones included."""
        result = []
        for key in await self.store.list_keys(f"{self.prefix}*"):
            entry = await self._read(key)
            if entry is not None:
                result.append(entry)
        return result

    async def _invalidate(self, predicate: Callable[[CacheEntry], bool]) -> int:
        removed = 0
        for entry in await self.entries():
            if predicate(entry) and await self.store.delete(entry.key):
                removed += 1
        return removed

    async def invalidate_by_type(self, entry_type: str) -> int:
        removed = await self._invalidate(lambda e: e.type == entry_type)
        logger.info("Invalidated %d cache entries of type %s", removed, entry_type)
        return removed

    async def invalidate_by_vendor(self, vendor: str) -> int:
        removed = await self._invalidate(lambda e: e.vendor == vendor)
        logger.info("Invalidated %d cache entries for vendor %s", removed, vendor)
        return removed

    async def invalidate_all(self) -> int:
        removed = await self._invalidate(lambda e: True)
        logger.info("Invalidated all %d cache entries", removed)
        return removed

    async def sweep_expired(self) -> int:
        """Delete entries whose TTL has passed; returns how many were removed."""
        now = self._clock()
        removed = await self._invalidate(lambda e: e.is_expired(now))
        if removed:
            logger.info("Swept %d expired cache entries", removed)
        return removed

    async def stats(self) -> dict[str, Any]:
        now = self._clock()
        stats: dict[str, Any] = {
            "total_entries": 0,
            "by_type": {},
            "by_vendor": {},
            "expired_entries": 0,
        }
        for entry in await self.entries():
            stats["total_entries"] += 1
            stats["by_type"][entry.type] = stats["by_type"].get(entry.type, 0) + 1
            vendor = entry.vendor or "all"
            stats["by_vendor"][vendor] = stats["by_vendor"].get(vendor, 0) + 1
            if entry.is_expired(now):
                stats["expired_entries"] += 1
        return stats

    async def warm(self, sources: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        """Refresh entries from producers.

        Each source is ``{"type", "vendor", "producer"}`` (plus optional
        ``"key"``/``"ttl"``); the producer is a sync or async callable
        returning the value. Concurrent warms of the same key are
        serialized. Returns ``{"<type>_<vendor>": {"success", "count"|"error"}}``.
        """
        results: dict[str, dict[str, Any]] = {}
        for source in sources:
            entry_type = source.get("type", "")
            vendor = source.get("vendor", "")
            producer = source.get("producer")
            report_key = f"{entry_type}_{vendor}"

            if not callable(producer):
                results[report_key] = {"success": False, "error": "Invalid producer provided"}
                continue

            scope_key = source.get("key") or self.build_key(entry_type, vendor)
            async with self._key_lock(scope_key):
                try:
                    data = producer()
                    if inspect.isawaitable(data):
                        data = await data
                except Exception as e:
                    logger.warning("Cache warm failed for %s: %s", report_key, e)
                    results[report_key] = {"success": False, "error": getattr(e, "message", str(e))}
                    continue

                stored = await self.put(scope_key, data, source.get("ttl"), entry_type, vendor)
                results[report_key] = {
                    "success": stored,
                    "count": len(data) if isinstance(data, (list, tuple)) else 0,
                }

        warmed = sum(1 for r in results.values() if r["success"])
        logger.info("Cache warm: %d/%d sources refreshed", warmed, len(results))
        return results

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def cache_portfolios(self, portfolios: list[Portfolio], vendor: str = "", ttl: int | None = None) -> bool:
        return await self.put(self.build_key("portfolios", vendor), portfolios, ttl, "portfolios", vendor)

    async def get_cached_portfolios(self, vendor: str = "") -> list[Portfolio] | None:
        value = await self._lookup(self.build_key("portfolios", vendor))
        if value is _MISSING:
            return None
        return [Portfolio.from_dict(item) for item in value]

    async def cache_projects(
        self,
        projects: list[Project],
        vendor: str = "",
        filters: dict[str, Any] | None = None,
        ttl: int | None = None,
    ) -> bool:
        return await self.put(self.build_key("projects", vendor, filters or None), projects, ttl, "projects", vendor)

    async def get_cached_projects(
        self,
        vendor: str = "",
        filters: dict[str, Any] | None = None,
    ) -> list[Project] | None:
        value = await self._lookup(self.build_key("projects", vendor, filters or None))
        if value is _MISSING:
            return None
        return [Project.from_dict(item) for item in value]

    async def cache_project(self, project: Project, ttl: int | None = None) -> bool:
        key = self.build_key("project_details", project.vendor, project.id)
        return await self.put(key, project, ttl, "project_details", project.vendor)

    async def get_cached_project(self, project_id: str, vendor: str) -> Project | None:
        value = await self._lookup(self.build_key("project_details", vendor, project_id))
        if value is _MISSING:
            return None
        return Project.from_dict(value)

    async def aclose(self) -> None:
        close = getattr(self.store, "aclose", None)
        if close is not None:
            await close()
