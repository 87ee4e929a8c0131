"""Process-local memoization of identical outbound requests.

Keyed by a RequestFingerprint (method, endpoint, serialized params).

Two layers:
  - In-flight: the first caller for a fingerprint owns an asyncio.Future;
    identical callers on the same event loop await it instead of sending
    their own request.
  - Completed: successful payloads and terminal client errors are kept for
    ``ttl_seconds`` in an LRU map of at most ``max_entries``. Transient
    failures are never stored, so they are retried on the next identical
    call.

Usage:
    cache = RequestDedupCache(ttl_seconds=30, max_entries=500)

    found, result = cache.lookup(fp)
    if not found:
        future = cache.joinable(fp)
        if future is not None:
            result = await asyncio.shield(future)
        else:
            cache.begin(fp)
            ...
            cache.finish(fp, payload)
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from carbon_hub.gateway.errors import GatewayError

logger = logging.getLogger(__name__)


def request_fingerprint(method: str, endpoint: str, params: Any = None) -> str:
    """Stable hash of a request: same method, endpoint and params → same key."""
    serialized = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
    raw = f"{method.upper()}|{endpoint}|{serialized}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class RequestDedupCache:
    """Fingerprint → prior result (payload or terminal GatewayError), with TTL and LRU bound."""

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            ttl_seconds: How long a completed result is replayed
            max_entries: LRU bound on completed results
            clock: Monotonic time source (seconds)
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(max_entries, 1)
        self._clock = clock
        # fingerprint → (expires_at, result); oldest first
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._inflight: dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.joins = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            return self._live(fingerprint) is not None

    def _live(self, fingerprint: str) -> tuple[float, Any] | None:
        """Entry for a fingerprint, dropping it if expired. Caller holds the lock."""
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        if self._clock() >= entry[0]:
            del self._entries[fingerprint]
            return None
        return entry

    def lookup(self, fingerprint: str) -> tuple[bool, Any]:
        """Return ``(found, result)``; a stored error is returned, not raised."""
        with self._lock:
            entry = self._live(fingerprint)
            if entry is not None:
                self._entries.move_to_end(fingerprint)
                self.hits += 1
                return True, entry[1]
            self.misses += 1
            return False, None

    def store(self, fingerprint: str, result: Any) -> None:
        """Remember a success payload or a terminal error."""
        if isinstance(result, GatewayError) and result.retryable:
            logger.debug("Not caching transient %s for %s", result.kind.value, fingerprint[:12])
            return
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            if fingerprint not in self._entries and len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[fingerprint] = (self._clock() + self.ttl_seconds, result)
            self._entries.move_to_end(fingerprint)

    # ------------------------------------------------------------------
    # In-flight requests
    # ------------------------------------------------------------------

    def joinable(self, fingerprint: str) -> asyncio.Future | None:
        """The pending future for an identical request on the running loop, if any."""
        future = self._inflight.get(fingerprint)
        if future is None or future.done() or future.get_loop() is not asyncio.get_running_loop():
            return None
        self.joins += 1
        return future

    def begin(self, fingerprint: str) -> asyncio.Future:
        """Mark a request as in flight; identical callers will await the returned future."""
        future = asyncio.get_running_loop().create_future()
        self._inflight[fingerprint] = future
        return future

    def finish(self, fingerprint: str, result: Any, remember: bool = True) -> None:
        """Settle an in-flight request with a payload or an error; store it if ``remember``."""
        future = self._inflight.pop(fingerprint, None)
        if remember:
            self.store(fingerprint, result)
        if future is None or future.done():
            return
        if isinstance(result, BaseException):
            future.set_exception(result)
            # Waiters are optional; mark the exception as retrieved
            future.exception()
        else:
            future.set_result(result)

    def pending(self) -> int:
        return len(self._inflight)

    def clear(self) -> int:
        """Drop every completed result. Returns the number of entries removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def get_stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "in_flight": len(self._inflight),
            "hits": self.hits,
            "misses": self.misses,
            "joins": self.joins,
            "evictions": self.evictions,
        }
