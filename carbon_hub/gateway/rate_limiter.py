"""Per-vendor sliding-window rate limiter.

Counts accepted requests per client identity inside a trailing window
(default 1 second). A request is admitted while fewer than
``requests_per_second`` timestamps sit inside the window.

All clients of the same vendor share one bucket: the quota belongs to the
vendor account, not to a client object. Share a single RateLimiter
instance between clients to get that behaviour; buckets are keyed by the
identity string passed to ``admit``/``record``.

Thread-safe via one threading.Lock per bucket (no await inside the lock),
so it also works for clients driven from different event loops.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class _RateWindow:
    """Sliding window of dispatched-request timestamps for one identity."""

    requests_per_second: int
    window_seconds: float = 1.0
    timestamps: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def _prune(self, now: float) -> None:
        """Drop timestamps that left the trailing window."""
        cutoff = now - self.window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def count(self, now: float) -> int:
        self._prune(now)
        return len(self.timestamps)

    def reset_in(self, now: float) -> float:
        """Seconds until the oldest timestamp leaves the window."""
        self._prune(now)
        if not self.timestamps:
            return 0.0
        return max((self.timestamps[0] + self.window_seconds) - now, 0.0)


class RateLimiter:
    """Sliding-window admission control keyed by client identity.

    Usage:
        limiter = RateLimiter(requests_per_second=10)

        if not limiter.try_acquire("cnaught"):
            raise RateLimitExceededError(...)

        # ... dispatch the request ...

    ``admit`` is a read-only check; ``record`` appends without checking.
    """

    def __init__(
        self,
        requests_per_second: int = 10,
        window_seconds: float = 1.0,
        limits: dict[str, int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            requests_per_second: Default limit for identities without an override
            window_seconds: Length of the trailing admission window
            limits: Per-identity overrides of requests_per_second
            clock: Monotonic time source (seconds)
        """
        self.default_limit = requests_per_second
        self.window_seconds = window_seconds
        self._limits = dict(limits or {})
        self._clock = clock
        self._windows: dict[str, _RateWindow] = {}
        self._registry_lock = threading.Lock()

    def configure(self, identity: str, requests_per_second: int) -> None:
        """Set the limit for one identity (e.g. from its VendorConfig)."""
        with self._registry_lock:
            self._limits[identity] = requests_per_second
            window = self._windows.get(identity)
            if window is not None:
                window.requests_per_second = requests_per_second

    def _get_window(self, identity: str) -> _RateWindow:
        """Get or create the window for an identity."""
        with self._registry_lock:
            window = self._windows.get(identity)
            if window is None:
                window = _RateWindow(
                    requests_per_second=self._limits.get(identity, self.default_limit),
                    window_seconds=self.window_seconds,
                )
                self._windows[identity] = window
            return window

    def admit(self, identity: str) -> bool:
        """Return True if a request for ``identity`` may be dispatched now."""
        window = self._get_window(identity)
        with window.lock:
            now = self._clock()
            allowed = window.count(now) < window.requests_per_second
        if not allowed:
            logger.debug("Rate window full for %s (%d/s)", identity, window.requests_per_second)
        return allowed

    def try_acquire(self, identity: str) -> bool:
        """Admit and record in one step; False leaves the window untouched.

        Concurrent callers cannot all pass a check made before any of them
        recorded, so dispatchers should use this rather than admit + record.
        """
        window = self._get_window(identity)
        with window.lock:
            now = self._clock()
            if window.count(now) >= window.requests_per_second:
                acquired = False
            else:
                window.timestamps.append(now)
                acquired = True
        if not acquired:
            logger.debug("Rate window full for %s (%d/s)", identity, window.requests_per_second)
        return acquired

    def record(self, identity: str) -> None:
        """Record a request that was actually dispatched."""
        window = self._get_window(identity)
        with window.lock:
            now = self._clock()
            window._prune(now)
            window.timestamps.append(now)

    def status(self, identity: str) -> dict:
        """Current usage for an identity."""
        window = self._get_window(identity)
        with window.lock:
            now = self._clock()
            made = window.count(now)
            return {
                "identity": identity,
                "requests_made": made,
                "requests_remaining": max(0, window.requests_per_second - made),
                "reset_in": round(window.reset_in(now), 3),
                "requests_per_second": window.requests_per_second,
            }

    def get_all_stats(self) -> list[dict]:
        """Usage for every identity seen so far."""
        with self._registry_lock:
            identities = list(self._windows)
        return [self.status(identity) for identity in identities]

    def reset(self, identity: str | None = None) -> None:
        """Forget recorded requests for one identity, or for all of them."""
        with self._registry_lock:
            targets = [self._windows[identity]] if identity in self._windows else []
            if identity is None:
                targets = list(self._windows.values())
        for window in targets:
            with window.lock:
                window.timestamps.clear()


# Process-wide limiter shared by every client that is not handed its own
shared_rate_limiter = RateLimiter()
