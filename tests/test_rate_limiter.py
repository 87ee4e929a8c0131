"""Tests for the sliding-window RateLimiter."""

from __future__ import annotations

import threading

import pytest

from carbon_hub.gateway.rate_limiter import RateLimiter


class TestRateLimiter:
    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter(requests_per_second=3, clock=clock)

    def _fill(self, limiter, identity="cnaught", count=3):
        for _ in range(count):
            assert limiter.admit(identity)
            limiter.record(identity)

    def test_admits_under_limit(self, limiter):
        assert limiter.admit("cnaught")

    def test_denies_request_over_limit_in_same_window(self, limiter):
        self._fill(limiter)
        assert not limiter.admit("cnaught")

    def test_admission_resumes_after_window_rolls_over(self, limiter, clock):
        self._fill(limiter)
        clock.advance(0.5)
        assert not limiter.admit("cnaught")
        clock.advance(0.51)
        assert limiter.admit("cnaught")

    def test_admit_does_not_consume_quota(self, limiter):
        for _ in range(10):
            assert limiter.admit("cnaught")
        assert limiter.status("cnaught")["requests_made"] == 0

    def test_identities_are_independent(self, limiter):
        self._fill(limiter, "cnaught")
        assert not limiter.admit("cnaught")
        assert limiter.admit("toucan")

    def test_configure_overrides_limit(self, limiter):
        limiter.configure("toucan", 1)
        self._fill(limiter, "toucan", count=1)
        assert not limiter.admit("toucan")

    def test_configure_updates_existing_window(self, limiter):
        self._fill(limiter, "cnaught", count=3)
        limiter.configure("cnaught", 5)
        assert limiter.admit("cnaught")

    def test_per_identity_limits_from_constructor(self, clock):
        limiter = RateLimiter(requests_per_second=10, limits={"toucan": 2}, clock=clock)
        self._fill(limiter, "toucan", count=2)
        assert not limiter.admit("toucan")
        assert limiter.status("cnaught")["requests_per_second"] == 10

    def test_status(self, limiter, clock):
        self._fill(limiter, count=2)
        clock.advance(0.25)
        status = limiter.status("cnaught")
        assert status["identity"] == "cnaught"
        assert status["requests_made"] == 2
        assert status["requests_remaining"] == 1
        assert status["reset_in"] == pytest.approx(0.75)
        assert status["requests_per_second"] == 3

    def test_status_prunes_old_timestamps(self, limiter, clock):
        self._fill(limiter)
        clock.advance(2)
        status = limiter.status("cnaught")
        assert status["requests_made"] == 0
        assert status["reset_in"] == 0.0

    def test_get_all_stats(self, limiter):
        self._fill(limiter, "cnaught", count=1)
        self._fill(limiter, "toucan", count=1)
        identities = {s["identity"] for s in limiter.get_all_stats()}
        assert identities == {"cnaught", "toucan"}

    def test_reset_single_identity(self, limiter):
        self._fill(limiter, "cnaught")
        self._fill(limiter, "toucan")
        limiter.reset("cnaught")
        assert limiter.admit("cnaught")
        assert not limiter.admit("toucan")

    def test_reset_all(self, limiter):
        self._fill(limiter, "cnaught")
        self._fill(limiter, "toucan")
        limiter.reset()
        assert limiter.admit("cnaught")
        assert limiter.admit("toucan")

    def test_try_acquire_reserves_slot(self, limiter):
        assert limiter.try_acquire("cnaught")
        assert limiter.status("cnaught")["requests_made"] == 1

    def test_try_acquire_denied_leaves_window_untouched(self, limiter, clock):
        for _ in range(3):
            assert limiter.try_acquire("cnaught")
        assert not limiter.try_acquire("cnaught")
        assert limiter.status("cnaught")["requests_made"] == 3
        clock.advance(1.01)
        assert limiter.try_acquire("cnaught")

    def test_try_acquire_is_atomic_across_threads(self):
        limiter = RateLimiter(requests_per_second=5, clock=lambda: 1_000.0)
        granted = []
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            granted.append(limiter.try_acquire("cnaught"))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert granted.count(True) == 5
