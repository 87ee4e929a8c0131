"""Tests for request fingerprints and the dedup cache."""

from __future__ import annotations

import asyncio

import pytest

from carbon_hub.gateway.dedup import RequestDedupCache, request_fingerprint
from carbon_hub.gateway.errors import ClientError, RateLimitError, ServerError, TransportError


class TestRequestFingerprint:
    def test_param_order_does_not_matter(self):
        a = request_fingerprint("GET", "portfolios", {"limit": 100, "offset": 0})
        b = request_fingerprint("GET", "portfolios", {"offset": 0, "limit": 100})
        assert a == b

    def test_method_is_case_insensitive(self):
        assert request_fingerprint("get", "portfolios") == request_fingerprint("GET", "portfolios")

    def test_differs_by_method_endpoint_and_params(self):
        base = request_fingerprint("GET", "portfolios", {"limit": 1})
        assert base != request_fingerprint("POST", "portfolios", {"limit": 1})
        assert base != request_fingerprint("GET", "projects", {"limit": 1})
        assert base != request_fingerprint("GET", "portfolios", {"limit": 2})

    def test_none_and_empty_params_match(self):
        assert request_fingerprint("GET", "orders", None) == request_fingerprint("GET", "orders", {})


class TestRequestDedupCache:
    def test_lookup_miss(self):
        cache = RequestDedupCache()
        found, result = cache.lookup("abc")
        assert found is False
        assert result is None
        assert cache.misses == 1

    def test_store_and_lookup_payload(self):
        cache = RequestDedupCache()
        cache.store("abc", {"data": [1, 2]})
        found, result = cache.lookup("abc")
        assert found is True
        assert result == {"data": [1, 2]}
        assert cache.hits == 1

    def test_empty_payload_is_a_hit(self):
        cache = RequestDedupCache()
        cache.store("abc", {})
        assert cache.lookup("abc") == (True, {})

    def test_client_errors_are_stored(self):
        cache = RequestDedupCache()
        error = ClientError("Not found", vendor="cnaught", status_code=404)
        cache.store("abc", error)
        assert cache.lookup("abc") == (True, error)

    def test_transient_errors_are_not_stored(self):
        cache = RequestDedupCache()
        cache.store("a", ServerError("boom", status_code=503))
        cache.store("b", TransportError("reset"))
        cache.store("c", RateLimitError("slow down", status_code=429))
        assert len(cache) == 0

    def test_clear_returns_count(self):
        cache = RequestDedupCache()
        cache.store("a", {})
        cache.store("b", {})
        assert cache.clear() == 2
        assert "a" not in cache

    def test_get_stats(self):
        cache = RequestDedupCache()
        cache.store("a", {})
        cache.lookup("a")
        cache.lookup("b")
        assert cache.get_stats() == {"entries": 1, "in_flight": 0, "hits": 1, "misses": 1, "joins": 0, "evictions": 0}

    def test_entries_expire(self, clock):
        cache = RequestDedupCache(ttl_seconds=30, clock=clock)
        cache.store("abc", {"v": 1})

        clock.advance(29)
        assert cache.lookup("abc") == (True, {"v": 1})
        clock.advance(2)
        assert cache.lookup("abc") == (False, None)
        assert len(cache) == 0

    def test_client_errors_expire_too(self, clock):
        cache = RequestDedupCache(ttl_seconds=5, clock=clock)
        cache.store("abc", ClientError("Not found", status_code=404))
        clock.advance(6)
        assert "abc" not in cache

    def test_zero_ttl_stores_nothing(self):
        cache = RequestDedupCache(ttl_seconds=0)
        cache.store("abc", {})
        assert len(cache) == 0

    def test_least_recently_used_entry_is_evicted(self, clock):
        cache = RequestDedupCache(max_entries=2, clock=clock)
        cache.store("a", 1)
        cache.store("b", 2)
        cache.lookup("a")
        cache.store("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert cache.evictions == 1


class TestInFlight:
    @pytest.mark.asyncio
    async def test_identical_request_joins_pending_future(self):
        cache = RequestDedupCache()
        future = cache.begin("abc")

        assert cache.joinable("abc") is future
        cache.finish("abc", {"v": 1})

        assert await future == {"v": 1}
        assert cache.pending() == 0
        assert cache.lookup("abc") == (True, {"v": 1})
        assert cache.joins == 1

    @pytest.mark.asyncio
    async def test_nothing_to_join_without_pending_request(self):
        assert RequestDedupCache().joinable("abc") is None

    @pytest.mark.asyncio
    async def test_error_reaches_waiters_without_being_stored(self):
        cache = RequestDedupCache()
        future = cache.begin("abc")
        waiter = asyncio.ensure_future(asyncio.shield(future))
        await asyncio.sleep(0)

        cache.finish("abc", ServerError("boom", status_code=503), remember=False)

        with pytest.raises(ServerError):
            await waiter
        assert "abc" not in cache

    @pytest.mark.asyncio
    async def test_settled_request_is_no_longer_joinable(self):
        cache = RequestDedupCache()
        cache.begin("abc")
        cache.finish("abc", ClientError("bad", status_code=400))
        assert cache.joinable("abc") is None
