"""Tests for MarketplaceService cache-aside reads and the cache maintenance tasks."""

from __future__ import annotations

from unittest.mock import patch

import httpx

import pytest

from carbon_hub.cache.persistent import PersistentCache
from carbon_hub.cache.stores import MemoryStore
from carbon_hub.gateway.errors import ServerError
from carbon_hub.gateway.manager import VendorManager
from carbon_hub.gateway.rate_limiter import RateLimiter
from carbon_hub.gateway.types import Capability, QuoteRequest, VendorConfig
from carbon_hub.gateway.vendor_clients import CNaughtClient
from carbon_hub.services.marketplace import MarketplaceService


def make_service(vendors: dict, clock=None) -> MarketplaceService:
    manager = VendorManager(concurrency=4, timeout=5.0)
    for name, client in vendors.items():
        manager.register(name, client)
    kwargs = {"clock": clock} if clock else {}
    cache = PersistentCache(MemoryStore(), prefix="svc:", ttls={}, enabled=True, **kwargs)
    return MarketplaceService(manager, cache)


@pytest.fixture
def vendors(fake_vendor, make_project):
    return {
        "cnaught": fake_vendor(
            {Capability.PORTFOLIOS, Capability.PROJECTS, Capability.QUOTES},
            portfolios=[{"id": "pf1", "name": "Mix", "projects": [make_project("p1")]}],
            projects=[make_project("p1"), make_project("p2", location="Kenya")],
            quote_price=0.1,
        ),
        "toucan": fake_vendor({Capability.TOKEN_LISTING}, projects=[make_project("0xabc")]),
    }


class TestListings:
    @pytest.mark.asyncio
    async def test_projects_cached_per_vendor(self, vendors):
        service = make_service(vendors)

        await service.get_projects()

        assert [p.id for p in await service.cache.get_cached_projects(vendor="cnaught")] == ["p1", "p2"]
        assert [p.id for p in await service.cache.get_cached_projects(vendor="toucan")] == ["0xabc"]

    @pytest.mark.asyncio
    async def test_missing_vendor_entry_forces_fetch(self, vendors):
        service = make_service(vendors)
        await service.get_projects()
        await service.cache.invalidate_by_vendor("toucan")

        listing = await service.get_projects()

        assert listing.cached is False
        assert vendors["toucan"].calls == ["list_project_tokens", "list_project_tokens"]

    @pytest.mark.asyncio
    async def test_cached_listing_feeds_resolver(self, vendors):
        service = make_service(vendors)
        await service.get_portfolios()
        service.manager.resolver.clear()

        listing = await service.get_portfolios()

        assert listing.cached is True
        assert service.manager.resolver.resolve("pf1") == "cnaught"
        assert service.manager.resolver.resolve("p1") == "cnaught"

    @pytest.mark.asyncio
    async def test_failed_vendor_is_not_cached(self, fake_vendor, make_project):
        service = make_service(
            {
                "a": fake_vendor({Capability.PROJECTS}, error=ServerError("down")),
                "b": fake_vendor({Capability.PROJECTS}, projects=[make_project("p1")]),
            }
        )

        listing = await service.get_projects()

        assert listing.errors == {"a": "down"}
        assert await service.cache.get_cached_projects(vendor="a") is None
        assert await service.cache.get_cached_projects(vendor="b") is not None

    @pytest.mark.asyncio
    async def test_search_results_cached_and_expire(self, vendors, clock):
        service = make_service(vendors, clock)

        first = await service.search_projects({"location": "kenya"})
        second = await service.search_projects({"location": "kenya"})

        assert [p.id for p in first.items] == ["p2"]
        assert second.cached is True
        assert [p.id for p in second.items] == ["p2"]

        clock.advance(service.cache.ttls["search_results"] + 1)
        assert await service.cache.get(service.cache.build_key("search_results", "", {"location": "kenya"})) is None


class TestTransactions:
    @pytest.mark.asyncio
    async def test_quotes_are_never_cached(self, vendors):
        service = make_service(vendors)

        await service.get_quote(QuoteRequest(amount_kg=10))
        await service.get_quote(QuoteRequest(amount_kg=10))

        assert vendors["cnaught"].calls.count("create_quote") == 2
        assert (await service.cache.stats())["total_entries"] == 0


class TestInvalidate:
    @pytest.mark.asyncio
    async def test_vendor_also_drops_search_results(self, vendors):
        service = make_service(vendors)
        await service.search_projects({"location": "brazil"})

        removed = await service.invalidate(vendor="cnaught")

        stats = await service.cache.stats()
        assert removed == 2
        assert stats["by_type"] == {"projects": 1}
        assert stats["by_vendor"] == {"toucan": 1}

    @pytest.mark.asyncio
    async def test_by_type(self, vendors):
        service = make_service(vendors)
        await service.get_portfolios()
        await service.get_projects()

        assert await service.invalidate(entry_type="portfolios") == 1
        assert (await service.cache.stats())["by_type"] == {"projects": 2}

    @pytest.mark.asyncio
    async def test_everything(self, vendors):
        service = make_service(vendors)
        await service.get_portfolios()
        await service.get_projects()

        assert await service.invalidate() == 3


class TestWarm:
    @pytest.mark.asyncio
    async def test_sources_per_vendor_and_type(self, vendors):
        service = make_service(vendors)
        keys = {(s["type"], s["vendor"]) for s in service.warm_sources()}
        assert keys == {("portfolios", "cnaught"), ("projects", "cnaught"), ("projects", "toucan")}

    @pytest.mark.asyncio
    async def test_warm_fills_cache_read_path(self, vendors):
        service = make_service(vendors)

        report = await service.warm()

        assert report["projects_cnaught"] == {"success": True, "count": 2}
        assert report["portfolios_cnaught"] == {"success": True, "count": 1}
        listing = await service.get_projects()
        assert listing.cached is True
        assert len(listing.items) == 3

    @pytest.mark.asyncio
    async def test_warm_reports_failing_vendor(self, fake_vendor, make_project):
        service = make_service(
            {
                "a": fake_vendor({Capability.PROJECTS}, error=ServerError("down")),
                "b": fake_vendor({Capability.PROJECTS}, projects=[make_project("p1")]),
            }
        )

        report = await service.warm()

        assert report["projects_a"]["success"] is False
        assert "down" in report["projects_a"]["error"]
        assert report["projects_b"]["success"] is True


class TestCacheTasks:
    def test_warm_cache_task(self, vendors):
        from carbon_hub.tasks.cache_tasks import warm_cache_task

        service = make_service(vendors)
        with patch("carbon_hub.tasks.cache_tasks._build_service", return_value=service):
            result = warm_cache_task()

        assert result["sources"] == 3
        assert result["failed"] == {}

    def test_sweep_expired_cache_task(self, vendors):
        from carbon_hub.tasks.cache_tasks import sweep_expired_cache_task

        service = make_service(vendors)
        with patch("carbon_hub.tasks.cache_tasks._build_service", return_value=service):
            assert sweep_expired_cache_task() == {"removed": 0}


class VersionedPortfolios:
    """CNaught wire stub whose portfolio name changes on every request."""

    def __init__(self):
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        return httpx.Response(200, json={"data": [{"id": "pf1", "name": f"Portfolio v{self.calls}", "projects": []}]})


def make_cnaught_service(handler) -> MarketplaceService:
    client = CNaughtClient(
        api_key="sk_test",
        config=VendorConfig(vendor="cnaught", base_url="https://api.cnaught.com/v1", requests_per_second=100),
        rate_limiter=RateLimiter(),
        transport=httpx.MockTransport(handler),
    )
    return make_service({"cnaught": client})


class TestRefreshReachesVendor:
    @pytest.mark.asyncio
    async def test_force_refresh_fetches_again(self):
        handler = VersionedPortfolios()
        service = make_cnaught_service(handler)

        first = await service.get_portfolios(force_refresh=True)
        second = await service.get_portfolios(force_refresh=True)

        assert handler.calls == 2
        assert [p.name for p in first.items] == ["Portfolio v1"]
        assert [p.name for p in second.items] == ["Portfolio v2"]

    @pytest.mark.asyncio
    async def test_invalidate_forgets_memoized_responses(self):
        handler = VersionedPortfolios()
        service = make_cnaught_service(handler)
        await service.get_portfolios()

        await service.invalidate(vendor="cnaught")
        listing = await service.get_portfolios()

        assert listing.cached is False
        assert handler.calls == 2
        assert [p.name for p in listing.items] == ["Portfolio v2"]

    @pytest.mark.asyncio
    async def test_cached_read_makes_no_call(self):
        handler = VersionedPortfolios()
        service = make_cnaught_service(handler)
        await service.get_portfolios()

        listing = await service.get_portfolios()

        assert listing.cached is True
        assert handler.calls == 1
