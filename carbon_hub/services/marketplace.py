"""Marketplace service: cache-aside reads over the VendorManager.

Listings are cached per vendor (so invalidating one vendor never drops
another's data) and merged on read. Every successful read, cached or not,
feeds the VendorResolver so later quote/checkout calls can find the owning
vendor of a bare id.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from carbon_hub.cache.persistent import PersistentCache
from carbon_hub.gateway.manager import VendorManager, apply_project_filters
from carbon_hub.gateway.types import (
    Capability,
    CheckoutRequest,
    CheckoutSession,
    Portfolio,
    Project,
    Quote,
    QuoteRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class Listing:
    items: list = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    cached: bool = False


def _group_by_vendor(items: list, vendors: list[str]) -> dict[str, list]:
    grouped: dict[str, list] = {vendor: [] for vendor in vendors}
    for item in items:
        grouped.setdefault(item.vendor, []).append(item)
    return grouped


class MarketplaceService:
    def __init__(self, manager: VendorManager, cache: PersistentCache):
        self.manager = manager
        self.cache = cache

    def _listing_vendors(self, *capabilities: Capability) -> list[str]:
        return [v for v in self.manager.vendors if any(c in self.manager.capabilities(v) for c in capabilities)]

    # --- portfolios ---

    async def get_portfolios(self, force_refresh: bool = False) -> Listing:
        vendors = self._listing_vendors(Capability.PORTFOLIOS)

        if not force_refresh:
            cached = await self._cached_per_vendor(vendors, self.cache.get_cached_portfolios)
            if cached is not None:
                self.manager.resolver.remember(cached)
                return Listing(items=cached, cached=True)

        if force_refresh:
            self.manager.clear_request_caches()
        result = await self.manager.fetch_all_portfolios()
        for vendor, portfolios in _group_by_vendor(result.items, result.succeeded).items():
            await self.cache.cache_portfolios(portfolios, vendor=vendor)
        return Listing(items=result.items, errors=result.errors)

    # --- projects ---

    async def get_projects(self, force_refresh: bool = False) -> Listing:
        """All projects from every vendor, unfiltered."""
        vendors = self._listing_vendors(Capability.PROJECTS, Capability.TOKEN_LISTING, Capability.PORTFOLIOS)

        if not force_refresh:
            cached = await self._cached_per_vendor(vendors, self.cache.get_cached_projects)
            if cached is not None:
                self.manager.resolver.remember(cached)
                return Listing(items=cached, cached=True)

        if force_refresh:
            self.manager.clear_request_caches()
        result = await self.manager.fetch_all_projects()
        for vendor, projects in _group_by_vendor(result.items, result.succeeded).items():
            await self.cache.cache_projects(projects, vendor=vendor)
        return Listing(items=result.items, errors=result.errors)

    async def search_projects(self, filters: dict[str, Any] | None = None, force_refresh: bool = False) -> Listing:
        filters = {k: v for k, v in (filters or {}).items() if v not in (None, "", False)}
        search_key = self.cache.build_key("search_results", "", filters)

        if filters and not force_refresh:
            cached = await self.cache.get(search_key)
            if cached is not None:
                projects = [Project.from_dict(item) for item in cached]
                self.manager.resolver.remember(projects)
                return Listing(items=projects, cached=True)

        listing = await self.get_projects(force_refresh=force_refresh)
        vendor = filters.get("vendor")
        projects = [p for p in listing.items if not vendor or p.vendor == vendor]
        projects = apply_project_filters(projects, filters)

        # Partial results are served but not cached
        if filters and not listing.errors:
            await self.cache.put(search_key, projects, entry_type="search_results")
        return Listing(items=projects, errors=listing.errors, cached=listing.cached)

    async def get_project(self, vendor: str, project_id: str, force_refresh: bool = False) -> Project:
        if not force_refresh:
            cached = await self.cache.get_cached_project(project_id, vendor)
            if cached is not None:
                self.manager.resolver.remember([cached])
                return cached

        if force_refresh:
            self.manager.clear_request_caches(vendor)
        project = await self.manager.get_project_details(project_id, vendor)
        await self.cache.cache_project(project)
        return project

    # --- transactions (never cached) ---

    async def get_quote(self, request: QuoteRequest) -> Quote:
        return await self.manager.get_quote(request)

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        return await self.manager.create_checkout_session(request)

    # --- vendors & cache maintenance ---

    def list_vendors(self) -> list[dict[str, Any]]:
        vendors = []
        for vendor, client in self.manager.get_all_clients().items():
            info = self.manager.get_vendor_config(vendor)
            status = getattr(client, "get_rate_limit_status", None)
            info["rate_limit"] = status() if callable(status) else None
            vendors.append(info)
        return vendors

    async def invalidate(self, entry_type: str | None = None, vendor: str | None = None) -> int:
        """Drop cached entries by type and/or vendor (everything if neither is given).

        Memoized vendor responses go too, so the next read reaches the vendor.
        """
        self.manager.clear_request_caches(vendor)
        if vendor:
            removed = await self.cache.invalidate_by_vendor(vendor)
            # Merged search results may contain this vendor's projects
            removed += await self.cache.invalidate_by_type("search_results")
            if entry_type:
                removed += await self.cache.invalidate_by_type(entry_type)
            return removed
        if entry_type:
            return await self.cache.invalidate_by_type(entry_type)
        return await self.cache.invalidate_all()

    def warm_sources(self) -> list[dict[str, Any]]:
        """One warm source per vendor and listing type."""
        sources: list[dict[str, Any]] = []
        for vendor in self._listing_vendors(Capability.PORTFOLIOS):
            sources.append(
                {
                    "type": "portfolios",
                    "vendor": vendor,
                    "key": self.cache.build_key("portfolios", vendor),
                    "producer": self._producer(self.manager.fetch_all_portfolios, vendor=vendor),
                }
            )
        for vendor in self._listing_vendors(Capability.PROJECTS, Capability.TOKEN_LISTING, Capability.PORTFOLIOS):
            sources.append(
                {
                    "type": "projects",
                    "vendor": vendor,
                    "key": self.cache.build_key("projects", vendor),
                    "producer": self._producer(self.manager.fetch_all_projects, {"vendor": vendor}),
                }
            )
        return sources

    @staticmethod
    def _producer(fetch, *args, **kwargs):
        async def _produce() -> list:
            result = await fetch(*args, **kwargs)
            return result.items

        return _produce

    async def warm(self) -> dict[str, dict[str, Any]]:
        return await self.cache.warm(self.warm_sources())

    async def _cached_per_vendor(self, vendors: list[str], getter) -> list | None:
        """Merged cached listing, or None unless every vendor has an entry."""
        if not vendors:
            return None
        merged: list[Portfolio | Project] = []
        for vendor in vendors:
            items = await getter(vendor=vendor)
            if items is None:
                return None
            merged.extend(items)
        return merged
