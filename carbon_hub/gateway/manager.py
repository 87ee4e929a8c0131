"""VendorManager: registry and fan-out across vendor clients.

Main entry point for the marketplace:
  1. Holds the vendor registry (vendor id → client + capabilities)
  2. Resolves the target vendor of an id via VendorResolver
  3. Fans calls out with bounded concurrency and a per-call deadline
  4. Normalizes every vendor's response into canonical entities
  5. Isolates per-vendor failures; raises AggregateError only when every
     vendor failed

Usage:
    manager = VendorManager.from_settings()

    projects = await manager.fetch_all_projects({"location": "brazil"})
    projects.errors          # {"toucan": "Server error: 503"}

    quote = await manager.get_quote(QuoteRequest(amount_kg=100))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from carbon_hub.core.metrics import FANOUT_FAILURES
from carbon_hub.gateway.errors import (
    AggregateError,
    CapabilityUnsupportedError,
    DecodeError,
    GatewayError,
    NoClientsError,
    TransportError,
    ValidationError,
    VendorNotFoundError,
    VendorUnresolvedError,
)
from carbon_hub.gateway.normalizer import normalize
from carbon_hub.gateway.rate_limiter import RateLimiter
from carbon_hub.gateway.resolver import VendorResolver
from carbon_hub.gateway.selection import select_best_quote
from carbon_hub.gateway.types import (
    Capability,
    CheckoutRequest,
    CheckoutSession,
    EntityType,
    Portfolio,
    Project,
    Quote,
    QuoteRequest,
    VendorCapabilities,
)

logger = logging.getLogger(__name__)

VendorCall = Callable[[str, Any], Awaitable[Any]]


@dataclass
class FanoutResult:
    """Merged result of one fan-out call.

    Iterates like the list of merged entities; ``failures`` holds the error of
    every vendor that failed, ``skipped`` the vendors lacking the capability.
    """

    operation: str
    items: list = field(default_factory=list)
    failures: dict[str, GatewayError] = field(default_factory=dict)
    succeeded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def __iter__(self) -> Iterator:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index):
        return self.items[index]

    @property
    def errors(self) -> dict[str, str]:
        """Per-vendor error messages."""
        return {vendor: error.message for vendor, error in self.failures.items()}

    @property
    def all_failed(self) -> bool:
        return bool(self.failures) and not self.succeeded


@dataclass
class ClientRegistration:
    vendor: str
    client: Any
    capabilities: VendorCapabilities


def apply_project_filters(projects: list[Project], filters: dict[str, Any] | None) -> list[Project]:
    """Filter merged projects regardless of their origin vendor.

    Supported keys: location / project_type (case-insensitive substring),
    min_price / max_price (price_per_kg), available_only.
    """
    if not filters:
        return list(projects)

    location = (filters.get("location") or "").lower()
    project_type = (filters.get("project_type") or "").lower()
    min_price = filters.get("min_price")
    max_price = filters.get("max_price")
    available_only = bool(filters.get("available_only"))

    result = []
    for project in projects:
        if location and location not in project.location.lower():
            continue
        if project_type and project_type not in project.project_type.lower():
            continue
        if min_price is not None and project.price_per_kg < float(min_price):
            continue
        if max_price is not None and project.price_per_kg > float(max_price):
            continue
        if available_only and not project.is_available():
            continue
        result.append(project)
    return result


class VendorManager:
    """Vendor registry and multi-vendor aggregator."""

    def __init__(
        self,
        concurrency: int = 4,
        timeout: float | None = 45.0,
        rate_limiter: RateLimiter | None = None,
    ):
        """
        Args:
            concurrency: Max vendor branches in flight per fan-out call
            timeout: Default deadline (seconds) for a whole fan-out call
            rate_limiter: Shared limiter handed to clients built by from_settings
        """
        self.concurrency = max(concurrency, 1)
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self._registry: dict[str, ClientRegistration] = {}
        self.resolver = VendorResolver(lambda: self._registry.keys())

    @classmethod
    def from_settings(cls, transport=None) -> VendorManager:
        """Build a manager with every vendor that has usable configuration."""
        from carbon_hub.core.config import settings
        from carbon_hub.gateway.types import VendorConfig
        from carbon_hub.gateway.vendor_clients import CNaughtClient, ToucanClient

        limiter = RateLimiter(
            requests_per_second=settings.requests_per_second,
            window_seconds=settings.rate_window_seconds,
        )
        manager = cls(
            concurrency=settings.fanout_concurrency,
            timeout=settings.fanout_timeout,
            rate_limiter=limiter,
        )

        if settings.cnaught_api_key:
            manager.register(
                "cnaught",
                CNaughtClient(
                    api_key=settings.cnaught_api_key,
                    sandbox=settings.cnaught_sandbox,
                    config=VendorConfig.from_settings("cnaught", settings.cnaught_base_url),
                    rate_limiter=limiter,
                    transport=transport,
                ),
            )
        else:
            logger.info("CNaught not configured (no API key), skipping")

        if settings.toucan_enabled:
            manager.register(
                "toucan",
                ToucanClient(
                    subgraph=settings.toucan_subgraph,
                    config=VendorConfig.from_settings("toucan", settings.toucan_base_url),
                    rate_limiter=limiter,
                    transport=transport,
                ),
            )

        return manager

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, vendor: str, client: Any) -> None:
        """Register (or replace) the client for a vendor id."""
        if not vendor:
            raise ValidationError("Vendor id is required")
        capabilities = VendorCapabilities.of(client)
        if vendor in self._registry:
            logger.info("Replacing client for vendor %s", vendor)
        self._registry[vendor] = ClientRegistration(vendor=vendor, client=client, capabilities=capabilities)
        logger.info("Registered vendor %s (%s)", vendor, ", ".join(sorted(c.value for c in capabilities.supported)))

    def unregister(self, vendor: str) -> bool:
        registration = self._registry.pop(vendor, None)
        if registration is None:
            return False
        self.resolver.forget_vendor(vendor)
        logger.info("Unregistered vendor %s", vendor)
        return True

    def get(self, vendor: str) -> Any:
        registration = self._registry.get(vendor)
        return registration.client if registration else None

    def get_all_clients(self) -> dict[str, Any]:
        return {vendor: reg.client for vendor, reg in self._registry.items()}

    @property
    def vendors(self) -> list[str]:
        return list(self._registry)

    def capabilities(self, vendor: str) -> VendorCapabilities:
        return self._require(vendor).capabilities

    def _require(self, vendor: str) -> ClientRegistration:
        registration = self._registry.get(vendor)
        if registration is None:
            raise VendorNotFoundError(f"Vendor not registered: {vendor}", vendor=vendor, status_code=404)
        return registration

    def _require_capability(self, vendor: str, capability: Capability) -> Any:
        registration = self._require(vendor)
        if capability not in registration.capabilities:
            raise CapabilityUnsupportedError(
                f"Vendor {vendor} does not support {capability.value}",
                vendor=vendor,
            )
        return registration.client

    def _supporting(self, *capabilities: Capability) -> tuple[list[str], list[str]]:
        """Split registered vendors into (supporting any capability, skipped)."""
        supported, skipped = [], []
        for vendor, reg in self._registry.items():
            if any(cap in reg.capabilities for cap in capabilities):
                supported.append(vendor)
            else:
                skipped.append(vendor)
        return supported, skipped

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _fan_out(
        self,
        operation: str,
        vendors: list[str],
        call: VendorCall,
        timeout: float | None = None,
    ) -> FanoutResult:
        """Run ``call(vendor, client)`` for each vendor with bounded concurrency.

        The deadline covers the whole call, including time spent waiting for
        a concurrency slot. A vendor that misses it is recorded as a
        TransportError; cancelling the caller cancels every branch.
        """
        if not self._registry:
            raise NoClientsError(f"No vendor clients registered for {operation}")

        deadline = timeout if timeout is not None else self.timeout
        semaphore = asyncio.Semaphore(self.concurrency)
        result = FanoutResult(operation=operation)

        async def _branch(vendor: str) -> Any:
            async with semaphore:
                return await call(vendor, self._registry[vendor].client)

        async def _guarded(vendor: str) -> Any:
            try:
                if deadline is None:
                    return await _branch(vendor)
                return await asyncio.wait_for(_branch(vendor), timeout=deadline)
            except asyncio.TimeoutError:
                raise TransportError(f"{vendor} did not respond within {deadline:g}s", vendor=vendor) from None

        outcomes = await asyncio.gather(*(_guarded(v) for v in vendors), return_exceptions=True)

        for vendor, outcome in zip(vendors, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                error = self._as_gateway_error(vendor, outcome)
                result.failures[vendor] = error
                FANOUT_FAILURES.labels(operation=operation, vendor=vendor).inc()
                logger.warning("%s failed for %s: [%s] %s", operation, vendor, error.kind.value, error.message)
                continue
            result.succeeded.append(vendor)
            result.items.extend(outcome or [])

        if result.all_failed:
            logger.error("%s failed for every vendor: %s", operation, result.errors)
        return result

    @staticmethod
    def _as_gateway_error(vendor: str, exc: BaseException) -> GatewayError:
        if isinstance(exc, GatewayError):
            if not exc.vendor:
                exc.vendor = vendor
            return exc
        logger.error("Unexpected %s from %s: %s", type(exc).__name__, vendor, exc, exc_info=exc)
        return DecodeError(f"Unexpected {type(exc).__name__}: {exc}", vendor=vendor)

    async def _call_single(self, vendor: str, produce: Callable[[], Awaitable[Any]]) -> Any:
        """Run one targeted vendor call; anything but a GatewayError becomes a DecodeError."""
        try:
            return await produce()
        except GatewayError as e:
            if not e.vendor:
                e.vendor = vendor
            raise
        except Exception as e:
            raise self._as_gateway_error(vendor, e) from e

    @staticmethod
    def _raise_if_all_failed(result: FanoutResult) -> None:
        if result.all_failed:
            summary = "; ".join(f"{vendor}: {message}" for vendor, message in result.errors.items())
            raise AggregateError(f"All vendors failed for {result.operation}: {summary}", errors=result.errors)

    # ------------------------------------------------------------------
    # Public aggregator API
    # ------------------------------------------------------------------

    async def fetch_all_portfolios(self, timeout: float | None = None, vendor: str | None = None) -> FanoutResult:
        """Portfolios from every vendor that lists them (or just ``vendor``)."""
        vendors, skipped = self._supporting(Capability.PORTFOLIOS)
        if vendor:
            skipped += [v for v in vendors if v != vendor]
            vendors = [v for v in vendors if v == vendor]

        async def _call(vendor: str, client: Any) -> list[Portfolio]:
            return normalize(await client.get_portfolios(), EntityType.PORTFOLIOS, vendor)

        result = await self._fan_out("fetch_all_portfolios", vendors, _call, timeout)
        result.skipped = skipped
        self._raise_if_all_failed(result)
        self.resolver.remember(result.items)
        return result

    async def fetch_all_projects(
        self,
        filters: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> FanoutResult:
        """Projects from every vendor, filtered after the merge.

        Per vendor, the first available listing shape wins: direct project
        listing, token listing, then projects nested in portfolios.
        """
        vendors, skipped = self._supporting(Capability.PROJECTS, Capability.TOKEN_LISTING, Capability.PORTFOLIOS)
        wanted = (filters or {}).get("vendor")
        if wanted:
            skipped += [v for v in vendors if v != wanted]
            vendors = [v for v in vendors if v == wanted]

        async def _call(vendor: str, client: Any) -> list[Project]:
            caps = self._registry[vendor].capabilities
            if Capability.PROJECTS in caps:
                raw = await client.get_all_projects(filters or {})
            elif Capability.TOKEN_LISTING in caps:
                raw = await client.list_project_tokens()
            else:
                portfolios = normalize(await client.get_portfolios(), EntityType.PORTFOLIOS, vendor)
                raw = [project for portfolio in portfolios for project in portfolio.projects]
            return normalize(raw, EntityType.PROJECTS, vendor)

        result = await self._fan_out("fetch_all_projects", vendors, _call, timeout)
        result.skipped = skipped
        self._raise_if_all_failed(result)
        self.resolver.remember(result.items)
        result.items = apply_project_filters(result.items, filters)
        return result

    async def get_project_details(self, project_id: str, vendor: str | None = None) -> Project:
        """Single-vendor project lookup; the vendor is resolved from the id if omitted."""
        if not project_id:
            raise ValidationError("Project ID is required")
        vendor = vendor or self.resolver.resolve(project_id)
        if not vendor:
            raise VendorUnresolvedError(f"Could not determine vendor for project {project_id}")
        client = self._require_capability(vendor, Capability.PROJECT_DETAILS)

        async def _fetch() -> list[Project]:
            return normalize(await client.get_project_details(project_id), EntityType.PROJECTS, vendor)

        projects = await self._call_single(vendor, _fetch)
        if not projects:
            raise DecodeError(f"Vendor {vendor} returned an invalid project {project_id}", vendor=vendor)
        self.resolver.remember(projects)
        return projects[0]

    async def get_quote(self, request: QuoteRequest, timeout: float | None = None) -> Quote:
        """Quote from the owning vendor, or the cheapest quote across vendors."""
        request.validate()

        vendor = self.resolver.resolve(request.portfolio_id) or self.resolver.resolve(request.project_id)
        if vendor and vendor in self._registry:
            client = self._require_capability(vendor, Capability.QUOTES)

            async def _quote() -> list[Quote]:
                return normalize(await client.create_quote(request), EntityType.QUOTES, vendor)

            quotes = await self._call_single(vendor, _quote)
            if not quotes:
                raise DecodeError(f"Vendor {vendor} returned an invalid quote", vendor=vendor)
            return quotes[0]

        vendors, _ = self._supporting(Capability.QUOTES)
        if not vendors:
            raise CapabilityUnsupportedError("No registered vendor supports quotes")

        async def _call(vendor: str, client: Any) -> list[Quote]:
            return normalize(await client.create_quote(request), EntityType.QUOTES, vendor)

        result = await self._fan_out("get_quote", vendors, _call, timeout)
        if not result.items:
            summary = "; ".join(f"{v}: {m}" for v, m in result.errors.items()) or "no valid quotes returned"
            raise AggregateError(f"Unable to get quotes from any vendor: {summary}", errors=result.errors)
        return select_best_quote(result.items)

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """Open a checkout with the vendor that owns the portfolio/project."""
        request.validate()

        vendor = self.resolver.resolve(request.portfolio_id) or self.resolver.resolve(request.project_id)
        if not vendor:
            raise VendorUnresolvedError(
                "Unable to determine vendor for checkout session",
                details={"portfolio_id": request.portfolio_id, "project_id": request.project_id},
            )
        client = self._require_capability(vendor, Capability.CHECKOUT)

        async def _open() -> list[CheckoutSession]:
            return normalize(await client.create_checkout_session(request), EntityType.CHECKOUT_SESSIONS, vendor)

        sessions = await self._call_single(vendor, _open)
        if not sessions:
            raise DecodeError(f"Vendor {vendor} returned an invalid checkout session", vendor=vendor)
        logger.info("Checkout session %s created with %s", sessions[0].id, vendor)
        return sessions[0]

    async def validate_all_clients(self, timeout: float | None = None) -> dict[str, dict[str, Any]]:
        """``{vendor: {valid, message}}``; each vendor validated independently."""
        if not self._registry:
            return {}
        vendors = list(self._registry)

        async def _call(vendor: str, client: Any) -> list:
            await client.validate_credentials()
            return []

        result = await self._fan_out("validate_all_clients", vendors, _call, timeout)
        report = {vendor: {"valid": True, "message": "Valid"} for vendor in result.succeeded}
        for vendor, error in result.failures.items():
            report[vendor] = {"valid": False, "message": error.message, "kind": error.kind.value}
        return {vendor: report[vendor] for vendor in vendors}

    async def get_aggregated_stats(self, timeout: float | None = None) -> dict[str, Any]:
        """Health rollup: per-vendor status plus portfolio/project totals."""
        stats: dict[str, Any] = {
            "total_vendors": len(self._registry),
            "total_portfolios": 0,
            "total_projects": 0,
            "price_range": {"min": None, "max": None},
            "vendors": {},
        }
        if not self._registry:
            return stats

        validation = await self.validate_all_clients(timeout)
        for vendor, reg in self._registry.items():
            entry: dict[str, Any] = {
                "name": vendor,
                "portfolios": 0,
                "projects": 0,
                "status": "active" if validation[vendor]["valid"] else "error",
                "capabilities": reg.capabilities.to_dict(),
            }
            if not validation[vendor]["valid"]:
                entry["error"] = validation[vendor]["message"]
            stats["vendors"][vendor] = entry

        # Failures were already reported by validation; totals count what answered
        try:
            portfolios = await self.fetch_all_portfolios(timeout)
        except AggregateError:
            portfolios = FanoutResult(operation="fetch_all_portfolios")
        for portfolio in portfolios:
            if portfolio.vendor in stats["vendors"]:
                stats["vendors"][portfolio.vendor]["portfolios"] += 1
        stats["total_portfolios"] = len(portfolios)

        try:
            projects = await self.fetch_all_projects(timeout=timeout)
        except AggregateError:
            projects = FanoutResult(operation="fetch_all_projects")
        for project in projects:
            if project.vendor in stats["vendors"]:
                stats["vendors"][project.vendor]["projects"] += 1
        stats["total_projects"] = len(projects)
        stats["price_range"] = _price_range(p.price_per_kg for p in projects)
        return stats

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------

    def get_vendor_config(self, vendor: str) -> dict[str, Any]:
        """Capability flags for a registered vendor ({} if unknown)."""
        registration = self._registry.get(vendor)
        if registration is None:
            return {}
        return {"name": vendor, **registration.capabilities.to_dict()}

    async def aggregate_project_data(self, filters: dict[str, Any] | None = None) -> dict[str, Any]:
        """Projects plus vendor counts, price range and type/location histograms."""
        try:
            projects = await self.fetch_all_projects(filters)
        except (AggregateError, NoClientsError) as e:
            return {
                "projects": [],
                "error": e.message,
                "total_count": 0,
                "vendor_counts": {},
                "price_range": {"min": None, "max": None},
                "project_types": {},
                "locations": {},
            }

        vendor_counts: dict[str, int] = {}
        project_types: dict[str, int] = {}
        locations: dict[str, int] = {}
        for project in projects:
            vendor_counts[project.vendor] = vendor_counts.get(project.vendor, 0) + 1
            if project.project_type:
                project_types[project.project_type] = project_types.get(project.project_type, 0) + 1
            if project.location:
                locations[project.location] = locations.get(project.location, 0) + 1

        return {
            "projects": projects.items,
            "errors": projects.errors,
            "total_count": len(projects),
            "vendor_counts": vendor_counts,
            "price_range": _price_range(p.price_per_kg for p in projects),
            "project_types": project_types,
            "locations": locations,
        }

    def normalize_vendor_data(self, data: Any, entity_type: EntityType | str, vendor: str) -> list:
        return normalize(data, entity_type, vendor)

    async def execute_calls(
        self,
        calls: dict[str, dict[str, Any]],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Dispatch named client calls concurrently.

        ``calls`` maps a call id to ``{"vendor", "method", "params"}``; each
        result is either the method's return value or a GatewayError.
        """
        if not calls:
            return {}

        deadline = timeout if timeout is not None else self.timeout
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(call: dict[str, Any]) -> Any:
            vendor = call.get("vendor", "")
            method = call.get("method", "")
            client = self.get(vendor)
            func = getattr(client, method, None) if client and not method.startswith("_") else None
            if not callable(func):
                raise ValidationError(f"Invalid API call: {vendor}::{method}", vendor=vendor)
            async with semaphore:
                coro = func(**(call.get("params") or {}))
                if deadline is None:
                    return await coro
                return await asyncio.wait_for(coro, timeout=deadline)

        call_ids = list(calls)
        outcomes = await asyncio.gather(*(_run(calls[c]) for c in call_ids), return_exceptions=True)

        results: dict[str, Any] = {}
        for call_id, outcome in zip(call_ids, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            vendor = calls[call_id].get("vendor", "")
            if isinstance(outcome, asyncio.TimeoutError):
                outcome = TransportError(f"{vendor}::{calls[call_id].get('method')} timed out", vendor=vendor)
            elif isinstance(outcome, BaseException):
                outcome = self._as_gateway_error(vendor, outcome)
            results[call_id] = outcome
        return results

    def clear_request_caches(self, vendor: str | None = None) -> int:
        """Drop memoized request results of one vendor's client, or of all clients."""
        removed = 0
        for name, registration in self._registry.items():
            if vendor and name != vendor:
                continue
            clear = getattr(registration.client, "clear_cache", None)
            if callable(clear):
                removed += clear()
        if removed:
            logger.debug("Cleared %d memoized vendor responses (%s)", removed, vendor or "all vendors")
        return removed

    async def aclose(self) -> None:
        for registration in self._registry.values():
            close = getattr(registration.client, "aclose", None)
            if close is not None:
                await close()


def _price_range(prices) -> dict[str, float | None]:
    positive = [p for p in prices if p > 0]
    if not positive:
        return {"min": None, "max": None}
    return {"min": min(positive), "max": max(positive)}
