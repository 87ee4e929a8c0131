"""Base class for vendor clients.

A vendor client turns canonical requests into one vendor's wire protocol and
returns canonical entities (or raw maps the Normalizer can turn into them).
Optional operations are declared in ``capabilities``; the VendorManager
reads that set once, at registration time.

Optional operations (name → Capability):
    get_portfolios()                 PORTFOLIOS
    get_all_projects(filters)        PROJECTS
    list_project_tokens()            TOKEN_LISTING
    get_project_details(project_id)  PROJECT_DETAILS
    create_quote(request)            QUOTES
    create_checkout_session(request) CHECKOUT
    handle_webhook(payload)          WEBHOOKS
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx

from carbon_hub.gateway.rate_limiter import RateLimiter
from carbon_hub.gateway.retry import RetryExecutor
from carbon_hub.gateway.types import Capability, VendorConfig

logger = logging.getLogger(__name__)


class BaseVendorClient(ABC):
    """Base class for all vendor clients."""

    vendor: ClassVar[str] = ""
    capabilities: ClassVar[frozenset[Capability]] = frozenset({Capability.VALIDATE})
    default_base_url: ClassVar[str] = ""

    def __init__(
        self,
        config: VendorConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ):
        self.config = config or VendorConfig.from_settings(self.vendor, self.default_base_url)
        if not self.config.base_url:
            self.config.base_url = self.default_base_url
        self.executor = RetryExecutor(
            self.config,
            rate_limiter=rate_limiter,
            default_headers=self.get_auth_headers(),
            transport=transport,
            identity=self.vendor or self.config.vendor,
        )

    def get_auth_headers(self) -> dict[str, str]:
        """Authentication headers added to every request."""
        return {}

    async def request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return await self.executor.execute(method, endpoint, data, headers)

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Return True if the vendor accepts our configuration; raise GatewayError otherwise."""
        ...

    def clear_cache(self) -> int:
        """Drop memoized request results."""
        return self.executor.clear_cache()

    def get_rate_limit_status(self) -> dict:
        return self.executor.rate_limiter.status(self.executor.identity)

    async def aclose(self) -> None:
        await self.executor.aclose()
