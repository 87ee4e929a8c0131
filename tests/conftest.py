import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from carbon_hub.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.cache_backend = "memory"
settings.cnaught_api_key = ""
settings.toucan_enabled = False
settings.request_logging = False
settings.sentry_dsn = ""

from carbon_hub.gateway.types import Capability  # noqa: E402


class FakeClock:
    """Manually advanced time source for rate windows and TTLs."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVendor:
    """In-memory vendor client; returns raw maps like a real client would."""

    def __init__(
        self,
        capabilities,
        *,
        portfolios=None,
        projects=None,
        quote_price=None,
        error=None,
        delay=0.0,
    ):
        self.capabilities = frozenset(capabilities) | {Capability.VALIDATE}
        self.portfolios = portfolios or []
        self.projects = projects or []
        self.quote_price = quote_price
        self.error = error
        self.delay = delay
        self.calls: list[str] = []
        self.closed = False

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def get_portfolios(self):
        await self._enter("get_portfolios")
        return self.portfolios

    async def get_all_projects(self, filters):
        await self._enter("get_all_projects")
        return self.projects

    async def list_project_tokens(self):
        await self._enter("list_project_tokens")
        return self.projects

    async def get_project_details(self, project_id):
        await self._enter("get_project_details")
        for project in self.projects:
            if project["id"] == project_id:
                return project
        return {}

    async def create_quote(self, request):
        await self._enter("create_quote")
        return {
            "id": f"quote-{len(self.calls)}",
            "amount_kg": request.amount_kg,
            "price_per_kg": self.quote_price,
            "total_price": round(self.quote_price * request.amount_kg, 2),
            "currency": request.currency,
            "portfolio_id": request.portfolio_id,
        }

    async def create_checkout_session(self, request):
        await self._enter("create_checkout_session")
        return {
            "id": "cs_123",
            "checkout_url": "https://checkout.example.com/cs_123",
            "amount_kg": request.amount_kg,
            "total_price": 12.5,
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
        }

    async def validate_credentials(self):
        await self._enter("validate_credentials")
        return True

    async def aclose(self):
        self.closed = True


def project_data(project_id: str, **overrides) -> dict:
    data = {
        "id": project_id,
        "name": f"Project {project_id}",
        "location": "Brazil",
        "project_type": "Forestry",
        "price_per_kg": 0.02,
        "available_quantity": 1000,
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_vendor():
    return FakeVendor


@pytest.fixture
def make_project():
    return project_data


@pytest.fixture
def no_sleep():
    """Patch out backoff sleeps in the retry executor."""
    with patch("carbon_hub.gateway.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep
