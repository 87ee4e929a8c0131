"""Vendor-specific clients: protocol-level handling for each offset vendor.

Each client translates canonical requests into the vendor's HTTP protocol,
sends them through its RetryExecutor and maps responses onto canonical
entities.

Vendor-specific behaviors:
  - CNaught: REST/JSON, Bearer auth, list endpoints wrap results in "data",
    locations arrive either as a string or as {city, state, country}
  - Toucan: GraphQL subgraph over HTTP POST, public (no auth), errors come
    back as HTTP 200 with an "errors" array, token supply is in wei, carbon
    pools are listed as portfolios
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from carbon_hub.gateway.base_client import BaseVendorClient
from carbon_hub.gateway.errors import ClientError, ValidationError
from carbon_hub.gateway.types import (
    Capability,
    CheckoutRequest,
    CheckoutSession,
    Order,
    Portfolio,
    Project,
    Quote,
    QuoteRequest,
    TokenPrice,
)

logger = logging.getLogger(__name__)


def _unwrap_list(payload: Any) -> list[dict]:
    """List endpoints answer either a bare list or {"data": [...]}."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data", [])
        return data if isinstance(data, list) else []
    return []


# ---------------------------------------------------------------------------
# CNaught (REST)
# ---------------------------------------------------------------------------


class CNaughtClient(BaseVendorClient):
    """CNaught REST API client (portfolios, quotes, hosted checkout, orders)."""

    vendor = "cnaught"
    default_base_url = "https://api.cnaught.com/v1"
    capabilities = frozenset(
        {
            Capability.PORTFOLIOS,
            Capability.PROJECT_DETAILS,
            Capability.QUOTES,
            Capability.CHECKOUT,
            Capability.VALIDATE,
        }
    )

    def __init__(self, api_key: str, sandbox: bool = False, **kwargs):
        self.api_key = api_key
        self.sandbox = sandbox
        super().__init__(**kwargs)

    def get_auth_headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self.sandbox:
            headers["X-Sandbox"] = "true"
        return headers

    async def validate_credentials(self) -> bool:
        if not self.api_key:
            raise ValidationError("CNaught API key is required", vendor=self.vendor)
        await self.request("GET", "portfolios", {"limit": 1})
        return True

    async def get_portfolios(self, params: dict[str, Any] | None = None) -> list[Portfolio]:
        query = {"limit": 100, "offset": 0, **(params or {})}
        payload = await self.request("GET", "portfolios", query)
        return [self._map_portfolio(item) for item in _unwrap_list(payload)]

    async def get_portfolio_details(self, portfolio_id: str) -> Portfolio:
        if not portfolio_id:
            raise ValidationError("Portfolio ID is required", vendor=self.vendor)
        payload = await self.request("GET", f"portfolios/{portfolio_id}")
        return self._map_portfolio(payload)

    async def get_project_details(self, project_id: str) -> Project:
        if not project_id:
            raise ValidationError("Project ID is required", vendor=self.vendor)
        payload = await self.request("GET", f"projects/{project_id}")
        return self._map_project(payload)

    async def create_quote(self, request: QuoteRequest) -> Quote:
        request.validate()
        data: dict[str, Any] = {"amount_kg": float(request.amount_kg)}
        if request.portfolio_id:
            data["portfolio_id"] = request.portfolio_id
        payload = await self.request("POST", "quotes", data)
        return self._map_quote(payload)

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        request.validate()
        data = request.to_payload()
        data.pop("project_id", None)
        payload = await self.request("POST", "checkout/sessions", data)
        return self._map_checkout_session(payload)

    async def get_checkout_session(self, session_id: str) -> CheckoutSession:
        if not session_id:
            raise ValidationError("Session ID is required", vendor=self.vendor)
        payload = await self.request("GET", f"checkout/sessions/{session_id}")
        return self._map_checkout_session(payload)

    async def get_orders(self, params: dict[str, Any] | None = None) -> list[Order]:
        query = {"limit": 50, "offset": 0, **(params or {})}
        payload = await self.request("GET", "orders", query)
        return [self._map_order(item) for item in _unwrap_list(payload)]

    async def get_order(self, order_id: str) -> Order:
        if not order_id:
            raise ValidationError("Order ID is required", vendor=self.vendor)
        payload = await self.request("GET", f"orders/{order_id}")
        return self._map_order(payload)

    async def get_impact_data(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Account-level impact figures, returned as CNaught sends them."""
        payload = await self.request("GET", "impact/data", params or None)
        return payload if isinstance(payload, dict) else {"data": payload}

    async def create_subaccount(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a subaccount for attributing orders; ``name`` is required."""
        if not (data or {}).get("name"):
            raise ValidationError(
                "Required parameter 'name' is missing",
                vendor=self.vendor,
                details={"parameter": "name"},
            )
        return await self.request("POST", "subaccounts", data)

    # --- response mapping ---

    def _map_portfolio(self, data: dict[str, Any]) -> Portfolio:
        projects = [self._map_project(p) for p in data.get("projects", []) if isinstance(p, dict)]
        return Portfolio(
            id=data.get("id", ""),
            vendor=self.vendor,
            name=data.get("name", ""),
            description=data.get("description", "") or "",
            projects=projects,
            base_price_per_kg=data.get("price_per_kg", data.get("base_price_per_kg", 0)) or 0,
            is_active=data.get("is_active", True),
            metadata={
                "categories": data.get("categories", []),
                "total_supply": data.get("total_supply", 0),
                "available_supply": data.get("available_supply", 0),
                "currency": data.get("currency", "USD"),
            },
        )

    def _map_project(self, data: dict[str, Any]) -> Project:
        return Project(
            id=data.get("id", ""),
            vendor=self.vendor,
            name=data.get("name", ""),
            description=data.get("description", "") or "",
            location=self._extract_location(data),
            project_type=data.get("category") or data.get("project_type") or "",
            methodology=data.get("methodology", "") or "",
            price_per_kg=data.get("price_per_kg", 0) or 0,
            available_quantity=data.get("available_quantity", 0) or 0,
            registry_url=data.get("registry_url", "") or "",
            images=data.get("images", []) or [],
            sdgs=data.get("sdgs", []) or [],
            metadata={
                "standard": data.get("standard", ""),
                "vintage": data.get("vintage", ""),
                "verification_body": data.get("verification_body", ""),
                "project_developer": data.get("project_developer", ""),
            },
        )

    @staticmethod
    def _extract_location(data: dict[str, Any]) -> str:
        location = data.get("location")
        if isinstance(location, str) and location:
            return location
        if isinstance(location, dict):
            parts = [location.get(k) for k in ("city", "state", "country")]
            return ", ".join(p for p in parts if p)
        return data.get("country") or data.get("region") or ""

    def _map_quote(self, data: dict[str, Any]) -> Quote:
        return Quote.from_dict(
            {
                "id": data.get("id", ""),
                "vendor": self.vendor,
                "amount_kg": data.get("amount_kg", 0) or 0,
                "price_per_kg": data.get("price_per_kg", 0) or 0,
                "total_price": data.get("total_price", 0) or 0,
                "currency": data.get("currency", "USD"),
                "expires_at": data.get("expires_at"),
                "portfolio_id": data.get("portfolio_id"),
                "metadata": {
                    "fees": data.get("fees", []),
                    "taxes": data.get("taxes", []),
                    "breakdown": data.get("breakdown", []),
                },
            }
        )

    def _map_checkout_session(self, data: dict[str, Any]) -> CheckoutSession:
        return CheckoutSession.from_dict(
            {
                "id": data.get("id", ""),
                "vendor": self.vendor,
                "checkout_url": data.get("checkout_url", ""),
                "status": data.get("status", "pending"),
                "amount_kg": data.get("amount_kg", 0) or 0,
                "total_price": data.get("total_price", 0) or 0,
                "currency": data.get("currency", "USD"),
                "success_url": data.get("success_url", ""),
                "cancel_url": data.get("cancel_url", "") or "",
                "expires_at": data.get("expires_at"),
                "metadata": {
                    "customer_email": data.get("customer_email", ""),
                    "portfolio_id": data.get("portfolio_id"),
                    "order_id": data.get("order_id"),
                },
            }
        )

    def _map_order(self, data: dict[str, Any]) -> Order:
        return Order.from_dict(
            {
                "id": data.get("id", ""),
                "vendor_order_id": data.get("id", ""),
                "vendor": self.vendor,
                "amount_kg": data.get("amount_kg", 0) or 0,
                "total_price": data.get("total_price", 0) or 0,
                "currency": data.get("currency", "USD"),
                "status": data.get("status", "pending"),
                "project_allocations": data.get("project_allocations", []),
                "retirement_certificate": data.get("retirement_certificate"),
                "created_at": data.get("created_at"),
                "completed_at": data.get("completed_at"),
                "metadata": {
                    "portfolio_id": data.get("portfolio_id"),
                    "checkout_session_id": data.get("checkout_session_id"),
                },
            }
        )


# ---------------------------------------------------------------------------
# Toucan (GraphQL)
# ---------------------------------------------------------------------------

_WEI = 10**18


def _from_wei(value: Any) -> float:
    return float(value or 0) / _WEI

_TCO2_FIELDS = """
    id
    name
    symbol
    address
    createdAt
    totalSupply
    projectVintage {
        id
        name
        startTime
        endTime
        project {
            id
            projectId
            standard
            methodology
            region
            emissionType
            category
            uri
        }
    }
"""

_TCO2_LIST_QUERY = (
    "query Tokens($first: Int!, $skip: Int!) {"
    " tco2Tokens(first: $first, skip: $skip, orderBy: createdAt, orderDirection: desc) {" + _TCO2_FIELDS + "} }"
)

_TCO2_TOKEN_QUERY = "query Token($id: ID!) { tco2Token(id: $id) {" + _TCO2_FIELDS + "} }"

_POOLS_QUERY = """
query Pools($first: Int!) {
    pools(first: $first, orderBy: totalSupply, orderDirection: desc) {
        id
        name
        symbol
        totalSupply
        pooledTCO2Tokens(first: 5) {
            amount
            token { name symbol }
        }
    }
}
"""

_POOL_CONTENTS_QUERY = (
    "query PoolContents($pool: String!, $first: Int!) {"
    " pooledTCO2Tokens(where: { pool: $pool }, first: $first, orderBy: amount, orderDirection: desc) {"
    " id amount token {" + _TCO2_FIELDS + "} pool { id name symbol totalSupply } } }"
)

_SWAPS_QUERY = """
query Swaps($token: String!) {
    swaps(
        where: { or: [{ token0: $token }, { token1: $token }] }
        first: 10
        orderBy: timestamp
        orderDirection: desc
    ) {
        token0 { id }
        token1 { id }
        amount0In
        amount0Out
        amount1In
        amount1Out
        amountUSD
    }
}
"""


class ToucanClient(BaseVendorClient):
    """Toucan Protocol subgraph client (tokenized TCO2 credits on Polygon)."""

    vendor = "toucan"
    default_base_url = "https://api.thegraph.com"
    capabilities = frozenset(
        {Capability.PORTFOLIOS, Capability.TOKEN_LISTING, Capability.PROJECT_DETAILS, Capability.VALIDATE}
    )

    def __init__(self, subgraph: str = "/subgraphs/name/toucanprotocol/matic", **kwargs):
        self.subgraph = subgraph
        super().__init__(**kwargs)

    async def execute_graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST a GraphQL document; GraphQL-level errors become ClientError."""
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables
        payload = await self.request("POST", self.subgraph, body)
        if not isinstance(payload, dict):
            raise ClientError("Unexpected GraphQL response shape", vendor=self.vendor)
        if payload.get("errors"):
            messages = [e.get("message", "unknown error") for e in payload["errors"] if isinstance(e, dict)]
            raise ClientError(
                "GraphQL error: " + "; ".join(messages or ["unknown error"]),
                vendor=self.vendor,
                details={"errors": payload["errors"]},
            )
        return payload.get("data") or {}

    async def validate_credentials(self) -> bool:
        await self.execute_graphql("{ _meta { block { number } } }")
        return True

    async def list_project_tokens(self, limit: int = 100, skip: int = 0) -> list[Project]:
        data = await self.execute_graphql(_TCO2_LIST_QUERY, {"first": int(limit), "skip": int(skip)})
        return [self._map_token(token) for token in data.get("tco2Tokens") or []]

    async def get_project_details(self, project_id: str) -> Project:
        if not project_id:
            raise ValidationError("Project ID is required", vendor=self.vendor)
        data = await self.execute_graphql(_TCO2_TOKEN_QUERY, {"id": project_id.lower()})
        token = data.get("tco2Token")
        if not token:
            raise ClientError(f"TCO2 token {project_id} not found", vendor=self.vendor, status_code=404)
        return self._map_token(token)

    async def get_available_pools(self, limit: int = 10) -> list[Portfolio]:
        """Carbon pools (BCT, NCT, ...) by total supply, mapped onto portfolios."""
        data = await self.execute_graphql(_POOLS_QUERY, {"first": int(limit)})
        return [self._map_pool(pool) for pool in data.get("pools") or []]

    async def get_portfolios(self) -> list[Portfolio]:
        # Pool projects are not inlined; use fetch_pool_contents
        return await self.get_available_pools()

    async def fetch_pool_contents(self, pool_address: str, limit: int = 100) -> list[Project]:
        """TCO2 tokens held by a pool, largest holding first.

        Each token is mapped like a listed project, except that
        ``available_quantity`` is the amount held by the pool.
        """
        if not pool_address:
            raise ValidationError("Pool address is required", vendor=self.vendor)
        data = await self.execute_graphql(_POOL_CONTENTS_QUERY, {"pool": pool_address.lower(), "first": int(limit)})

        projects = []
        for item in data.get("pooledTCO2Tokens") or []:
            project = self._map_token(item.get("token") or {})
            pool = item.get("pool") or {}
            project.available_quantity = _from_wei(item.get("amount"))
            project.metadata.update(
                {
                    "pool_address": pool.get("id", ""),
                    "pool_name": pool.get("name", ""),
                    "pool_symbol": pool.get("symbol", ""),
                    "pool_total_supply": _from_wei(pool.get("totalSupply")),
                }
            )
            projects.append(project)
        return projects

    async def fetch_token_price(self, token_address: str) -> TokenPrice:
        """Volume-weighted USD price from the most recent DEX swaps."""
        if not token_address:
            raise ValidationError("Token address is required", vendor=self.vendor)
        address = token_address.lower()
        data = await self.execute_graphql(_SWAPS_QUERY, {"token": address})
        swaps = data.get("swaps") or []
        if not swaps:
            raise ClientError("No recent price data available", vendor=self.vendor, status_code=404)

        total_usd = 0.0
        total_tokens = 0.0
        for swap in swaps:
            if (swap.get("token0") or {}).get("id", "").lower() == address:
                amount = float(swap.get("amount0In") or 0) + float(swap.get("amount0Out") or 0)
            elif (swap.get("token1") or {}).get("id", "").lower() == address:
                amount = float(swap.get("amount1In") or 0) + float(swap.get("amount1Out") or 0)
            else:
                continue
            usd = float(swap.get("amountUSD") or 0)
            if amount > 0 and usd > 0:
                total_usd += usd
                total_tokens += amount

        return TokenPrice(
            token_address=address,
            price_usd=total_usd / total_tokens if total_tokens > 0 else 0.0,
            data_source="toucan_dex_swaps",
            vendor=self.vendor,
            metadata={"total_swaps": len(swaps), "total_usd_volume": total_usd, "total_token_volume": total_tokens},
        )

    def _map_token(self, token: dict[str, Any]) -> Project:
        vintage = token.get("projectVintage") or {}
        project = vintage.get("project") or {}
        return Project(
            id=token.get("id", ""),
            vendor=self.vendor,
            name=vintage.get("name") or token.get("name") or "",
            description=self._describe(project, vintage),
            location=project.get("region") or "",
            project_type=project.get("category") or "",
            methodology=project.get("methodology") or "",
            price_per_kg=0.0,  # priced separately via fetch_token_price
            available_quantity=int(float(token.get("totalSupply") or 0) / _WEI),
            registry_url=project.get("uri") or "",
            metadata={
                "token_address": token.get("address", ""),
                "token_symbol": token.get("symbol", ""),
                "project_id": project.get("projectId", ""),
                "standard": project.get("standard", ""),
                "vintage_start": vintage.get("startTime", ""),
                "vintage_end": vintage.get("endTime", ""),
                "emission_type": project.get("emissionType", ""),
            },
        )

    def _map_pool(self, pool: dict[str, Any]) -> Portfolio:
        name = pool.get("name") or ""
        return Portfolio(
            id=pool.get("id", ""),
            vendor=self.vendor,
            name=name,
            description=f"Toucan Protocol {name} pool containing various carbon projects",
            base_price_per_kg=0.0,  # pool tokens are priced on DEXes
            metadata={
                "pool_address": pool.get("id", ""),
                "symbol": pool.get("symbol", ""),
                "total_supply": _from_wei(pool.get("totalSupply")),
                "pooled_tokens": [
                    {
                        "name": (entry.get("token") or {}).get("name", ""),
                        "symbol": (entry.get("token") or {}).get("symbol", ""),
                        "amount": _from_wei(entry.get("amount")),
                    }
                    for entry in pool.get("pooledTCO2Tokens") or []
                ],
            },
        )

    @staticmethod
    def _describe(project: dict[str, Any], vintage: dict[str, Any]) -> str:
        parts: list[str] = []
        if project.get("methodology"):
            parts.append(f"Methodology: {project['methodology']}")
        if project.get("standard"):
            parts.append(f"Standard: {project['standard']}")
        start, end = vintage.get("startTime"), vintage.get("endTime")
        if start and end:
            start_year = datetime.fromtimestamp(int(start), tz=timezone.utc).year
            end_year = datetime.fromtimestamp(int(end), tz=timezone.utc).year
            parts.append(f"Vintage: {start_year}-{end_year}")
        if project.get("emissionType"):
            parts.append(f"Emission Type: {project['emissionType']}")
        return " | ".join(parts)


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

CLIENT_REGISTRY: dict[str, type[BaseVendorClient]] = {
    CNaughtClient.vendor: CNaughtClient,
    ToucanClient.vendor: ToucanClient,
}


def get_client(vendor: str, **kwargs) -> BaseVendorClient:
    """Factory: build the client class registered for a vendor."""
    cls = CLIENT_REGISTRY.get(vendor)
    if cls is None:
        raise ValueError(f"No client registered for vendor: {vendor}")
    return cls(**kwargs)
