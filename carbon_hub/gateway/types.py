"""Core types and DTOs for the vendor gateway.

Canonical entities are vendor-agnostic. Global identity of an entity is the
``(vendor, id)`` pair: raw ids are only unique within a single vendor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from carbon_hub.gateway.errors import ValidationError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EntityType(str, Enum):
    """Canonical entity kinds understood by the normalizer and the cache."""

    PORTFOLIOS = "portfolios"
    PROJECTS = "projects"
    QUOTES = "quotes"
    CHECKOUT_SESSIONS = "checkout_sessions"
    ORDERS = "orders"
    TOKEN_PRICES = "token_prices"


class CheckoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


class Capability(str, Enum):
    """Optional operations a vendor client may expose."""

    PORTFOLIOS = "portfolios"
    PROJECTS = "projects"
    TOKEN_LISTING = "token_listing"
    PROJECT_DETAILS = "project_details"
    QUOTES = "quotes"
    CHECKOUT = "checkout"
    WEBHOOKS = "webhooks"
    VALIDATE = "validate"


# Client method backing each capability
CAPABILITY_METHODS: dict[Capability, str] = {
    Capability.PORTFOLIOS: "get_portfolios",
    Capability.PROJECTS: "get_all_projects",
    Capability.TOKEN_LISTING: "list_project_tokens",
    Capability.PROJECT_DETAILS: "get_project_details",
    Capability.QUOTES: "create_quote",
    Capability.CHECKOUT: "create_checkout_session",
    Capability.WEBHOOKS: "handle_webhook",
    Capability.VALIDATE: "validate_credentials",
}

SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "CAD", "AUD")

# Legal state transitions (terminal states map to an empty set)
CHECKOUT_TRANSITIONS: dict[CheckoutStatus, frozenset[CheckoutStatus]] = {
    CheckoutStatus.PENDING: frozenset({CheckoutStatus.COMPLETE, CheckoutStatus.EXPIRED, CheckoutStatus.CANCELLED}),
    CheckoutStatus.COMPLETE: frozenset(),
    CheckoutStatus.EXPIRED: frozenset(),
    CheckoutStatus.CANCELLED: frozenset(),
}

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.REFUNDED}
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

_URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_url(value: str) -> bool:
    return bool(value) and bool(_URL_PATTERN.match(value))


def is_valid_email(value: str) -> bool:
    return bool(value) and bool(_EMAIL_PATTERN.match(value))


def parse_datetime(value: Any) -> datetime | None:
    """Accept datetimes, ISO-8601 strings and unix timestamps."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _check_string(errors: list[str], value: str, name: str, max_length: int) -> None:
    if value and len(value) > max_length:
        errors.append(f"{name} must be at most {max_length} characters")


class _Entity:
    """Shared (de)serialization for canonical entities."""

    _datetime_fields: tuple[str, ...] = ()

    def validate(self) -> list[str]:
        raise NotImplementedError

    @property
    def is_valid(self) -> bool:
        return not self.validate()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = _iso(value)
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = [item.to_dict() if isinstance(item, _Entity) else item for item in value]
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        """Build an entity from a raw map, ignoring unknown keys.

        Raises ValueError/TypeError when a known field cannot be coerced.
        """
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        for name in cls._datetime_fields:
            if name in kwargs:
                kwargs[name] = parse_datetime(kwargs[name])
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Canonical entities
# ---------------------------------------------------------------------------


@dataclass
class Project(_Entity):
    """A single carbon-offset project offered by a vendor."""

    id: str = ""
    vendor: str = ""
    name: str = ""
    description: str = ""
    location: str = ""
    project_type: str = ""
    methodology: str = ""
    price_per_kg: float = 0.0
    available_quantity: float = 0.0
    registry_url: str = ""
    images: list[str] = field(default_factory=list)
    sdgs: list[int] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = str(self.id)
        self.price_per_kg = float(self.price_per_kg)
        self.available_quantity = float(self.available_quantity)

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.id:
            errors.append("id is required")
        if not self.vendor:
            errors.append("vendor is required")
        if not self.name:
            errors.append("name is required")
        _check_string(errors, self.id, "id", 255)
        _check_string(errors, self.vendor, "vendor", 50)
        _check_string(errors, self.name, "name", 255)
        _check_string(errors, self.location, "location", 255)
        _check_string(errors, self.project_type, "project_type", 100)
        _check_string(errors, self.methodology, "methodology", 255)
        if self.price_per_kg < 0:
            errors.append("price_per_kg cannot be negative")
        if self.available_quantity < 0:
            errors.append("available_quantity cannot be negative")
        if self.registry_url and not is_valid_url(self.registry_url):
            errors.append("registry_url must be a valid URL")
        return errors

    def is_available(self) -> bool:
        return self.available_quantity > 0


@dataclass
class Portfolio(_Entity):
    """A vendor-curated bundle of projects sold at a base price."""

    id: str = ""
    vendor: str = ""
    name: str = ""
    description: str = ""
    projects: list[Project] = field(default_factory=list)
    base_price_per_kg: float = 0.0
    is_active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = str(self.id)
        self.base_price_per_kg = float(self.base_price_per_kg)
        self.is_active = bool(self.is_active)
        # Nested projects inherit the portfolio's vendor
        self.projects = [
            p if isinstance(p, Project) else Project.from_dict({"vendor": self.vendor, **p}) for p in self.projects
        ]

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.id:
            errors.append("id is required")
        if not self.vendor:
            errors.append("vendor is required")
        if not self.name:
            errors.append("name is required")
        _check_string(errors, self.id, "id", 255)
        _check_string(errors, self.vendor, "vendor", 50)
        _check_string(errors, self.name, "name", 255)
        if self.base_price_per_kg < 0:
            errors.append("base_price_per_kg cannot be negative")
        return errors

    @property
    def project_count(self) -> int:
        return len(self.projects)


@dataclass
class Quote(_Entity):
    """A priced offer for a given mass of offsets."""

    _datetime_fields = ("expires_at",)

    id: str = ""
    vendor: str = ""
    amount_kg: float = 0.0
    price_per_kg: float = 0.0
    total_price: float = 0.0
    currency: str = "USD"
    expires_at: datetime | None = None
    portfolio_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = str(self.id)
        self.amount_kg = float(self.amount_kg)
        self.price_per_kg = float(self.price_per_kg)
        self.total_price = float(self.total_price)

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.id:
            errors.append("Quote ID is required")
        if not self.vendor:
            errors.append("Vendor is required")
        if self.amount_kg <= 0:
            errors.append("Amount must be greater than 0")
        if self.price_per_kg < 0:
            errors.append("Price per kg cannot be negative")
        if self.total_price < 0:
            errors.append("Total price cannot be negative")
        if not self.currency:
            errors.append("Currency is required")
        return errors

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.now(timezone.utc))


@dataclass
class CheckoutSession(_Entity):
    """A vendor-hosted checkout; pending until it completes, expires or is cancelled."""

    _datetime_fields = ("expires_at",)

    id: str = ""
    vendor: str = ""
    checkout_url: str = ""
    status: CheckoutStatus = CheckoutStatus.PENDING
    amount_kg: float = 0.0
    total_price: float = 0.0
    currency: str = "USD"
    success_url: str = ""
    cancel_url: str = ""
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = str(self.id)
        self.status = CheckoutStatus(self.status)
        self.amount_kg = float(self.amount_kg)
        self.total_price = float(self.total_price)

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.id:
            errors.append("Session ID is required")
        if not self.vendor:
            errors.append("Vendor is required")
        if not is_valid_url(self.checkout_url):
            errors.append("Checkout URL must be a valid URL")
        if self.amount_kg <= 0:
            errors.append("Amount must be greater than 0")
        if self.total_price < 0:
            errors.append("Total price cannot be negative")
        if not is_valid_url(self.success_url):
            errors.append("Success URL must be a valid URL")
        if self.cancel_url and not is_valid_url(self.cancel_url):
            errors.append("Cancel URL must be a valid URL")
        return errors

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.status == CheckoutStatus.EXPIRED:
            return True
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.now(timezone.utc))

    def is_pending(self) -> bool:
        return self.status == CheckoutStatus.PENDING and not self.is_expired()

    def transition(self, status: CheckoutStatus | str) -> CheckoutSession:
        """Return a copy in ``status``; the current object is left untouched."""
        target = CheckoutStatus(status)
        if target not in CHECKOUT_TRANSITIONS[self.status]:
            raise ValidationError(
                f"Illegal checkout transition {self.status.value} -> {target.value}",
                vendor=self.vendor,
            )
        return CheckoutSession.from_dict({**self.to_dict(), "status": target})


@dataclass
class Order(_Entity):
    """A completed purchase and how it was allocated across projects."""

    _datetime_fields = ("created_at", "completed_at")

    id: str = ""
    vendor_order_id: str = ""
    vendor: str = ""
    amount_kg: float = 0.0
    total_price: float = 0.0
    currency: str = "USD"
    status: OrderStatus = OrderStatus.PENDING
    project_allocations: list[dict[str, Any]] = field(default_factory=list)
    retirement_certificate: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = str(self.id)
        self.status = OrderStatus(self.status)
        self.amount_kg = float(self.amount_kg)
        self.total_price = float(self.total_price)

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.vendor_order_id:
            errors.append("Vendor order ID is required")
        if not self.vendor:
            errors.append("Vendor is required")
        if self.amount_kg <= 0:
            errors.append("Amount must be greater than 0")
        if self.total_price < 0:
            errors.append("Total price cannot be negative")
        if not self.currency:
            errors.append("Currency is required")
        return errors

    @property
    def is_terminal(self) -> bool:
        return not ORDER_TRANSITIONS[self.status]

    def transition(self, status: OrderStatus | str) -> Order:
        """Return a copy in ``status``; the current object is left untouched."""
        target = OrderStatus(status)
        if target not in ORDER_TRANSITIONS[self.status]:
            raise ValidationError(
                f"Illegal order transition {self.status.value} -> {target.value}",
                vendor=self.vendor,
            )
        data = {**self.to_dict(), "status": target}
        if target == OrderStatus.COMPLETED and self.completed_at is None:
            data["completed_at"] = datetime.now(timezone.utc)
        return Order.from_dict(data)


@dataclass
class TokenPrice(_Entity):
    """On-chain price of a tokenized credit."""

    _datetime_fields = ("last_updated",)

    token_address: str = ""
    price_usd: float = 0.0
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data_source: str = ""
    vendor: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.price_usd = float(self.price_usd)

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.token_address:
            errors.append("token_address is required")
        if not self.vendor:
            errors.append("vendor is required")
        if self.price_usd < 0:
            errors.append("price_usd cannot be negative")
        return errors

    def is_fresh(self, max_age_minutes: int = 15, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (now - self.last_updated).total_seconds() <= max_age_minutes * 60


ENTITY_CLASSES: dict[EntityType, type[_Entity]] = {
    EntityType.PORTFOLIOS: Portfolio,
    EntityType.PROJECTS: Project,
    EntityType.QUOTES: Quote,
    EntityType.CHECKOUT_SESSIONS: CheckoutSession,
    EntityType.ORDERS: Order,
    EntityType.TOKEN_PRICES: TokenPrice,
}


# ---------------------------------------------------------------------------
# Caller requests
# ---------------------------------------------------------------------------


@dataclass
class QuoteRequest:
    """Request for a price on ``amount_kg`` of offsets."""

    amount_kg: float = 0.0
    portfolio_id: str | None = None
    project_id: str | None = None
    currency: str = "USD"

    @property
    def target_id(self) -> str | None:
        return self.portfolio_id or self.project_id

    def validation_errors(self) -> list[str]:
        errors: list[str] = []
        if self.amount_kg < 0.01:
            errors.append("amount_kg must be at least 0.01")
        if self.currency not in SUPPORTED_CURRENCIES:
            errors.append("Invalid currency code")
        return errors

    def validate(self) -> None:
        errors = self.validation_errors()
        if errors:
            raise ValidationError("Invalid quote request: " + ", ".join(errors), errors=errors)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"amount_kg": float(self.amount_kg), "currency": self.currency}
        if self.portfolio_id:
            payload["portfolio_id"] = self.portfolio_id
        if self.project_id:
            payload["project_id"] = self.project_id
        return payload


@dataclass
class CheckoutRequest:
    """Request to open a vendor-hosted checkout session."""

    amount_kg: float = 0.0
    success_url: str = ""
    cancel_url: str = ""
    portfolio_id: str | None = None
    project_id: str | None = None
    currency: str = "USD"
    customer_email: str | None = None
    customer_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def target_id(self) -> str | None:
        return self.portfolio_id or self.project_id

    def validation_errors(self) -> list[str]:
        errors: list[str] = []
        if not self.success_url:
            errors.append("success_url is required")
        elif not is_valid_url(self.success_url):
            errors.append("success_url must be a valid URL")
        if not self.cancel_url:
            errors.append("cancel_url is required")
        elif not is_valid_url(self.cancel_url):
            errors.append("cancel_url must be a valid URL")
        if self.amount_kg < 0.01:
            errors.append("amount_kg must be at least 0.01")
        if self.customer_email and not is_valid_email(self.customer_email):
            errors.append("customer_email must be a valid email address")
        if self.currency not in SUPPORTED_CURRENCIES:
            errors.append("Invalid currency code")
        return errors

    def validate(self) -> None:
        errors = self.validation_errors()
        if errors:
            raise ValidationError("Invalid checkout request: " + ", ".join(errors), errors=errors)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "amount_kg": float(self.amount_kg),
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "currency": self.currency,
        }
        for name in ("portfolio_id", "project_id", "customer_email", "customer_name"):
            value = getattr(self, name)
            if value:
                payload[name] = value
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


# ---------------------------------------------------------------------------
# Vendor config & capabilities
# ---------------------------------------------------------------------------


@dataclass
class VendorConfig:
    """Rate limit and connection configuration for a vendor client."""

    vendor: str
    base_url: str = ""
    requests_per_second: int = 10
    rate_window_seconds: float = 1.0
    timeout_seconds: float = 30.0
    max_retries: int = 3
    base_retry_delay: float = 1.0  # Backoff unit: delay = base * 2^(attempt-1)
    max_retry_delay: float = 60.0
    dedup_ttl_seconds: float = 30.0
    dedup_max_entries: int = 500

    @classmethod
    def from_settings(cls, vendor: str, base_url: str = "") -> VendorConfig:
        from carbon_hub.core.config import settings

        return cls(
            vendor=vendor,
            base_url=base_url,
            requests_per_second=settings.requests_per_second,
            rate_window_seconds=settings.rate_window_seconds,
            timeout_seconds=settings.request_timeout,
            max_retries=settings.max_retries,
            base_retry_delay=settings.base_retry_delay,
            max_retry_delay=settings.max_retry_delay,
            dedup_ttl_seconds=settings.dedup_ttl_seconds,
            dedup_max_entries=settings.dedup_max_entries,
        )


@dataclass(frozen=True)
class VendorCapabilities:
    """Operations a registered client supports, fixed at registration time."""

    supported: frozenset[Capability] = frozenset()

    def __contains__(self, capability: Capability) -> bool:
        return capability in self.supported

    @property
    def supports_portfolios(self) -> bool:
        return Capability.PORTFOLIOS in self.supported

    @property
    def supports_projects(self) -> bool:
        return bool({Capability.PROJECTS, Capability.TOKEN_LISTING} & self.supported)

    @property
    def supports_quotes(self) -> bool:
        return Capability.QUOTES in self.supported

    @property
    def supports_checkout(self) -> bool:
        return Capability.CHECKOUT in self.supported

    @property
    def supports_webhooks(self) -> bool:
        return Capability.WEBHOOKS in self.supported

    @classmethod
    def of(cls, client: Any) -> VendorCapabilities:
        """Read a client's declared capabilities, or inspect its methods once.

        Clients built on BaseVendorClient declare ``capabilities``; duck-typed
        clients are inspected for the backing method names.
        """
        declared = getattr(client, "capabilities", None)
        if declared is not None:
            return cls(supported=frozenset(Capability(c) for c in declared))
        found = {cap for cap, method in CAPABILITY_METHODS.items() if callable(getattr(client, method, None))}
        return cls(supported=frozenset(found))

    def to_dict(self) -> dict[str, bool]:
        return {
            "supports_portfolios": self.supports_portfolios,
            "supports_projects": self.supports_projects,
            "supports_quotes": self.supports_quotes,
            "supports_checkout": self.supports_checkout,
            "supports_webhooks": self.supports_webhooks,
        }
