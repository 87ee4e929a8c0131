"""Error taxonomy for the vendor gateway.

Every failure that crosses a layer boundary is a ``GatewayError`` subclass
carrying a machine-checkable ``ErrorKind``. Transient kinds are retried by
the RetryExecutor; everything else is terminal.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-checkable error categories."""

    TRANSPORT = "transport_error"
    RATE_LIMITED = "rate_limited"  # HTTP 429 from the vendor
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"  # Local admission denied
    SERVER = "server_error"
    CLIENT = "client_error"
    DECODE = "decode_error"
    VALIDATION = "validation_error"
    AGGREGATE = "aggregate_error"
    CAPABILITY_UNSUPPORTED = "capability_unsupported"
    VENDOR_UNRESOLVED = "vendor_unresolved"
    VENDOR_NOT_FOUND = "vendor_not_found"
    NO_CLIENTS = "no_clients"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSPORT, ErrorKind.RATE_LIMITED, ErrorKind.SERVER)


class GatewayError(Exception):
    """Base class for all gateway errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        vendor: str = "",
        status_code: int = 0,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.vendor = vendor
        self.status_code = status_code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "vendor": self.vendor,
            "status_code": self.status_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, vendor={self.vendor!r}, message={self.message!r})"


class TransportError(GatewayError):
    """Network-level failure (connect/read timeout, DNS, reset)."""

    kind = ErrorKind.TRANSPORT


class RateLimitError(GatewayError):
    """Vendor answered HTTP 429."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class RateLimitExceededError(GatewayError):
    """Local sliding-window admission denied the request; nothing was sent."""

    kind = ErrorKind.RATE_LIMIT_EXCEEDED


class ServerError(GatewayError):
    """Vendor answered HTTP 5xx."""

    kind = ErrorKind.SERVER


class ClientError(GatewayError):
    """Vendor answered HTTP 4xx (other than 429). Never retried."""

    kind = ErrorKind.CLIENT


class DecodeError(GatewayError):
    """Vendor answered 2xx with a body that is not valid JSON."""

    kind = ErrorKind.DECODE


class ValidationError(GatewayError):
    """Caller request (or entity transition) rejected locally."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []
        self.details.setdefault("errors", self.errors)


class AggregateError(GatewayError):
    """Every vendor failed during a fan-out call."""

    kind = ErrorKind.AGGREGATE

    def __init__(self, message: str, *, errors: dict[str, str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = dict(errors or {})
        self.details.setdefault("errors", self.errors)


class CapabilityUnsupportedError(GatewayError):
    """Target vendor's client lacks the requested operation."""

    kind = ErrorKind.CAPABILITY_UNSUPPORTED


class VendorUnresolvedError(GatewayError):
    """Owning vendor could not be inferred from a composite id."""

    kind = ErrorKind.VENDOR_UNRESOLVED


class VendorNotFoundError(GatewayError):
    """No client registered under the requested vendor id."""

    kind = ErrorKind.VENDOR_NOT_FOUND


class NoClientsError(GatewayError):
    """Fan-out requested but the registry is empty."""

    kind = ErrorKind.NO_CLIENTS
