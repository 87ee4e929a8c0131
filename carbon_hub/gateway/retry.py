"""RetryExecutor: HTTP dispatch with admission control, dedup and backoff.

Pipeline for one logical request:
  1. RateLimiter.admit()          denied → RateLimitExceededError, no network call
  2. RequestDedupCache lookup     hit → cached payload / cached client error
     identical request in flight  → await its result, no network call
  3. RateLimiter.try_acquire()    reserves the window slot atomically at dispatch
  4. Attempt loop (max_retries attempts):
       transport failure → backoff base * 2^(attempt-1), retry
       HTTP 429          → honor Retry-After, else backoff, retry
       HTTP 5xx          → backoff, retry
       HTTP 4xx          → ClientError, cached, no retry
       HTTP 2xx          → JSON payload, cached
  5. Retries exhausted → the last transient error is raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from carbon_hub.core.metrics import VENDOR_REQUEST_DURATION, VENDOR_REQUESTS
from carbon_hub.gateway.dedup import RequestDedupCache, request_fingerprint
from carbon_hub.gateway.errors import (
    ClientError,
    DecodeError,
    GatewayError,
    RateLimitError,
    RateLimitExceededError,
    ServerError,
    TransportError,
)
from carbon_hub.gateway.rate_limiter import RateLimiter, shared_rate_limiter
from carbon_hub.gateway.types import VendorConfig

logger = logging.getLogger(__name__)

# Body fields vendors use for a human-readable error, in lookup order
_ERROR_FIELDS = ("error", "message", "error_description", "detail")

_BODY_METHODS = ("POST", "PUT", "PATCH")


def calculate_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """Exponential backoff for a 1-based attempt: base * 2^(attempt-1), capped."""
    return min(base_delay * (2 ** max(attempt - 1, 0)), max_delay)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def extract_error_message(payload: Any, status_code: int) -> str:
    """Pick the vendor-supplied message out of an error body."""
    if isinstance(payload, dict):
        for name in _ERROR_FIELDS:
            value = payload.get(name)
            if value:
                return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    if isinstance(payload, str) and payload.strip():
        return payload.strip()[:500]
    return f"HTTP Error {status_code}"


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    return response.json()


class RetryExecutor:
    """Executes vendor HTTP requests with bounded retries.

    One executor per vendor client. The RateLimiter is usually shared by all
    clients of a vendor; the dedup cache belongs to the executor.
    """

    def __init__(
        self,
        config: VendorConfig,
        rate_limiter: RateLimiter | None = None,
        dedup_cache: RequestDedupCache | None = None,
        default_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        identity: str | None = None,
        log_requests: bool | None = None,
    ):
        """
        Args:
            config: Vendor connection/retry configuration
            rate_limiter: Admission control (defaults to the process-wide limiter)
            dedup_cache: Request memoization (defaults to a private cache sized from config)
            default_headers: Headers sent with every request (auth, accept, ...)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            identity: Rate-limit bucket key; defaults to the vendor name
            log_requests: Emit request/attempt/error log events (defaults to settings)
        """
        if log_requests is None:
            from carbon_hub.core.config import settings

            log_requests = settings.request_logging

        self.config = config
        self.identity = identity or config.vendor
        self.rate_limiter = rate_limiter or shared_rate_limiter
        if dedup_cache is None:
            dedup_cache = RequestDedupCache(config.dedup_ttl_seconds, config.dedup_max_entries)
        self.dedup_cache = dedup_cache
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "carbon-hub/1.0",
            **(default_headers or {}),
        }
        self.log_requests = log_requests
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self.rate_limiter.configure(self.identity, config.requests_per_second)

    @property
    def vendor(self) -> str:
        return self.config.vendor

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return self.config.base_url.rstrip("/") + "/" + endpoint.lstrip("/")

    def _log(self, level: int, message: str, *args: Any) -> None:
        if self.log_requests:
            logger.log(level, message, *args)

    async def execute(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON payload.

        Raises:
            RateLimitExceededError: local admission denied (nothing sent)
            ClientError: terminal 4xx (also cached for identical calls)
            DecodeError: 2xx body was not JSON
            TransportError | RateLimitError | ServerError: retries exhausted
        """
        method = method.upper()
        vendor = self.vendor

        if not self.rate_limiter.admit(self.identity):
            VENDOR_REQUESTS.labels(vendor=vendor, outcome="rate_limit_exceeded").inc()
            raise RateLimitExceededError(
                "Rate limit exceeded. Please try again later.",
                vendor=vendor,
                status_code=429,
            )

        fingerprint = request_fingerprint(method, endpoint, data)
        found, cached = self.dedup_cache.lookup(fingerprint)
        if found:
            VENDOR_REQUESTS.labels(vendor=vendor, outcome="dedup_hit").inc()
            if isinstance(cached, GatewayError):
                raise cached
            return cached

        pending = self.dedup_cache.joinable(fingerprint)
        if pending is not None:
            VENDOR_REQUESTS.labels(vendor=vendor, outcome="dedup_joined").inc()
            return await asyncio.shield(pending)

        # Check and reserve in one step: the window counts this dispatch now
        if not self.rate_limiter.try_acquire(self.identity):
            VENDOR_REQUESTS.labels(vendor=vendor, outcome="rate_limit_exceeded").inc()
            raise RateLimitExceededError(
                "Rate limit exceeded. Please try again later.",
                vendor=vendor,
                status_code=429,
            )

        self.dedup_cache.begin(fingerprint)
        try:
            payload = await self._dispatch(method, endpoint, data, headers)
        except ClientError as e:
            self.dedup_cache.finish(fingerprint, e)
            raise
        except GatewayError as e:
            self.dedup_cache.finish(fingerprint, e, remember=False)
            raise
        except BaseException:
            abandoned = TransportError("Identical in-flight request was abandoned", vendor=vendor)
            self.dedup_cache.finish(fingerprint, abandoned, remember=False)
            raise
        self.dedup_cache.finish(fingerprint, payload)
        return payload

    async def _dispatch(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> Any:
        """Attempt loop for one admitted request."""
        vendor = self.vendor
        url = self.build_url(endpoint)
        request_headers = {**self.default_headers, **(headers or {})}
        kwargs: dict[str, Any] = {"headers": request_headers}
        if data:
            if method in _BODY_METHODS:
                kwargs["json"] = data
            else:
                kwargs["params"] = data

        client = self._get_client()
        max_retries = max(self.config.max_retries, 1)
        last_error: GatewayError | None = None

        for attempt in range(1, max_retries + 1):
            self._log(logging.DEBUG, "%s %s - attempt %d/%d", method, url, attempt, max_retries)
            start = time.monotonic()
            delay = calculate_backoff(attempt, self.config.base_retry_delay, self.config.max_retry_delay)

            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                VENDOR_REQUESTS.labels(vendor=vendor, outcome="transport_error").inc()
                last_error = TransportError(f"HTTP request failed: {e}", vendor=vendor)
                self._log(logging.WARNING, "HTTP request failed: %s %s (attempt %d): %s", method, url, attempt, e)
                if attempt < max_retries:
                    await asyncio.sleep(delay)
                continue
            finally:
                VENDOR_REQUEST_DURATION.labels(vendor=vendor).observe(time.monotonic() - start)

            status = response.status_code

            if status == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                VENDOR_REQUESTS.labels(vendor=vendor, outcome="rate_limited").inc()
                last_error = RateLimitError(
                    f"Rate limited by {vendor}",
                    vendor=vendor,
                    status_code=status,
                    retry_after=retry_after,
                )
                wait = min(retry_after, self.config.max_retry_delay) if retry_after is not None else delay
                self._log(
                    logging.WARNING,
                    "Rate limited by %s: %s (attempt %d, retry_after=%s, wait=%.1fs)",
                    vendor,
                    url,
                    attempt,
                    retry_after,
                    wait,
                )
                if attempt < max_retries:
                    await asyncio.sleep(wait)
                continue

            if status >= 500:
                VENDOR_REQUESTS.labels(vendor=vendor, outcome="server_error").inc()
                last_error = ServerError(
                    f"Server error: {status}",
                    vendor=vendor,
                    status_code=status,
                    details={"body": response.text[:500]},
                )
                self._log(logging.WARNING, "Server error %d from %s (attempt %d)", status, url, attempt)
                if attempt < max_retries:
                    await asyncio.sleep(delay)
                continue

            if status >= 400:
                try:
                    body: Any = _decode_body(response)
                except ValueError:
                    body = response.text
                message = extract_error_message(body, status)
                error = ClientError(message, vendor=vendor, status_code=status, details={"response": body})
                VENDOR_REQUESTS.labels(vendor=vendor, outcome="client_error").inc()
                self._log(logging.WARNING, "Client error %d from %s: %s", status, url, message)
                raise error

            try:
                payload = _decode_body(response)
            except ValueError as e:
                VENDOR_REQUESTS.labels(vendor=vendor, outcome="decode_error").inc()
                raise DecodeError(
                    f"Failed to decode JSON response: {e}",
                    vendor=vendor,
                    status_code=status,
                    details={"body": response.text[:500]},
                ) from e

            VENDOR_REQUESTS.labels(vendor=vendor, outcome="success").inc()
            self._log(logging.INFO, "%s %s - success (%d)", method, url, status)
            return payload

        if last_error is None:
            raise TransportError(f"No attempt was made for {method} {url}", vendor=vendor)
        self._log(logging.ERROR, "%s %s failed after %d attempts: %s", method, url, max_retries, last_error.message)
        raise last_error

    def clear_cache(self) -> int:
        """Forget memoized results."""
        return self.dedup_cache.clear()
