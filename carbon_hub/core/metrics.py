"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Carbon Hub application info")
APP_INFO.info({"version": "1.0.0", "name": "carbon_hub"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

VENDOR_REQUESTS = Counter(
    "vendor_requests_total",
    "Outbound vendor API requests by outcome",
    ["vendor", "outcome"],
)

VENDOR_REQUEST_DURATION = Histogram(
    "vendor_request_duration_seconds",
    "Outbound vendor API request duration in seconds",
    ["vendor"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

FANOUT_FAILURES = Counter(
    "fanout_failures_total",
    "Vendor branches that failed during a fan-out call",
    ["operation", "vendor"],
)

CACHE_LOOKUPS = Counter(
    "cache_lookups_total",
    "Persistent cache lookups by entity type and result",
    ["type", "result"],
)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/v1/marketplace/projects/",)


def _normalize_path(path: str) -> str:
    """Collapse vendor/project path segments into placeholders."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            parts = rest.split("/")
            if len(parts) >= 2:
                return f"{prefix}{{vendor}}/{{id}}"
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
