import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from carbon_hub.api.v1.router import api_v1_router
from carbon_hub.cache.persistent import PersistentCache
from carbon_hub.core.config import settings, validate_settings_for_production
from carbon_hub.core.logging import setup_logging
from carbon_hub.core.metrics import PrometheusMiddleware, metrics_response
from carbon_hub.core.sentry import init_sentry
from carbon_hub.gateway.errors import ErrorKind, GatewayError
from carbon_hub.gateway.manager import VendorManager
from carbon_hub.services.marketplace import MarketplaceService

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)

# HTTP status per gateway error kind
ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.VENDOR_NOT_FOUND: 404,
    ErrorKind.VENDOR_UNRESOLVED: 400,
    ErrorKind.CAPABILITY_UNSUPPORTED: 501,
    ErrorKind.AGGREGATE: 502,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.RATE_LIMIT_EXCEEDED: 429,
    ErrorKind.TRANSPORT: 504,
    ErrorKind.SERVER: 502,
    ErrorKind.DECODE: 502,
    ErrorKind.CLIENT: 502,
    ErrorKind.NO_CLIENTS: 503,
}


def error_status(exc: GatewayError) -> int:
    # A vendor 404 means the entity does not exist, not that the vendor broke
    if exc.kind == ErrorKind.CLIENT and exc.status_code == 404:
        return 404
    return ERROR_STATUS.get(exc.kind, 500)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting Carbon Hub (env=%s)...", settings.app_env)

    manager = VendorManager.from_settings()
    cache = PersistentCache()
    app.state.marketplace = MarketplaceService(manager, cache)
    logger.info("Vendors registered: %s", ", ".join(manager.vendors) or "none")

    yield

    # Shutdown
    await manager.aclose()
    await cache.aclose()
    logger.info("Carbon Hub shut down")


app = FastAPI(
    title="Carbon Hub",
    description="Multi-vendor carbon offset marketplace gateway",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    status = error_status(exc)
    log = logger.warning if status < 500 else logger.error
    log("%s on %s %s: [%s] %s", type(exc).__name__, request.method, request.url.path, exc.kind.value, exc.message)
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(int(retry_after))
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


# Log unhandled exceptions with their traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health(request: Request):
    service: MarketplaceService | None = getattr(request.app.state, "marketplace", None)
    return {
        "status": "ok",
        "vendors": service.manager.vendors if service else [],
        "cache_backend": settings.cache_backend,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
