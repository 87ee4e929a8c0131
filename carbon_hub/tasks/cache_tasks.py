"""Celery tasks for persistent cache maintenance."""

import asyncio
import logging

from carbon_hub.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time: vendor HTTP clients and the Redis
    connection pool are bound to the loop they were created on.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _build_service():
    from carbon_hub.cache.persistent import PersistentCache
    from carbon_hub.gateway.manager import VendorManager
    from carbon_hub.services.marketplace import MarketplaceService

    return MarketplaceService(VendorManager.from_settings(), PersistentCache())


async def _sweep_async() -> int:
    service = _build_service()
    try:
        return await service.cache.sweep_expired()
    finally:
        await service.cache.aclose()
        await service.manager.aclose()


async def _warm_async() -> dict:
    service = _build_service()
    try:
        return await service.warm()
    finally:
        await service.cache.aclose()
        await service.manager.aclose()


@celery_app.task(name="sweep_expired_cache")
def sweep_expired_cache_task():
    """Beat: delete cache entries whose TTL has passed."""
    removed = _run_async(_sweep_async())
    logger.info("sweep_expired_cache removed %d entries", removed)
    return {"removed": removed}


@celery_app.task(name="warm_cache")
def warm_cache_task():
    """Beat: refresh portfolio and project listings for every vendor."""
    results = _run_async(_warm_async())
    failed = {key: r.get("error") for key, r in results.items() if not r["success"]}
    if failed:
        logger.warning("warm_cache: %d/%d sources failed: %s", len(failed), len(results), failed)
    return {"sources": len(results), "failed": failed, "results": results}
