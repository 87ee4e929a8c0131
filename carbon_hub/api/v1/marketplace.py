"""Marketplace API: portfolios, projects, quotes and checkout across vendors.

Gateway errors are turned into HTTP responses by the app-level handler in
carbon_hub.main; routes only translate between schemas and entities.
"""

from fastapi import APIRouter, Depends, Query

from carbon_hub.core.dependencies import get_marketplace
from carbon_hub.gateway.types import CheckoutRequest, QuoteRequest
from carbon_hub.schemas.marketplace import (
    CacheInvalidate,
    CacheInvalidateResponse,
    CacheStatsOut,
    CheckoutCreate,
    CheckoutSessionOut,
    ErrorResponse,
    PortfolioListResponse,
    PortfolioOut,
    ProjectListResponse,
    ProjectOut,
    QuoteCreate,
    QuoteOut,
    VendorOut,
    VendorValidation,
)
from carbon_hub.services.marketplace import MarketplaceService

router = APIRouter(
    prefix="/marketplace",
    tags=["marketplace"],
    responses={
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse, "description": "Every vendor failed"},
    },
)


@router.get("/portfolios", response_model=PortfolioListResponse)
async def list_portfolios(
    refresh: bool = False,
    service: MarketplaceService = Depends(get_marketplace),
):
    listing = await service.get_portfolios(force_refresh=refresh)
    return PortfolioListResponse(
        portfolios=[PortfolioOut.model_validate(p.to_dict()) for p in listing.items],
        total=len(listing.items),
        cached=listing.cached,
        errors=listing.errors,
    )


@router.get("/projects", response_model=ProjectListResponse)
async def list_projects(
    location: str | None = Query(None, max_length=255),
    project_type: str | None = Query(None, max_length=100),
    min_price: float | None = Query(None, ge=0),
    max_price: float | None = Query(None, ge=0),
    available_only: bool = False,
    vendor: str | None = Query(None, max_length=50),
    refresh: bool = False,
    service: MarketplaceService = Depends(get_marketplace),
):
    """Projects from every vendor, filtered after merging."""
    filters = {
        "location": location,
        "project_type": project_type,
        "min_price": min_price,
        "max_price": max_price,
        "available_only": available_only,
        "vendor": vendor,
    }
    listing = await service.search_projects(filters, force_refresh=refresh)
    return ProjectListResponse(
        projects=[ProjectOut.model_validate(p.to_dict()) for p in listing.items],
        total=len(listing.items),
        cached=listing.cached,
        errors=listing.errors,
    )


@router.get("/projects/{vendor}/{project_id}", response_model=ProjectOut)
async def get_project(
    vendor: str,
    project_id: str,
    refresh: bool = False,
    service: MarketplaceService = Depends(get_marketplace),
):
    project = await service.get_project(vendor, project_id, force_refresh=refresh)
    return ProjectOut.model_validate(project.to_dict())


@router.post("/quotes", response_model=QuoteOut)
async def create_quote(
    body: QuoteCreate,
    service: MarketplaceService = Depends(get_marketplace),
):
    """Quote from the owning vendor, or the cheapest quote across vendors."""
    quote = await service.get_quote(QuoteRequest(**body.model_dump()))
    return QuoteOut.model_validate(quote.to_dict())


@router.post("/checkout", response_model=CheckoutSessionOut, status_code=201)
async def create_checkout(
    body: CheckoutCreate,
    service: MarketplaceService = Depends(get_marketplace),
):
    session = await service.create_checkout(CheckoutRequest(**body.model_dump()))
    return CheckoutSessionOut.model_validate(session.to_dict())


@router.get("/vendors", response_model=list[VendorOut])
async def list_vendors(service: MarketplaceService = Depends(get_marketplace)):
    return service.list_vendors()


@router.get("/vendors/validate", response_model=dict[str, VendorValidation])
async def validate_vendors(service: MarketplaceService = Depends(get_marketplace)):
    """Check every vendor's credentials independently."""
    return await service.manager.validate_all_clients()


@router.get("/stats")
async def vendor_stats(service: MarketplaceService = Depends(get_marketplace)):
    return await service.manager.get_aggregated_stats()


@router.get("/cache/stats", response_model=CacheStatsOut)
async def cache_stats(service: MarketplaceService = Depends(get_marketplace)):
    return await service.cache.stats()


@router.post("/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    body: CacheInvalidate,
    service: MarketplaceService = Depends(get_marketplace),
):
    """Drop cached entries by type and/or vendor; an empty body clears everything."""
    removed = await service.invalidate(entry_type=body.type, vendor=body.vendor)
    return CacheInvalidateResponse(removed=removed)
