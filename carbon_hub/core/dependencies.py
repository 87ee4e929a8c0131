from fastapi import Request

from carbon_hub.services.marketplace import MarketplaceService


def get_marketplace(request: Request) -> MarketplaceService:
    """MarketplaceService built by the app lifespan."""
    return request.app.state.marketplace
