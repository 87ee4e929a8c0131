from fastapi import APIRouter

from carbon_hub.api.v1.marketplace import router as marketplace_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(marketplace_router)
