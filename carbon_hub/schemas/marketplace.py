from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ProjectOut(BaseModel):
    id: str
    vendor: str
    name: str
    description: str = ""
    location: str = ""
    project_type: str = ""
    methodology: str = ""
    price_per_kg: float = 0.0
    available_quantity: float = 0.0
    registry_url: str = ""
    images: list[str] = []
    sdgs: list[int] = []
    metadata: dict[str, Any] = {}


class PortfolioOut(BaseModel):
    id: str
    vendor: str
    name: str
    description: str = ""
    projects: list[ProjectOut] = []
    base_price_per_kg: float = 0.0
    is_active: bool = True
    metadata: dict[str, Any] = {}


class PortfolioListResponse(BaseModel):
    portfolios: list[PortfolioOut]
    total: int
    cached: bool = False
    errors: dict[str, str] = {}  # vendor → message for vendors that failed


class ProjectListResponse(BaseModel):
    projects: list[ProjectOut]
    total: int
    cached: bool = False
    errors: dict[str, str] = {}


class QuoteCreate(BaseModel):
    amount_kg: float
    portfolio_id: str | None = Field(None, max_length=255)
    project_id: str | None = Field(None, max_length=255)
    currency: str = Field("USD", max_length=3)


class QuoteOut(BaseModel):
    id: str
    vendor: str
    amount_kg: float
    price_per_kg: float
    total_price: float
    currency: str
    expires_at: datetime | None = None
    portfolio_id: str | None = None
    metadata: dict[str, Any] = {}


class CheckoutCreate(BaseModel):
    amount_kg: float
    success_url: str = Field(max_length=2048)
    cancel_url: str = Field(max_length=2048)
    portfolio_id: str | None = Field(None, max_length=255)
    project_id: str | None = Field(None, max_length=255)
    currency: str = Field("USD", max_length=3)
    customer_email: str | None = Field(None, max_length=255)
    customer_name: str | None = Field(None, max_length=255)
    metadata: dict[str, Any] = {}


class CheckoutSessionOut(BaseModel):
    id: str
    vendor: str
    checkout_url: str
    status: str
    amount_kg: float
    total_price: float
    currency: str
    success_url: str
    cancel_url: str = ""
    expires_at: datetime | None = None
    metadata: dict[str, Any] = {}


class VendorOut(BaseModel):
    name: str
    supports_portfolios: bool
    supports_projects: bool
    supports_quotes: bool
    supports_checkout: bool
    supports_webhooks: bool
    rate_limit: dict[str, Any] | None = None


class VendorValidation(BaseModel):
    valid: bool
    message: str
    kind: str | None = None


class CacheStatsOut(BaseModel):
    total_entries: int
    by_type: dict[str, int]
    by_vendor: dict[str, int]
    expired_entries: int


class CacheInvalidate(BaseModel):
    type: str | None = Field(None, max_length=50)
    vendor: str | None = Field(None, max_length=50)


class CacheInvalidateResponse(BaseModel):
    removed: int


class ErrorResponse(BaseModel):
    kind: str
    message: str
    vendor: str = ""
    status_code: int = 0
    details: dict[str, Any] = {}
