from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field


class PricingInput(BaseModel):
    service_name: str = Field(min_length=1)
    service_description: str | None = None
    icd11_code: str | None = None
    quantity: int = Field(default=1, ge=1)
    base_price: float | None = Field(default=None, gt=0)
    currency: str = "LYD"
    region: str = "Libya"


class BulkPricingItem(PricingInput):
    id: str


class BulkPricingRequest(BaseModel):
    services: list[BulkPricingItem] = Field(min_length=1)


class MarketData(BaseModel):
    average_price: float
    min_price: float
    max_price: float
    trend: str
    insights: list[str]


class PricingResult(BaseModel):
    base_price: float
    ai_suggested_price: float
    minimum_price: float
    market_average_price: float
    complexity_score: float
    discount_percentage: float
    final_price: float
    health_units: float
    currency: str
    reasoning: str
    market_insights: list[str]
    suggestion_source: str # oracle, fallback


class BulkPricingResult(PricingResult):
    id: str


class CartLineInput(BaseModel):
    listing_id: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(gt=0)
    total_price: Decimal | None = Field(default=None, gt=0)


class CartRequest(BaseModel):
    items: list[CartLineInput]
    currency: str = "LYD"


class CartLineResponse(BaseModel):
    listing_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    discount_percentage: int
    discount_amount: Decimal
    final_price: Decimal


class CartResponse(BaseModel):
    items: list[CartLineResponse]
    subtotal: Decimal
    discount_total: Decimal
    final_total: Decimal
    currency: str


class ICD11CategoryResponse(BaseModel):
    id: str
    code: str
    title: str
    description: str = ""
    parent_id: str | None = None
    is_active: bool = True
    service_category: str | None = None
    complexity_score: float | None = None


class PricingCalculationResponse(BaseModel):
    id: str
    service_name: str
    icd11_code: str | None
    quantity: int
    currency: str
    region: str
    final_price: Decimal | None
    health_units: Decimal | None
    suggestion_source: str
    created_at: datetime

    class Config:
        from_attributes = True
