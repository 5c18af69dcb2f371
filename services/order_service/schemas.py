from datetime import datetime
from decimal import Decimal
from typing import Literal
from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]


class OrderItemCreate(BaseModel):
    listing_id: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(gt=0)


class OrderCreate(BaseModel):
    seller_id: str
    items: list[OrderItemCreate] = Field(min_length=1)
    currency: str = "LYD"
    notes: str | None = None


class OrderItemResponse(BaseModel):
    id: str
    listing_id: str
    quantity: int
    unit_price: Decimal
    discount_percentage: Decimal
    total_price: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: str
    buyer_id: str
    seller_id: str
    total_amount: Decimal
    currency: str
    status: OrderStatus
    notes: str | None
    order_date: datetime
    delivery_date: datetime | None
    items: list[OrderItemResponse]

    class Config:
        from_attributes = True


class OrderStatusUpdate(BaseModel):
    # Confirmation comes from payment capture and cancellation from the
    # orchestrator, which also handles the refund
    status: Literal["shipped", "delivered"]
