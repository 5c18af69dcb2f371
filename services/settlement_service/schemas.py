from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class EscrowCreate(BaseModel):
    order_id: str
    buyer_id: str
    seller_id: str
    total_amount: Decimal = Field(gt=0)
    currency: str = "LYD"


class EscrowRelease(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1)


class EscrowResponse(BaseModel):
    id: str
    order_id: str
    buyer_id: str
    seller_id: str
    total_amount: Decimal
    held_amount: Decimal
    released_amount: Decimal
    currency: str
    status: str
    auto_release_date: datetime | None

    class Config:
        from_attributes = True


class InstallmentPlanCreate(BaseModel):
    order_id: str
    number_of_installments: int = Field(ge=1, le=36)
    frequency: Literal["weekly", "monthly", "quarterly"] = "monthly"
    interest_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class InstallmentPaymentRequest(BaseModel):
    payment_id: str


class InstallmentResponse(BaseModel):
    id: str
    installment_number: int
    amount: Decimal
    currency: str
    due_date: datetime
    paid_date: datetime | None
    status: str

    class Config:
        from_attributes = True


class InstallmentPlanResponse(BaseModel):
    id: str
    order_id: str
    total_amount: Decimal
    currency: str
    number_of_installments: int
    installment_amount: Decimal
    frequency: str
    interest_rate: Decimal
    status: str
    next_payment_date: datetime | None
    installments: list[InstallmentResponse]

    class Config:
        from_attributes = True


class ExchangeRateUpdate(BaseModel):
    from_currency: str = Field(min_length=3, max_length=3)
    to_currency: str = Field(min_length=3, max_length=3)
    rate: Decimal = Field(gt=0)
    source: str = "custom"


class ExchangeRateResponse(BaseModel):
    id: str
    from_currency: str
    to_currency: str
    rate: Decimal
    source: str
    effective_date: datetime
    expiry_date: datetime | None

    class Config:
        from_attributes = True


class ConversionResponse(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str
    rate: Decimal
    converted_amount: Decimal


class InvoiceCreate(BaseModel):
    order_id: str
    buyer_id: str
    seller_id: str
    subtotal: Decimal = Field(ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "LYD"


class InvoicePaid(BaseModel):
    payment_id: str


class InvoiceResponse(BaseModel):
    id: str
    order_id: str
    invoice_number: str
    buyer_id: str
    seller_id: str
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    status: str
    issue_date: datetime
    due_date: datetime | None
    paid_date: datetime | None

    class Config:
        from_attributes = True


class ScheduleCreate(BaseModel):
    order_id: str
    amount: Decimal = Field(gt=0)
    currency: str = "LYD"
    scheduled_date: datetime
    installment_plan_id: str | None = None


class ScheduleResponse(BaseModel):
    id: str
    order_id: str
    installment_plan_id: str | None
    scheduled_date: datetime
    amount: Decimal
    currency: str
    status: str
    reminder_sent: bool

    class Config:
        from_attributes = True
