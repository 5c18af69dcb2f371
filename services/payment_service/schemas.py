from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

PaymentMethodType = Literal["credit_card", "bank_transfer", "mobile_money"]


class GatewayCreate(BaseModel):
    name: str = Field(min_length=1)
    provider: Literal["libyana_mobile", "libyana_bank", "libyana_card"]
    type: Literal["mobile_money", "bank_transfer", "card", "wallet"]
    api_key: str | None = None
    api_secret: str | None = None
    webhook_secret: str | None = None
    base_url: str | None = None
    supported_currencies: list[str] = ["LYD"]
    configuration: dict = {}


class GatewayResponse(BaseModel):
    id: str
    name: str
    provider: str
    type: str
    is_active: bool
    supported_currencies: list[str] | None

    class Config:
        from_attributes = True


class PaymentMethodCreate(BaseModel):
    gateway_id: str
    type: PaymentMethodType
    # Full card or bank account number, never stored in clear
    account_number: str | None = None
    expiry_date: str | None = None
    account_holder_name: str | None = None
    phone_number: str | None = None
    bank_name: str | None = None
    is_default: bool = False


class PaymentMethodResponse(BaseModel):
    id: str
    gateway_id: str
    type: str
    provider: str
    account_number: str | None
    account_holder_name: str | None
    phone_number: str | None
    bank_name: str | None
    is_default: bool
    is_verified: bool
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    payment_method_id: str
    gateway_id: str
    amount: Decimal
    currency: str
    status: str
    transaction_id: str | None
    processed_at: datetime | None
    failure_reason: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    id: str
    type: str
    amount: Decimal
    currency: str
    status: str
    gateway_transaction_id: str | None
    processed_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class RefundRecordResponse(BaseModel):
    id: str
    payment_id: str
    order_id: str
    amount: Decimal
    currency: str
    reason: str
    status: str
    gateway_refund_id: str | None
    notes: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class WebhookAck(BaseModel):
    received: bool = True
    webhook_id: str
    outcome: str
