from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from services.order_service.schemas import OrderCreate, OrderResponse
from services.payment_service.schemas import PaymentResponse, RefundRecordResponse, TransactionResponse


class CheckoutRequest(OrderCreate):
    payment_method_id: str


class CheckoutResponse(BaseModel):
    order_id: str
    payment_id: str
    total_amount: Decimal
    currency: str


class PayRequest(BaseModel):
    # Provider specific fields passed through to the gateway
    gateway_data: dict[str, Any] = {}
    customer_name: str | None = None
    customer_email: str | None = None
    user_location: str | None = None
    merchant_type: str | None = None


class PaymentErrorResponse(BaseModel):
    type: str
    message: str
    suggestions: list[str]
    retryable: bool


class PaymentOutcomeResponse(BaseModel):
    success: bool
    order_id: str
    payment_id: str | None
    status: str | None
    state: str | None
    transaction_id: str | None = None
    redirect_url: str | None = None
    qr_code: str | None = None
    error: PaymentErrorResponse | None = None


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class CancellationResponse(BaseModel):
    order_id: str
    order_status: str
    payment_status: str | None
    state: str


class RefundCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: Literal["customer_request", "duplicate", "fraudulent", "service_issue"] = "customer_request"
    notes: str | None = None


class BankTransferConfirmation(BaseModel):
    amount: Decimal = Field(gt=0)
    bank_reference: str | None = None
    confirmed_by: str


class Discrepancy(BaseModel):
    payment_id: str
    issue: str


class ReconciliationResponse(BaseModel):
    checked: int
    reconciled: int
    discrepancies: list[Discrepancy]


class OrderPaymentStatusResponse(BaseModel):
    order: OrderResponse
    payment: PaymentResponse | None
    transactions: list[TransactionResponse]
    refunds: list[RefundRecordResponse]
    last_checked_at: datetime
