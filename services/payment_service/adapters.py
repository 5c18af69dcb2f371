"""
Gateway adapters for the Libyan payment providers.

Every adapter speaks the same PaymentGatewayAdapter protocol and normalizes
the provider's status vocabulary. Transport problems (timeouts, refused
connections, non-2xx answers) raise PaymentError; a provider that answers
but rejects the request yields success=False.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Protocol
from urllib.parse import urlencode

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import settings
from shared.config.database import AsyncSessionLocal
from .errors import PaymentError, PaymentErrorType
from .models import PaymentGatewayConfig
from .repository import PaymentRepository

logger = structlog.get_logger(__name__)

NORMALIZED_STATUSES = {"pending", "processing", "completed", "failed", "cancelled", "refunded"}


class GatewayProvider(str, Enum):
    MOBILE_MONEY = "libyana_mobile"
    BANK_TRANSFER = "libyana_bank"
    CARD = "libyana_card"


@dataclass
class GatewayConfig:
    id: str
    name: str
    provider: str
    type: str
    api_key: str | None = None
    api_secret: str | None = None
    webhook_secret: str | None = None
    base_url: str | None = None
    supported_currencies: list[str] = field(default_factory=list)
    configuration: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, row: PaymentGatewayConfig) -> "GatewayConfig":
        return cls(
            id=row.id,
            name=row.name,
            provider=row.provider,
            type=row.type,
            api_key=row.api_key,
            api_secret=row.api_secret,
            webhook_secret=row.webhook_secret,
            base_url=row.base_url,
            supported_currencies=list(row.supported_currencies or []),
            configuration=dict(row.configuration or {}),
        )


@dataclass
class CustomerInfo:
    name: str
    email: str | None = None
    phone: str | None = None


@dataclass
class InitiationRequest:
    amount: Decimal
    currency: str
    order_id: str
    payment_method_id: str
    customer: CustomerInfo
    # Merchant reference of this attempt, echoed back by the provider
    reference: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class InitiationResponse:
    success: bool
    transaction_id: str | None = None
    gateway_transaction_id: str | None = None
    redirect_url: str | None = None
    qr_code: str | None = None
    error: str | None = None


@dataclass
class StatusResponse:
    status: str
    transaction_id: str
    amount: Decimal
    currency: str
    gateway_transaction_id: str | None = None
    processed_at: datetime | None = None
    failure_reason: str | None = None


@dataclass
class RefundRequest:
    # Provider transaction being refunded
    transaction_id: str
    amount: Decimal
    reason: str
    notes: str | None = None


@dataclass
class RefundResponse:
    success: bool
    status: str # pending, processing, completed, failed
    refund_id: str | None = None
    gateway_refund_id: str | None = None
    error: str | None = None


class PaymentGatewayAdapter(Protocol):
    provider: GatewayProvider
    config: GatewayConfig

    async def initiate(self, request: InitiationRequest) -> InitiationResponse: ...

    async def check_status(self, transaction_id: str) -> StatusResponse: ...

    async def process_refund(self, request: RefundRequest) -> RefundResponse: ...


def normalize_status(raw_status: Any, status_map: dict[str, str]) -> str:
    # Unknown provider statuses are never treated as settled
    return status_map.get(str(raw_status), "pending")


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _money(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def webhook_url(gateway_id: str) -> str:
    return f"{settings.APP_URL}/payments/webhook/{gateway_id}"


class HttpGatewayAdapter:
    """Shared HTTP plumbing for providers with a JSON API."""

    provider: GatewayProvider
    api_label = "Gateway API"
    status_map: dict[str, str] = {}

    def __init__(
        self,
        config: GatewayConfig,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    async def _call(self, method: str, endpoint: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{(self.config.base_url or '').rstrip('/')}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, json=data, headers=self._headers())
        except httpx.TimeoutException as e:
            raise PaymentError(
                PaymentErrorType.TIMEOUT_ERROR,
                f"{self.api_label} timeout: {e}",
                details={"gateway_id": self.config.id, "endpoint": endpoint},
            ) from e
        except httpx.TransportError as e:
            raise PaymentError(
                PaymentErrorType.NETWORK_ERROR,
                f"{self.api_label} connection failed: {e}",
                details={"gateway_id": self.config.id, "endpoint": endpoint},
            ) from e

        if response.is_error:
            raise PaymentError(
                PaymentErrorType.GATEWAY_ERROR,
                f"{self.api_label} error: {response.status_code} {response.reason_phrase}",
                details={"gateway_id": self.config.id, "endpoint": endpoint, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise PaymentError(
                PaymentErrorType.GATEWAY_ERROR,
                f"{self.api_label} error: invalid JSON response",
                details={"gateway_id": self.config.id, "endpoint": endpoint},
            ) from e

    async def check_status(self, transaction_id: str) -> StatusResponse:
        body = await self._call("GET", f"/payments/{transaction_id}/status")
        return StatusResponse(
            status=normalize_status(body.get("status"), self.status_map),
            transaction_id=transaction_id,
            gateway_transaction_id=body.get("gatewayTransactionId"),
            amount=_money(body.get("amount")),
            currency=body.get("currency") or settings.HOME_CURRENCY,
            processed_at=_parse_timestamp(body.get("processedAt")),
            failure_reason=body.get("failureReason"),
        )

    async def process_refund(self, request: RefundRequest) -> RefundResponse:
        body = await self._call("POST", "/refunds/initiate", {
            "originalTransactionId": request.transaction_id,
            "amount": float(request.amount),
            "reason": request.reason,
        })
        if not body.get("refundId"):
            return RefundResponse(success=False, status="failed", error=body.get("error") or "Refund rejected by provider")
        return RefundResponse(
            success=True,
            status="pending",
            refund_id=body["refundId"],
            gateway_refund_id=body.get("gatewayRefundId"),
        )

    @staticmethod
    def _initiation_from(body: dict[str, Any], **extra) -> InitiationResponse:
        if not body.get("transactionId"):
            return InitiationResponse(success=False, error=body.get("error") or "Provider did not return a transaction id")
        return InitiationResponse(
            success=True,
            transaction_id=body["transactionId"],
            gateway_transaction_id=body.get("gatewayTransactionId"),
            **extra,
        )


class MobileMoneyAdapter(HttpGatewayAdapter):
    """Mobile wallet payments. The customer confirms on the phone or by
    scanning the returned QR code; status is polled."""

    provider = GatewayProvider.MOBILE_MONEY
    api_label = "Mobile Money API"
    status_map = {
        "INITIATED": "pending",
        "PROCESSING": "processing",
        "COMPLETED": "completed",
        "FAILED": "failed",
        "CANCELLED": "cancelled",
        "REFUNDED": "refunded",
    }

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.config.api_secret:
            headers["X-API-Secret"] = self.config.api_secret
        return headers

    async def initiate(self, request: InitiationRequest) -> InitiationResponse:
        body = await self._call("POST", "/payments/initiate", {
            "amount": float(request.amount),
            "currency": request.currency,
            "phoneNumber": request.customer.phone,
            "description": f"Payment for order {request.order_id}",
            "merchantReference": request.reference,
            "callbackUrl": webhook_url(self.config.id),
        })
        return self._initiation_from(body, qr_code=body.get("qrCode"))


class CardAdapter(HttpGatewayAdapter):
    """Hosted card page. Completion normally arrives through the webhook."""

    provider = GatewayProvider.CARD
    api_label = "Card Payment API"
    status_map = {
        "initiated": "pending",
        "processing": "processing",
        "completed": "completed",
        "failed": "failed",
        "cancelled": "cancelled",
        "refunded": "refunded",
    }

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        merchant_id = self.config.configuration.get("merchantId")
        if merchant_id:
            headers["X-Merchant-ID"] = str(merchant_id)
        return headers

    async def initiate(self, request: InitiationRequest) -> InitiationResponse:
        body = await self._call("POST", "/payments/initiate", {
            "amount": float(request.amount),
            "currency": request.currency,
            "orderId": request.order_id,
            "merchantReference": request.reference,
            "customer": {"name": request.customer.name, "email": request.customer.email},
            "returnUrl": f"{settings.APP_URL}/payment/success",
            "cancelUrl": f"{settings.APP_URL}/payment/cancel",
            "webhookUrl": webhook_url(self.config.id),
        })
        return self._initiation_from(body, redirect_url=body.get("redirectUrl"))


class BankTransferAdapter:
    """
    Manual bank transfers. Nothing is sent to a provider: the buyer gets a
    reference and transfer instructions, and the payment is settled by
    reconciliation (confirm_bank_transfer or a bank webhook). Status therefore
    comes from the locally persisted Payment.
    """

    provider = GatewayProvider.BANK_TRANSFER

    def __init__(
        self,
        config: GatewayConfig,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.session_factory = session_factory
        self.clock = clock

    def _epoch_ms(self) -> int:
        return int(self.clock() * 1000)

    async def initiate(self, request: InitiationRequest) -> InitiationResponse:
        reference = f"ORDER-{request.order_id}-{self._epoch_ms()}"
        query = urlencode({"reference": reference, "amount": str(request.amount), "currency": request.currency})
        return InitiationResponse(
            success=True,
            transaction_id=reference,
            gateway_transaction_id=reference,
            redirect_url=f"{settings.APP_URL}/payment/bank-transfer?{query}",
        )

    async def check_status(self, transaction_id: str) -> StatusResponse:
        async with self.session_factory() as session:
            payment = await PaymentRepository.get_payment_by_transaction_id(session, transaction_id)

        if payment is None:
            return StatusResponse(status="pending", transaction_id=transaction_id, amount=Decimal("0"), currency=settings.HOME_CURRENCY)

        return StatusResponse(
            status=payment.status if payment.status in NORMALIZED_STATUSES else "pending",
            transaction_id=transaction_id,
            gateway_transaction_id=payment.gateway_transaction_id,
            amount=_money(payment.amount),
            currency=payment.currency,
            processed_at=payment.processed_at,
        )

    async def process_refund(self, request: RefundRequest) -> RefundResponse:
        # Paid back by hand through the bank; stays pending until confirmed
        logger.info("bank_transfer_refund_requested", transaction_id=request.transaction_id, amount=str(request.amount))
        return RefundResponse(success=True, status="pending", refund_id=f"REFUND-{self._epoch_ms()}")


ADAPTER_CLASSES = {
    GatewayProvider.MOBILE_MONEY: MobileMoneyAdapter,
    GatewayProvider.BANK_TRANSFER: BankTransferAdapter,
    GatewayProvider.CARD: CardAdapter,
}
