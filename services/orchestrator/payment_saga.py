"""
Saga steps for paying and cancelling an order.

Payment:  CREATED -screen-> SCREENED -authorize-> AUTHORIZED -capture-> CAPTURED
Cancel:   any open state -cancel_order-> CANCELLED -refund_payment-> REFUNDED

A failed or provider-cancelled attempt is ENDED: it is never processed again,
but its order can still be cancelled.

Each step works on a ctx dict holding the session ("db"), the "order", its
"payment", the gateway "adapter", the "request" metadata and the error
"boundary".
"""
from datetime import timedelta

import structlog

from shared.config import settings
from shared.config.database import utcnow
from shared.observability import hm_fraud_alerts_total, hm_payments_total
from shared.security.compliance import check_libyan_compliance
from shared.security.crypto import generate_payment_reference
from shared.security.fraud import FraudCheckInput, PaymentHistoryEntry, assess_fraud_risk
from services.order_service.service import OrderService, can_transition
from services.payment_service.adapters import CustomerInfo, InitiationRequest, RefundRequest
from services.payment_service.errors import PaymentError, PaymentErrorType, classify_error
from services.payment_service.models import ComplianceRecord, FraudAlert, PaymentTransaction, Refund
from services.payment_service.repository import PaymentRepository
from services.settlement_service.escrow import EscrowManager
from services.settlement_service.service import SettlementService
from .saga import SagaOrchestrator, SagaState

logger = structlog.get_logger(__name__)

OPEN_STATES = {SagaState.CREATED, SagaState.SCREENED, SagaState.AUTHORIZED, SagaState.CAPTURED, SagaState.ENDED}


class PaymentRejected(Exception):
    """Screening refused the payment. The payment stays pending and the error
    handler is not involved."""

    def __init__(self, error: PaymentError):
        super().__init__(error.message)
        self.error = error


def state_of(order, payment) -> SagaState:
    if payment is not None and payment.status == "refunded":
        return SagaState.REFUNDED
    if order.status == "cancelled":
        return SagaState.CANCELLED
    if payment is not None and payment.status == "completed":
        return SagaState.CAPTURED
    if payment is not None and payment.status == "processing":
        return SagaState.AUTHORIZED
    if payment is not None and payment.status in ("failed", "cancelled"):
        return SagaState.ENDED
    return SagaState.CREATED


async def capture_order(db, order, payment, gateway_transaction_id=None, processed_at=None) -> bool:
    """Complete a processing payment, confirm its order and open escrow and
    invoice. False when the payment was no longer processing. Does not commit."""
    now = utcnow()
    moved = await PaymentRepository.transition_status(
        db,
        payment.id,
        ("processing",),
        "completed",
        processed_at=processed_at or now,
        gateway_transaction_id=gateway_transaction_id or payment.gateway_transaction_id,
    )
    if not moved:
        return False

    await PaymentRepository.add(db, PaymentTransaction(
        payment_id=payment.id,
        type="charge",
        amount=payment.amount,
        currency=payment.currency,
        status="completed",
        gateway_transaction_id=payment.gateway_transaction_id,
        processed_at=now,
    ))
    if order.status == "pending":
        await OrderService.transition(db, order, "confirmed")
    await SettlementService.open_for_order(db, order, now)
    hm_payments_total.labels(status="completed", provider=payment.gateway.provider).inc()
    logger.info("payment_captured", payment_id=payment.id, order_id=order.id)
    return True


# --- ACTIONS ---

async def screen_payment(ctx: dict):
    db, order, payment, request = ctx["db"], ctx["order"], ctx["payment"], ctx["request"]
    method = payment.payment_method

    if not method.is_active or not method.is_verified or method.user_id != order.buyer_id:
        raise PaymentRejected(PaymentError(
            PaymentErrorType.VALIDATION_ERROR,
            "Payment method is not verified",
            user_message="Please verify your payment method before paying.",
        ))

    blocked = ctx["boundary"].blocked_error_type(order.buyer_id)
    if blocked is not None:
        raise PaymentRejected(PaymentError(
            blocked,
            f"Too many recent {blocked.value} errors",
            retryable=False,
            user_message="Too many failed payment attempts. Please try again later.",
        ))

    compliance = check_libyan_compliance(
        float(payment.amount),
        payment.currency,
        method.type,
        user_location=request.get("user_location"),
        merchant_type=request.get("merchant_type"),
    )
    await PaymentRepository.add(db, ComplianceRecord(
        payment_id=payment.id,
        regulation_type="Libyan_Financial_Regulations",
        compliance_status="compliant" if compliance.compliant else "non_compliant",
        details={"issues": compliance.issues},
    ))
    if not compliance.compliant:
        await db.commit()
        raise PaymentRejected(PaymentError(
            PaymentErrorType.COMPLIANCE_VIOLATION,
            "; ".join(compliance.issues),
            details={"issues": compliance.issues},
        ))

    now = utcnow()
    history = await PaymentRepository.list_user_payments_since(db, order.buyer_id, now - timedelta(hours=24))
    assessment = assess_fraud_risk(FraudCheckInput(
        amount=float(payment.amount),
        currency=payment.currency,
        payment_method=method.type,
        ip_address=request.get("ip_address"),
        user_agent=request.get("user_agent"),
        user_history=[PaymentHistoryEntry(p.created_at, p.user_agent) for p in history if p.id != payment.id],
    ), now)
    ctx["fraud"] = assessment

    if assessment.score > settings.FRAUD_RISK_THRESHOLD:
        await PaymentRepository.add(db, FraudAlert(
            payment_id=payment.id,
            user_id=order.buyer_id,
            alert_type="risk_score",
            severity="high",
            description=f"High fraud risk: {', '.join(assessment.flags)}",
            meta={"score": assessment.score, "flags": assessment.flags},
        ))
        await db.commit()
        hm_fraud_alerts_total.labels(severity="high").inc()
        hm_payments_total.labels(status="rejected", provider=payment.gateway.provider).inc()
        logger.warning("payment_flagged", payment_id=payment.id, score=assessment.score, flags=assessment.flags)
        raise PaymentRejected(PaymentError(
            PaymentErrorType.FRAUD_DETECTED,
            f"High fraud risk: {', '.join(assessment.flags)}",
            retryable=False,
            user_message="Payment flagged for security review",
        ))


async def authorize_payment(ctx: dict):
    db, order, payment, request = ctx["db"], ctx["order"], ctx["payment"], ctx["request"]
    method = payment.payment_method

    # Claim the payment before talking to the provider
    claimed = await PaymentRepository.transition_status(
        db,
        payment.id,
        ("pending",),
        "processing",
        ip_address=request.get("ip_address"),
        user_agent=request.get("user_agent"),
    )
    await db.commit()
    if not claimed:
        raise PaymentRejected(PaymentError(
            PaymentErrorType.VALIDATION_ERROR,
            "Payment is already being processed",
            retryable=False,
            user_message="This payment is already being processed.",
        ))

    reference = generate_payment_reference()
    response = await ctx["adapter"].initiate(InitiationRequest(
        amount=payment.amount,
        currency=payment.currency,
        order_id=order.id,
        payment_method_id=method.id,
        customer=CustomerInfo(
            name=method.account_holder_name or request.get("customer_name") or order.buyer_id,
            email=request.get("customer_email"),
            phone=method.phone_number,
        ),
        metadata={"payment_id": payment.id, **(request.get("gateway_data") or {})},
        reference=reference,
    ))
    if not response.success:
        raise classify_error(Exception(response.error or "Payment declined by gateway"))

    payment.transaction_id = response.transaction_id
    payment.gateway_transaction_id = response.gateway_transaction_id or response.transaction_id
    payment.meta = {**(payment.meta or {}), "reference": reference}
    await db.commit()
    ctx["initiation"] = response


async def capture_payment(ctx: dict):
    db, order, payment = ctx["db"], ctx["order"], ctx["payment"]
    status = await ctx["adapter"].check_status(payment.transaction_id)
    ctx["provider_status"] = status

    if status.status == "completed":
        if order.status != "confirmed" and not can_transition(order.status, "confirmed"):
            ctx["provider_completed"] = True
            raise ValueError(f"Order in status '{order.status}' cannot be confirmed")
        await capture_order(db, order, payment, status.gateway_transaction_id, status.processed_at)
        await db.commit()
        return True

    if status.status == "failed":
        raise classify_error(Exception(status.failure_reason or "Payment declined by provider"))

    if status.status == "cancelled":
        await PaymentRepository.transition_status(db, payment.id, ("processing",), "cancelled")
        await db.commit()
        return False

    # Waiting for a webhook or bank reconciliation
    hm_payments_total.labels(status="processing", provider=payment.gateway.provider).inc()
    return False


async def cancel_order(ctx: dict):
    await OrderService.transition(ctx["db"], ctx["order"], "cancelled")


async def refund_payment(ctx: dict):
    """Full refund of a captured payment. Open payments are cancelled instead
    and the saga stops at CANCELLED."""
    db, order, payment = ctx["db"], ctx["order"], ctx["payment"]
    await EscrowManager.refund_escrow(db, order.id)
    if payment is None:
        return False

    refunded = await PaymentRepository.transition_status(db, payment.id, ("completed",), "refunded")
    if not refunded:
        await PaymentRepository.transition_status(db, payment.id, ("pending", "processing"), "cancelled")
        return False

    await PaymentRepository.add(db, Refund(
        payment_id=payment.id,
        order_id=order.id,
        amount=payment.amount,
        currency=payment.currency,
        reason="order_cancelled",
        status="pending",
        requested_by=order.buyer_id,
        notes=ctx.get("reason"),
    ))
    logger.info("order_refund_created", order_id=order.id, payment_id=payment.id, amount=str(payment.amount))


async def load_authorization(ctx: dict):
    if not ctx["payment"].transaction_id:
        raise ValueError("Processing payment has no provider transaction")


# --- COMPENSATIONS (Rollbacks) ---

async def refund_captured_payment(ctx: dict):
    """The provider took the money but the order could not be confirmed."""
    if not ctx.get("provider_completed"):
        return
    db, order, payment = ctx["db"], ctx["order"], ctx["payment"]
    response = await ctx["adapter"].process_refund(RefundRequest(
        transaction_id=payment.transaction_id,
        amount=payment.amount,
        reason="order_cancelled",
        notes="Order could not be confirmed after capture",
    ))
    await PaymentRepository.add(db, Refund(
        payment_id=payment.id,
        order_id=order.id,
        amount=payment.amount,
        currency=payment.currency,
        reason="order_cancelled",
        status=response.status if response.success else "failed",
        gateway_refund_id=response.gateway_refund_id or response.refund_id,
        requested_by=order.buyer_id,
        notes=response.error,
    ))
    await PaymentRepository.transition_status(db, payment.id, ("processing",), "refunded", processed_at=utcnow())
    await db.commit()


# --- BUILDER FACTORIES ---

def build_payment_saga(start: SagaState = SagaState.CREATED) -> SagaOrchestrator:
    """Full flow from CREATED. An authorized payment resumes by reloading its
    provider reference and polling for capture."""
    saga = SagaOrchestrator()
    if start == SagaState.CREATED:
        saga.add_step("screen", screen_payment, None, requires={SagaState.CREATED}, reaches=SagaState.SCREENED)
        saga.add_step(
            "authorize",
            authorize_payment,
            refund_captured_payment,
            requires={SagaState.SCREENED},
            reaches=SagaState.AUTHORIZED,
        )
    else:
        saga.add_step(
            "load_authorization",
            load_authorization,
            refund_captured_payment,
            requires={SagaState.AUTHORIZED},
            reaches=SagaState.AUTHORIZED,
        )
    saga.add_step("capture", capture_payment, None, requires={SagaState.AUTHORIZED}, reaches=SagaState.CAPTURED)
    return saga


def build_cancellation_saga() -> SagaOrchestrator:
    saga = SagaOrchestrator()
    saga.add_step("cancel_order", cancel_order, None, requires=OPEN_STATES, reaches=SagaState.CANCELLED)
    saga.add_step("refund_payment", refund_payment, None, requires={SagaState.CANCELLED}, reaches=SagaState.REFUNDED)
    return saga
