"""
Order and payment flows that span the order, payment and settlement services.
"""
from dataclasses import dataclass, field
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import utcnow
from shared.observability import hm_payment_duration_seconds
from shared.security.rate_limiter import PaymentRateLimiter, payment_rate_limiter
from services.order_service.repository import OrderRepository
from services.order_service.service import OrderService, can_transition
from services.payment_service.adapters import GatewayProvider, RefundRequest
from services.payment_service.errors import (
    PaymentError,
    PaymentErrorContext,
    PaymentErrorHandler,
    PaymentErrorType,
    payment_error_handler,
)
from services.payment_service.gateway_manager import PaymentGatewayManager, gateway_manager
from services.payment_service.models import Payment, PaymentTransaction, Refund
from services.payment_service.repository import PaymentRepository
from .payment_saga import (
    PaymentRejected,
    build_cancellation_saga,
    build_payment_saga,
    capture_order,
    state_of,
)
from .saga import SagaState, SagaTransitionError
from .schemas import CheckoutRequest

logger = structlog.get_logger(__name__)


class TooManyPaymentAttempts(Exception):
    pass


@dataclass
class PaymentOutcome:
    success: bool
    order_id: str
    payment_id: str | None
    status: str | None
    state: SagaState | None
    transaction_id: str | None = None
    redirect_url: str | None = None
    qr_code: str | None = None
    error: PaymentError | None = None


@dataclass
class CancellationOutcome:
    order_id: str
    order_status: str
    payment_status: str | None
    state: SagaState


@dataclass
class ReconciliationReport:
    checked: int = 0
    reconciled: int = 0
    discrepancies: list[dict] = field(default_factory=list)


async def _payment_status(db: AsyncSession, payment_id: str) -> str | None:
    result = await db.execute(select(Payment.status).where(Payment.id == payment_id))
    return result.scalar_one_or_none()


class PaymentOrchestrator:
    def __init__(
        self,
        manager: PaymentGatewayManager = gateway_manager,
        error_handler: PaymentErrorHandler = payment_error_handler,
        rate_limiter: PaymentRateLimiter = payment_rate_limiter,
    ):
        self.manager = manager
        self.error_handler = error_handler
        self.rate_limiter = rate_limiter

    async def create_order_with_payment(self, db: AsyncSession, buyer_id: str, data: CheckoutRequest):
        """Order, items and a pending payment in one transaction."""
        method = await PaymentRepository.get_payment_method(db, data.payment_method_id)
        if method is None or not method.is_active or method.user_id != buyer_id:
            raise LookupError("Payment method not found")

        order = OrderService.build_order(buyer_id, data)
        try:
            await OrderRepository.add_order(db, order)
            payment = await PaymentRepository.add(db, Payment(
                order_id=order.id,
                payment_method=method,
                gateway=method.gateway,
                amount=order.total_amount,
                currency=order.currency,
                status="pending",
                meta={"retryCount": 0},
            ))
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("order_creation_failed", buyer_id=buyer_id)
            raise

        logger.info("order_created", order_id=order.id, payment_id=payment.id, total=str(order.total_amount))
        return order, payment

    async def _load(self, db: AsyncSession, order_id: str, user_id: str | None, sellers: bool = False):
        order = await OrderService.get_order(db, order_id)
        if order is not None and user_id is not None:
            parties = (order.buyer_id, order.seller_id) if sellers else (order.buyer_id,)
            if user_id not in parties:
                order = None
        if order is None:
            raise LookupError("Order not found")
        payment = await PaymentRepository.get_payment_for_order(db, order.id)
        return order, payment

    async def process_order_payment(
        self, db: AsyncSession, order_id: str, request: dict, user_id: str | None = None
    ) -> PaymentOutcome:
        """
        Screen, authorize and capture the payment of an order. A payment that
        the provider has not settled yet stays processing and completes
        through a webhook or bank reconciliation. Screening rejections leave
        the payment pending; every other failure goes through the error
        handler once.
        """
        order, payment = await self._load(db, order_id, user_id)
        if payment is None:
            raise LookupError("Payment not found")

        state = state_of(order, payment)
        if state == SagaState.ENDED:
            error = PaymentError(
                PaymentErrorType.VALIDATION_ERROR,
                f"Payment attempt ended with status '{payment.status}'",
                retryable=False,
                user_message="This payment attempt has ended. Please start a new payment.",
            )
            return PaymentOutcome(False, order.id, payment.id, payment.status, state, error=error)
        if state not in (SagaState.CREATED, SagaState.AUTHORIZED):
            error = PaymentError(
                PaymentErrorType.VALIDATION_ERROR,
                f"Payment in status '{payment.status}' cannot be processed",
                retryable=False,
                user_message="This payment cannot be processed in its current state.",
            )
            return PaymentOutcome(False, order.id, payment.id, payment.status, state, error=error)

        if not self.rate_limiter.check_rate_limit(f"payment:{order.buyer_id}"):
            raise TooManyPaymentAttempts("Too many payment attempts")

        ctx = {
            "db": db,
            "order": order,
            "payment": payment,
            "request": request,
            "boundary": self.error_handler.boundary,
            "state": state,
        }
        try:
            with hm_payment_duration_seconds.time():
                ctx["adapter"] = await self.manager.resolve_gateway(db, payment.gateway_id)
                if ctx["adapter"] is None:
                    raise PaymentError(PaymentErrorType.GATEWAY_ERROR, f"Payment gateway {payment.gateway_id} unavailable")
                await build_payment_saga(state).execute(ctx)
        except PaymentRejected as e:
            logger.info("payment_rejected", order_id=order.id, error_type=e.error.type.value)
            return PaymentOutcome(
                False, order.id, payment.id, await _payment_status(db, payment.id), ctx["state"], error=e.error
            )
        except Exception as e:
            error = await self.error_handler.handle_payment_error(db, e, PaymentErrorContext(
                payment_id=payment.id,
                order_id=order.id,
                gateway_id=payment.gateway_id,
                user_id=order.buyer_id,
                amount=float(payment.amount),
                currency=payment.currency,
                ip_address=request.get("ip_address"),
                user_agent=request.get("user_agent"),
            ))
            return PaymentOutcome(
                False, order.id, payment.id, await _payment_status(db, payment.id), ctx["state"], error=error
            )

        initiation = ctx.get("initiation")
        return PaymentOutcome(
            success=True,
            order_id=order.id,
            payment_id=payment.id,
            status=await _payment_status(db, payment.id),
            state=ctx["state"],
            transaction_id=payment.transaction_id,
            redirect_url=initiation.redirect_url if initiation else None,
            qr_code=initiation.qr_code if initiation else None,
        )

    async def retry_order_payment(
        self, db: AsyncSession, order_id: str, request: dict, user_id: str | None = None
    ) -> PaymentOutcome:
        order, payment = await self._load(db, order_id, user_id)
        if payment is None:
            raise LookupError("Payment not found")

        result = await self.error_handler.retry_payment(db, payment.id, settings.MAX_PAYMENT_RETRIES)
        if not result.success:
            return PaymentOutcome(
                False, order.id, payment.id, payment.status, state_of(order, payment), error=result.error
            )
        return await self.process_order_payment(db, order.id, request, user_id)

    async def cancel_order_with_refund(
        self, db: AsyncSession, order_id: str, reason: str, user_id: str | None = None
    ) -> CancellationOutcome:
        """Cancel a non-terminal order. A captured payment is refunded in full
        with a pending refund; an open payment is cancelled."""
        order, payment = await self._load(db, order_id, user_id, sellers=True)
        ctx = {"db": db, "order": order, "payment": payment, "reason": reason, "state": state_of(order, payment)}
        try:
            await build_cancellation_saga().execute(ctx)
        except SagaTransitionError as e:
            raise ValueError(f"Order in state '{e.state.value}' cannot be cancelled") from e
        await db.commit()

        logger.info("order_cancelled", order_id=order.id, reason=reason, state=ctx["state"].value)
        return CancellationOutcome(
            order.id,
            order.status,
            await _payment_status(db, payment.id) if payment else None,
            ctx["state"],
        )

    async def request_refund(
        self,
        db: AsyncSession,
        payment_id: str,
        amount: Decimal,
        reason: str,
        user_id: str,
        notes: str | None = None,
    ) -> Refund:
        """Full or partial refund through the provider. Only one refund may be
        open per payment and refunds never exceed what was paid."""
        payment = await PaymentRepository.get_payment(db, payment_id)
        if payment is None or payment.payment_method.user_id != user_id:
            raise LookupError("Payment not found")
        if payment.status != "completed":
            raise ValueError("Only completed payments can be refunded")
        if await PaymentRepository.get_unresolved_refund(db, payment.id):
            raise ValueError("A refund is already in progress for this payment")

        remaining = Decimal(payment.amount) - await PaymentRepository.get_refunded_total(db, payment.id)
        if amount <= 0 or amount > remaining:
            raise ValueError(f"Refund amount must be between 0 and {remaining}")

        adapter = await self.manager.resolve_gateway(db, payment.gateway_id)
        if adapter is None:
            raise PaymentError(PaymentErrorType.GATEWAY_ERROR, f"Payment gateway {payment.gateway_id} unavailable")

        response = await adapter.process_refund(RefundRequest(payment.transaction_id, amount, reason, notes))
        now = utcnow()
        refund = await PaymentRepository.add(db, Refund(
            payment_id=payment.id,
            order_id=payment.order_id,
            amount=amount,
            currency=payment.currency,
            reason=reason,
            status=response.status if response.success else "failed",
            gateway_refund_id=response.gateway_refund_id or response.refund_id,
            requested_by=user_id,
            notes=notes if response.success else response.error,
            processed_at=now if response.status == "completed" else None,
        ))

        if response.success and response.status == "completed":
            await PaymentRepository.add(db, PaymentTransaction(
                payment_id=payment.id,
                type="refund",
                amount=amount,
                currency=payment.currency,
                status="completed",
                gateway_transaction_id=response.gateway_refund_id,
                processed_at=now,
            ))
            if amount == remaining:
                await PaymentRepository.transition_status(db, payment.id, ("completed",), "refunded")
        await db.commit()

        logger.info("refund_requested", payment_id=payment.id, amount=str(amount), status=refund.status)
        if not response.success:
            raise ValueError(response.error or "Refund was rejected by the provider")
        return refund

    async def confirm_bank_transfer(
        self,
        db: AsyncSession,
        payment_id: str,
        amount: Decimal,
        confirmed_by: str,
        bank_reference: str | None = None,
    ) -> PaymentOutcome:
        """Reconcile a bank transfer seen on the account statement. This is the
        only way a bank transfer payment completes besides a bank webhook."""
        payment = await PaymentRepository.get_payment(db, payment_id)
        if payment is None:
            raise LookupError("Payment not found")
        if payment.gateway.provider != GatewayProvider.BANK_TRANSFER.value:
            raise ValueError("Payment is not a bank transfer")
        if payment.status != "processing":
            raise ValueError(f"Payment in status '{payment.status}' is not awaiting a transfer")
        if Decimal(amount) != Decimal(payment.amount):
            raise ValueError("Transferred amount does not match the payment amount")

        order = await OrderService.get_order(db, payment.order_id)
        if order.status != "confirmed" and not can_transition(order.status, "confirmed"):
            raise ValueError(f"Order in status '{order.status}' cannot be confirmed")

        captured = await capture_order(db, order, payment, gateway_transaction_id=bank_reference)
        if not captured:
            raise ValueError("Payment is not awaiting a transfer")
        await PaymentRepository.add_audit_log(
            db,
            "bank_transfer_confirmed",
            {"paymentId": payment.id, "amount": str(amount), "bankReference": bank_reference},
            entity_id=payment.id,
            user_id=confirmed_by,
        )
        await db.commit()
        return PaymentOutcome(True, order.id, payment.id, "completed", SagaState.CAPTURED, payment.transaction_id)

    async def reconcile_payments(self, db: AsyncSession, limit: int = 100) -> ReconciliationReport:
        """Re-verify completed payments with their providers. Best effort: each
        payment is committed on its own and failures are reported, not raised."""
        report = ReconciliationReport()
        for payment in await PaymentRepository.list_unreconciled_completed(db, limit):
            report.checked += 1
            issue = await self._reconcile_one(db, payment)
            if issue is None:
                report.reconciled += 1
            else:
                report.discrepancies.append({"payment_id": payment.id, "issue": issue})

        logger.info(
            "payments_reconciled",
            checked=report.checked,
            reconciled=report.reconciled,
            discrepancies=len(report.discrepancies),
        )
        return report

    async def _reconcile_one(self, db: AsyncSession, payment: Payment) -> str | None:
        adapter = await self.manager.resolve_gateway(db, payment.gateway_id)
        if adapter is None:
            return "Payment gateway unavailable"
        if not payment.transaction_id:
            return "Missing provider transaction id"

        try:
            status = await adapter.check_status(payment.transaction_id)
        except PaymentError as e:
            return e.message

        if status.status != "completed":
            return f"Provider reports status '{status.status}'"
        if status.amount and Decimal(status.amount) != Decimal(payment.amount):
            return f"Provider amount {status.amount} differs from {payment.amount}"

        payment.reconciled_at = utcnow()
        await PaymentRepository.add_audit_log(
            db,
            "payment_reconciled",
            {"paymentId": payment.id, "amount": str(payment.amount)},
            entity_id=payment.id,
        )
        await db.commit()
        return None

    async def get_order_payment_status(self, db: AsyncSession, order_id: str, user_id: str | None = None) -> dict:
        order, payment = await self._load(db, order_id, user_id, sellers=True)
        return {
            "order": order,
            "payment": payment,
            "transactions": await PaymentRepository.list_transactions(db, payment.id) if payment else [],
            "refunds": await PaymentRepository.list_refunds(db, payment.id) if payment else [],
            "last_checked_at": utcnow(),
        }


payment_orchestrator = PaymentOrchestrator()
