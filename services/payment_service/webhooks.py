"""
Provider callbacks.

Every callback lands in the payment_webhooks inbox first. When the gateway
has a webhook secret, the HMAC signature must verify before the payload is
acted on. Status changes go through guarded transitions, so a redelivered
event changes nothing.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import utcnow
from shared.observability import hm_payments_total, hm_webhooks_total
from shared.security.crypto import verify_webhook_signature
from services.order_service.service import OrderService
from services.settlement_service.service import SettlementService
from .models import PaymentTransaction, PaymentWebhook, Refund
from .repository import PaymentRepository

logger = structlog.get_logger(__name__)

SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature")

SUCCESS_EVENTS = {"payment.succeeded", "payment.completed"}


class WebhookSignatureError(Exception):
    pass


@dataclass
class WebhookResult:
    webhook_id: str
    event_type: str
    outcome: str # processed, duplicate, ignored, payment_not_found


def event_type_of(payload: dict[str, Any]) -> str:
    return payload.get("event_type") or payload.get("type") or "unknown"


def transaction_id_of(payload: dict[str, Any]) -> str | None:
    value = payload.get("transaction_id") or payload.get("id")
    return str(value) if value is not None else None


class WebhookProcessor:
    @staticmethod
    async def receive(
        db: AsyncSession,
        gateway_id: str,
        payload: dict[str, Any],
        signature: str | None,
    ) -> WebhookResult:
        gateway = await PaymentRepository.get_gateway(db, gateway_id)
        if gateway is None:
            raise LookupError("Invalid gateway")

        event_type = event_type_of(payload)
        inbox = await PaymentRepository.add(db, PaymentWebhook(
            gateway_id=gateway_id,
            event_type=event_type,
            webhook_id=payload.get("webhook_id") or payload.get("event_id"),
            payload=payload,
            signature=signature,
        ))

        if gateway.webhook_secret and not verify_webhook_signature(payload, signature, gateway.webhook_secret):
            inbox.error_message = "Invalid webhook signature"
            await db.commit()
            hm_webhooks_total.labels(event_type=event_type, outcome="rejected").inc()
            logger.warning("webhook_signature_rejected", gateway_id=gateway_id, event_type=event_type)
            raise WebhookSignatureError("Invalid webhook signature")

        if inbox.webhook_id and await PaymentRepository.find_webhook(db, gateway_id, inbox.webhook_id):
            outcome = "duplicate"
        else:
            outcome = await WebhookProcessor._dispatch(db, gateway_id, event_type, payload, inbox)

        inbox.processed = True
        inbox.processed_at = utcnow()
        await db.commit()

        hm_webhooks_total.labels(event_type=event_type, outcome=outcome).inc()
        logger.info("webhook_processed", gateway_id=gateway_id, event_type=event_type, outcome=outcome)
        return WebhookResult(inbox.id, event_type, outcome)

    @staticmethod
    async def _dispatch(
        db: AsyncSession,
        gateway_id: str,
        event_type: str,
        payload: dict[str, Any],
        inbox: PaymentWebhook,
    ) -> str:
        if event_type not in SUCCESS_EVENTS | {"payment.failed", "payment.refunded", "payment.cancelled"}:
            logger.info("webhook_event_ignored", event_type=event_type)
            return "ignored"

        transaction_id = transaction_id_of(payload)
        payment = await PaymentRepository.get_payment_by_transaction_id(db, transaction_id) if transaction_id else None
        if payment is None or payment.gateway_id != gateway_id:
            logger.error("webhook_payment_not_found", gateway_id=gateway_id, transaction_id=transaction_id)
            return "payment_not_found"

        inbox.payment_id = payment.id
        now = utcnow()

        if event_type in SUCCESS_EVENTS:
            moved = await PaymentRepository.transition_status(
                db, payment.id, ("pending", "processing"), "completed", processed_at=now
            )
            if moved:
                await PaymentRepository.add(db, PaymentTransaction(
                    payment_id=payment.id, type="charge", amount=payment.amount, currency=payment.currency,
                    status="completed", gateway_transaction_id=transaction_id, gateway_response=payload,
                    processed_at=now,
                ))
                order = await OrderService.get_order(db, payment.order_id)
                if order and order.status == "pending":
                    await OrderService.transition(db, order, "confirmed")
                if order:
                    await SettlementService.open_for_order(db, order, now)
                hm_payments_total.labels(status="completed", provider=payment.gateway.provider).inc()

        elif event_type == "payment.failed":
            moved = await PaymentRepository.transition_status(
                db, payment.id, ("pending", "processing"), "failed",
                failure_reason=payload.get("failure_reason") or payload.get("error") or "Payment failed",
            )
            if moved:
                await PaymentRepository.add(db, PaymentTransaction(
                    payment_id=payment.id, type="charge", amount=payment.amount, currency=payment.currency,
                    status="failed", gateway_transaction_id=transaction_id, gateway_response=payload,
                    processed_at=now,
                ))
                hm_payments_total.labels(status="failed", provider=payment.gateway.provider).inc()

        elif event_type == "payment.refunded":
            refund = await PaymentRepository.get_unresolved_refund(db, payment.id)
            moved = refund is not None or payment.status == "completed"
            if moved:
                if refund is None:
                    # Refund started on the provider side
                    refund = await PaymentRepository.add(db, Refund(
                        payment_id=payment.id, order_id=payment.order_id, currency=payment.currency,
                        amount=Decimal(str(payload["amount"])) if payload.get("amount") is not None else payment.amount,
                        reason="customer_request", requested_by="gateway",
                    ))
                refund.status = "completed"
                refund.processed_at = now
                await PaymentRepository.add(db, PaymentTransaction(
                    payment_id=payment.id, type="refund", amount=refund.amount, currency=payment.currency,
                    status="completed", gateway_transaction_id=transaction_id, gateway_response=payload,
                    processed_at=now,
                ))
                if await PaymentRepository.get_refunded_total(db, payment.id) >= payment.amount:
                    await PaymentRepository.transition_status(db, payment.id, ("completed",), "refunded")

        else:
            moved = await PaymentRepository.transition_status(db, payment.id, ("pending", "processing"), "cancelled")

        return "processed" if moved else "duplicate"
