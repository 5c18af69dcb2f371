from decimal import Decimal

import pytest
from sqlalchemy import select

from shared.security.crypto import generate_webhook_signature
from services.order_service.models import Order
from services.payment_service.models import PaymentTransaction, PaymentWebhook, Refund
from services.payment_service.webhooks import WebhookProcessor, WebhookSignatureError
from services.settlement_service.models import EscrowAccount, Invoice

pytestmark = pytest.mark.integration

WEBHOOK_SECRET = "test-webhook-secret"


def signed(payload):
    return payload, generate_webhook_signature(payload, WEBHOOK_SECRET)


async def all_rows(db, model):
    return (await db.execute(select(model))).scalars().all()


@pytest.fixture
async def processing_payment(make_gateway, make_method, make_order):
    gateway = await make_gateway(webhook_secret=WEBHOOK_SECRET)
    method = await make_method(gateway)
    order, payment = await make_order(method, payment_status="processing", transaction_id="tx-1")
    return gateway, order, payment


class TestWebhookProcessor:
    async def test_success_captures_and_settles(self, db, processing_payment):
        gateway, order, payment = processing_payment
        payload, signature = signed({"event_type": "payment.succeeded", "transaction_id": "tx-1", "webhook_id": "wh-1"})

        result = await WebhookProcessor.receive(db, gateway.id, payload, signature)

        assert result.outcome == "processed"
        assert payment.status == "completed"
        assert payment.processed_at is not None
        assert (await db.get(Order, order.id)).status == "confirmed"
        [escrow] = await all_rows(db, EscrowAccount)
        assert escrow.held_amount == payment.amount
        [invoice] = await all_rows(db, Invoice)
        assert invoice.total_amount == payment.amount
        [transaction] = await all_rows(db, PaymentTransaction)
        assert transaction.type == "charge"
        assert transaction.status == "completed"

        [inbox] = await all_rows(db, PaymentWebhook)
        assert inbox.processed
        assert inbox.payment_id == payment.id

    async def test_redelivery_is_a_no_op(self, db, processing_payment):
        gateway, _, _ = processing_payment
        payload, signature = signed({"event_type": "payment.succeeded", "transaction_id": "tx-1", "webhook_id": "wh-1"})

        await WebhookProcessor.receive(db, gateway.id, payload, signature)
        again = await WebhookProcessor.receive(db, gateway.id, payload, signature)

        assert again.outcome == "duplicate"
        assert len(await all_rows(db, PaymentTransaction)) == 1
        assert len(await all_rows(db, EscrowAccount)) == 1

    async def test_same_event_with_new_id_is_still_idempotent(self, db, processing_payment):
        gateway, _, _ = processing_payment
        for webhook_id in ("wh-1", "wh-2"):
            payload, signature = signed({"event_type": "payment.completed", "transaction_id": "tx-1", "webhook_id": webhook_id})
            result = await WebhookProcessor.receive(db, gateway.id, payload, signature)
        assert result.outcome == "duplicate"
        assert len(await all_rows(db, PaymentTransaction)) == 1

    async def test_tampered_payload_is_rejected_but_stored(self, db, processing_payment):
        gateway, _, payment = processing_payment
        payload, signature = signed({"event_type": "payment.succeeded", "transaction_id": "tx-1"})
        payload["transaction_id"] = "tx-2"

        with pytest.raises(WebhookSignatureError):
            await WebhookProcessor.receive(db, gateway.id, payload, signature)

        assert payment.status == "processing"
        [inbox] = await all_rows(db, PaymentWebhook)
        assert not inbox.processed
        assert inbox.error_message == "Invalid webhook signature"

    async def test_missing_signature_is_rejected(self, db, processing_payment):
        gateway, _, _ = processing_payment
        with pytest.raises(WebhookSignatureError):
            await WebhookProcessor.receive(db, gateway.id, {"event_type": "payment.succeeded", "transaction_id": "tx-1"}, None)

    async def test_unknown_gateway(self, db):
        with pytest.raises(LookupError):
            await WebhookProcessor.receive(db, "missing", {"event_type": "payment.succeeded"}, None)

    async def test_unsigned_gateway_accepts_payload(self, db, make_gateway, make_method, make_order):
        gateway = await make_gateway()
        _, payment = await make_order(await make_method(gateway), payment_status="processing", transaction_id="tx-9")
        result = await WebhookProcessor.receive(
            db, gateway.id, {"type": "payment.failed", "id": "tx-9", "failure_reason": "Insufficient funds"}, None
        )
        assert result.outcome == "processed"
        assert payment.status == "failed"
        assert payment.failure_reason == "Insufficient funds"

    async def test_cancelled_event(self, db, processing_payment):
        gateway, _, payment = processing_payment
        payload, signature = signed({"event_type": "payment.cancelled", "transaction_id": "tx-1"})
        await WebhookProcessor.receive(db, gateway.id, payload, signature)
        assert payment.status == "cancelled"

    async def test_unknown_events_are_ignored(self, db, processing_payment):
        gateway, _, payment = processing_payment
        payload, signature = signed({"event_type": "payment.disputed", "transaction_id": "tx-1"})
        result = await WebhookProcessor.receive(db, gateway.id, payload, signature)
        assert result.outcome == "ignored"
        assert payment.status == "processing"

    async def test_payment_of_another_gateway_is_not_found(self, db, processing_payment, make_gateway):
        other = await make_gateway(name="Other")
        result = await WebhookProcessor.receive(
            db, other.id, {"event_type": "payment.succeeded", "transaction_id": "tx-1"}, None
        )
        assert result.outcome == "payment_not_found"


class TestRefundWebhooks:
    async def test_partial_refunds_then_full(self, db, make_gateway, make_method, make_order):
        gateway = await make_gateway()
        _, payment = await make_order(
            await make_method(gateway), amount=Decimal("250.00"), payment_status="completed", transaction_id="tx-5"
        )

        await WebhookProcessor.receive(
            db, gateway.id, {"event_type": "payment.refunded", "transaction_id": "tx-5", "amount": 100}, None
        )
        assert payment.status == "completed"

        await WebhookProcessor.receive(
            db, gateway.id, {"event_type": "payment.refunded", "transaction_id": "tx-5", "amount": "150.00"}, None
        )
        assert payment.status == "refunded"

        refunds = await all_rows(db, Refund)
        assert sorted(r.amount for r in refunds) == [Decimal("100.00"), Decimal("150.00")]
        assert all(r.status == "completed" and r.requested_by == "gateway" for r in refunds)

    async def test_completes_pending_refund(self, db, make_gateway, make_method, make_order):
        gateway = await make_gateway()
        order, payment = await make_order(await make_method(gateway), payment_status="completed", transaction_id="tx-6")
        db.add(Refund(
            payment_id=payment.id, order_id=order.id, amount=payment.amount, currency="LYD",
            reason="customer_request", status="pending", requested_by=order.buyer_id,
        ))
        await db.commit()

        await WebhookProcessor.receive(db, gateway.id, {"event_type": "payment.refunded", "transaction_id": "tx-6"}, None)

        [refund] = await all_rows(db, Refund)
        assert refund.status == "completed"
        assert payment.status == "refunded"
