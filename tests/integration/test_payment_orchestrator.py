from decimal import Decimal

import pytest
from sqlalchemy import select

from services.orchestrator.saga import SagaState
from services.orchestrator.schemas import CheckoutRequest
from services.orchestrator.service import PaymentOrchestrator, TooManyPaymentAttempts
from services.payment_service.adapters import (
    GatewayProvider,
    InitiationResponse,
    RefundResponse,
    StatusResponse,
)
from services.payment_service.errors import PaymentError, PaymentErrorHandler, PaymentErrorType
from services.payment_service.gateway_manager import PaymentGatewayManager
from services.payment_service.models import AuditLog, ComplianceRecord, FraudAlert, PaymentTransaction, Refund
from services.settlement_service.models import EscrowAccount, Invoice
from shared.security.rate_limiter import PaymentRateLimiter

pytestmark = pytest.mark.integration

BUYER_ID = "buyer-0001"
SELLER_ID = "seller-0001"
REQUEST = {"ip_address": "203.0.113.5", "user_agent": "pytest"}


class FakeAdapter:
    provider = GatewayProvider.CARD

    def __init__(self):
        self.status = "completed"
        self.status_amount = Decimal("0")
        self.initiate_error = None
        self.declined = None
        self.refund_status = "completed"
        self.refunds = []
        self.initiations = []

    async def initiate(self, request):
        self.initiations.append(request)
        if self.initiate_error:
            raise self.initiate_error
        if self.declined:
            return InitiationResponse(success=False, error=self.declined)
        return InitiationResponse(
            success=True, transaction_id="tx-100", gateway_transaction_id="gtx-100", redirect_url="https://pay.test/tx-100"
        )

    async def check_status(self, transaction_id):
        return StatusResponse(status=self.status, transaction_id=transaction_id, amount=self.status_amount, currency="LYD")

    async def process_refund(self, request):
        self.refunds.append(request)
        return RefundResponse(success=True, status=self.refund_status, refund_id="rf-1", gateway_refund_id="grf-1")


async def all_rows(db, model):
    return (await db.execute(select(model))).scalars().all()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
async def gateway(make_gateway):
    return await make_gateway()


@pytest.fixture
def rate_limiter():
    return PaymentRateLimiter()


@pytest.fixture
def orchestrator(gateway, adapter, rate_limiter):
    manager = PaymentGatewayManager()
    manager.register(gateway.id, adapter)
    return PaymentOrchestrator(manager, PaymentErrorHandler(), rate_limiter)


@pytest.fixture
async def method(make_method, gateway):
    return await make_method(gateway)


class TestCheckout:
    async def test_order_and_pending_payment(self, db, orchestrator, method):
        order, payment = await orchestrator.create_order_with_payment(db, BUYER_ID, CheckoutRequest(
            seller_id=SELLER_ID,
            items=[{"listing_id": "listing-1", "quantity": 10, "unit_price": "100.00"}],
            payment_method_id=method.id,
        ))
        assert order.total_amount == Decimal("950.00")
        assert order.items[0].discount_percentage == 5
        assert payment.status == "pending"
        assert payment.amount == order.total_amount
        assert payment.gateway_id == method.gateway_id

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert outcome.success
        assert outcome.state == SagaState.CAPTURED

    async def test_foreign_payment_method(self, db, orchestrator, make_method, gateway):
        other = await make_method(gateway, user_id="someone-else")
        with pytest.raises(LookupError):
            await orchestrator.create_order_with_payment(db, BUYER_ID, CheckoutRequest(
                seller_id=SELLER_ID,
                items=[{"listing_id": "listing-1", "quantity": 1, "unit_price": "10.00"}],
                payment_method_id=other.id,
            ))


class TestProcessOrderPayment:
    async def test_capture_confirms_order_and_opens_settlement(self, db, orchestrator, adapter, method, make_order):
        order, payment = await make_order(method)

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        assert outcome.success
        assert outcome.status == "completed"
        assert outcome.state == SagaState.CAPTURED
        assert outcome.transaction_id == "tx-100"
        assert outcome.redirect_url == "https://pay.test/tx-100"
        assert order.status == "confirmed"
        assert payment.ip_address == "203.0.113.5"
        assert payment.gateway_transaction_id == "gtx-100"
        [initiation] = adapter.initiations
        assert initiation.reference.startswith("PAY-")
        assert payment.meta["reference"] == initiation.reference
        assert len(await all_rows(db, EscrowAccount)) == 1
        assert len(await all_rows(db, Invoice)) == 1
        [record] = await all_rows(db, ComplianceRecord)
        assert record.compliance_status == "compliant"

    async def test_unsettled_provider_leaves_payment_processing(self, db, orchestrator, adapter, method, make_order):
        order, payment = await make_order(method)
        adapter.status = "pending"

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert outcome.success
        assert outcome.status == "processing"
        assert outcome.state == SagaState.AUTHORIZED
        assert order.status == "pending"

        adapter.status = "completed"
        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert outcome.state == SagaState.CAPTURED
        assert payment.status == "completed"
        assert len(await all_rows(db, EscrowAccount)) == 1

    async def test_provider_cancellation(self, db, orchestrator, adapter, method, make_order):
        order, payment = await make_order(method)
        adapter.status = "cancelled"
        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert outcome.status == "cancelled"

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert outcome.state == SagaState.ENDED

    async def test_unverified_method_is_rejected(self, db, orchestrator, make_method, gateway, make_order):
        order, payment = await make_order(await make_method(gateway, verified=False))

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        assert not outcome.success
        assert outcome.error.type == PaymentErrorType.VALIDATION_ERROR
        assert outcome.status == "pending"
        assert outcome.state == SagaState.CREATED
        assert await all_rows(db, AuditLog) == []

    async def test_high_fraud_risk_is_flagged(self, db, orchestrator, method, make_order):
        for _ in range(3):
            await make_order(method)
        order, payment = await make_order(method, amount=Decimal("20000.00"))

        outcome = await orchestrator.process_order_payment(
            db, order.id, {"ip_address": "192.168.1.10", "user_agent": "pytest"}, BUYER_ID
        )

        assert not outcome.success
        assert outcome.error.type == PaymentErrorType.FRAUD_DETECTED
        assert outcome.error.to_public_dict()["message"] == "Payment flagged for security review"
        assert payment.status == "pending"
        [alert] = await all_rows(db, FraudAlert)
        assert alert.alert_type == "risk_score"
        assert alert.meta["score"] > 70

    async def test_compliance_violation(self, db, orchestrator, make_method, gateway, make_order):
        mobile = await make_method(gateway, type="mobile_money", phone_number="+218912345678")
        order, payment = await make_order(mobile, amount=Decimal("6000.00"))

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        assert outcome.error.type == PaymentErrorType.COMPLIANCE_VIOLATION
        assert payment.status == "pending"
        [record] = await all_rows(db, ComplianceRecord)
        assert record.compliance_status == "non_compliant"
        assert record.details["issues"] == ["Mobile money transactions limited to 5000 LYD"]

    async def test_transient_gateway_error_keeps_payment_retryable(self, db, orchestrator, adapter, method, make_order):
        order, payment = await make_order(method)
        adapter.initiate_error = PaymentError(PaymentErrorType.TIMEOUT_ERROR, "Card Payment API timeout")

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        assert not outcome.success
        assert outcome.error.retryable
        assert outcome.status == "pending"
        assert payment.failure_reason == "Card Payment API timeout"

    async def test_decline_ends_the_attempt(self, db, orchestrator, adapter, method, make_order):
        order, payment = await make_order(method)
        adapter.declined = "Card declined by issuer"

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert outcome.error.type == PaymentErrorType.CARD_DECLINED
        assert outcome.status == "failed"
        [transaction] = await all_rows(db, PaymentTransaction)
        assert transaction.status == "failed"

        adapter.declined = None
        outcome = await orchestrator.retry_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert not outcome.success
        assert outcome.state == SagaState.ENDED
        assert outcome.error.type == PaymentErrorType.VALIDATION_ERROR
        assert payment.status == "failed"
        assert payment.meta["retryCount"] == 0

    async def test_retry_after_transient_error(self, db, orchestrator, adapter, method, make_order):
        order, payment = await make_order(method)
        adapter.initiate_error = PaymentError(PaymentErrorType.TIMEOUT_ERROR, "Card Payment API timeout")
        await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        adapter.initiate_error = None
        outcome = await orchestrator.retry_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert outcome.success
        assert outcome.status == "completed"
        assert payment.meta["retryCount"] == 1

    @pytest.mark.parametrize("payment_status", ["failed", "cancelled"])
    async def test_ended_attempt_is_not_screened_again(
        self, db, orchestrator, rate_limiter, method, make_order, payment_status
    ):
        order, payment = await make_order(method, payment_status=payment_status)

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        assert not outcome.success
        assert outcome.state == SagaState.ENDED
        assert outcome.status == payment_status
        assert outcome.error.user_message == "This payment attempt has ended. Please start a new payment."
        assert await all_rows(db, ComplianceRecord) == []
        assert rate_limiter.get_remaining_attempts(f"payment:{BUYER_ID}") == PaymentRateLimiter.DEFAULT_MAX_ATTEMPTS

    async def test_provider_capture_refunded_when_order_cannot_be_confirmed(
        self, db, orchestrator, adapter, method, make_order
    ):
        order, payment = await make_order(method, status="delivered")

        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        assert not outcome.success
        assert outcome.status == "refunded"
        assert len(adapter.refunds) == 1
        [refund] = await all_rows(db, Refund)
        assert refund.reason == "order_cancelled"
        assert await all_rows(db, EscrowAccount) == []

    async def test_completed_payment_cannot_be_processed_again(self, db, orchestrator, method, make_order):
        order, _ = await make_order(method, payment_status="completed")
        outcome = await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        assert not outcome.success
        assert outcome.error.type == PaymentErrorType.VALIDATION_ERROR
        assert outcome.state == SagaState.CAPTURED

    async def test_rate_limited(self, db, orchestrator, rate_limiter, method, make_order):
        order, _ = await make_order(method)
        for _ in range(PaymentRateLimiter.DEFAULT_MAX_ATTEMPTS):
            rate_limiter.check_rate_limit(f"payment:{BUYER_ID}")
        with pytest.raises(TooManyPaymentAttempts):
            await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

    async def test_other_users_cannot_pay(self, db, orchestrator, method, make_order):
        order, _ = await make_order(method)
        with pytest.raises(LookupError):
            await orchestrator.process_order_payment(db, order.id, REQUEST, "intruder")


class TestCancellation:
    async def test_captured_order_is_refunded(self, db, orchestrator, method, make_order):
        order, payment = await make_order(method)
        await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        outcome = await orchestrator.cancel_order_with_refund(db, order.id, "Changed supplier", SELLER_ID)

        assert outcome.state == SagaState.REFUNDED
        assert outcome.order_status == "cancelled"
        assert outcome.payment_status == "refunded"
        [refund] = await all_rows(db, Refund)
        assert refund.status == "pending"
        assert refund.reason == "order_cancelled"
        assert refund.notes == "Changed supplier"
        [escrow] = await all_rows(db, EscrowAccount)
        assert escrow.status == "refunded"

    async def test_open_payment_is_cancelled(self, db, orchestrator, method, make_order):
        order, _ = await make_order(method)

        outcome = await orchestrator.cancel_order_with_refund(db, order.id, "No longer needed", BUYER_ID)

        assert outcome.state == SagaState.CANCELLED
        assert outcome.payment_status == "cancelled"
        assert await all_rows(db, Refund) == []

        with pytest.raises(ValueError):
            await orchestrator.cancel_order_with_refund(db, order.id, "Again", BUYER_ID)

    async def test_order_with_ended_attempt_can_be_cancelled(self, db, orchestrator, method, make_order):
        order, payment = await make_order(method, payment_status="failed")

        outcome = await orchestrator.cancel_order_with_refund(db, order.id, "Buyer gave up", BUYER_ID)

        assert outcome.state == SagaState.CANCELLED
        assert outcome.order_status == "cancelled"
        assert outcome.payment_status == "failed"

    async def test_unrelated_user(self, db, orchestrator, method, make_order):
        order, _ = await make_order(method)
        with pytest.raises(LookupError):
            await orchestrator.cancel_order_with_refund(db, order.id, "x", "intruder")


class TestRefunds:
    async def test_partial_then_full_refund(self, db, orchestrator, method, make_order):
        order, payment = await make_order(method, amount=Decimal("250.00"))
        await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        first = await orchestrator.request_refund(db, payment.id, Decimal("100.00"), "service_issue", BUYER_ID)
        assert first.status == "completed"
        assert payment.status == "completed"

        with pytest.raises(ValueError):
            await orchestrator.request_refund(db, payment.id, Decimal("200.00"), "service_issue", BUYER_ID)

        await orchestrator.request_refund(db, payment.id, Decimal("150.00"), "service_issue", BUYER_ID)
        assert payment.status == "refunded"
        refund_transactions = [t for t in await all_rows(db, PaymentTransaction) if t.type == "refund"]
        assert len(refund_transactions) == 2

    async def test_one_open_refund_at_a_time(self, db, orchestrator, adapter, method, make_order):
        order, payment = await make_order(method)
        await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)
        adapter.refund_status = "pending"

        await orchestrator.request_refund(db, payment.id, Decimal("10.00"), "customer_request", BUYER_ID)
        with pytest.raises(ValueError, match="already in progress"):
            await orchestrator.request_refund(db, payment.id, Decimal("10.00"), "customer_request", BUYER_ID)

    async def test_uncaptured_payment(self, db, orchestrator, method, make_order):
        _, payment = await make_order(method)
        with pytest.raises(ValueError):
            await orchestrator.request_refund(db, payment.id, Decimal("10.00"), "customer_request", BUYER_ID)
        with pytest.raises(LookupError):
            await orchestrator.request_refund(db, payment.id, Decimal("10.00"), "customer_request", "intruder")


class TestBankTransfer:
    async def test_confirmation_captures_payment(self, db, orchestrator, make_gateway, make_method, make_order):
        bank = await make_gateway(provider="libyana_bank", type="bank_transfer")
        method = await make_method(bank, type="bank_transfer", bank_name="Jumhouria Bank")
        order, payment = await make_order(method, payment_status="processing", transaction_id="ORDER-1-1")

        with pytest.raises(ValueError, match="does not match"):
            await orchestrator.confirm_bank_transfer(db, payment.id, Decimal("1.00"), "ops-1")

        outcome = await orchestrator.confirm_bank_transfer(db, payment.id, payment.amount, "ops-1", "BNK-778")

        assert outcome.success
        assert payment.status == "completed"
        assert payment.gateway_transaction_id == "BNK-778"
        assert order.status == "confirmed"
        assert len(await all_rows(db, EscrowAccount)) == 1
        assert [a.action for a in await all_rows(db, AuditLog)] == ["bank_transfer_confirmed"]

        with pytest.raises(ValueError):
            await orchestrator.confirm_bank_transfer(db, payment.id, payment.amount, "ops-1")

    async def test_card_payments_are_not_bank_transfers(self, db, orchestrator, method, make_order):
        _, payment = await make_order(method, payment_status="processing")
        with pytest.raises(ValueError, match="not a bank transfer"):
            await orchestrator.confirm_bank_transfer(db, payment.id, payment.amount, "ops-1")


class TestReconciliation:
    async def test_matching_payments_are_marked(self, db, orchestrator, method, make_order):
        order, payment = await make_order(method)
        await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        report = await orchestrator.reconcile_payments(db)

        assert (report.checked, report.reconciled, report.discrepancies) == (1, 1, [])
        assert payment.reconciled_at is not None
        assert (await orchestrator.reconcile_payments(db)).checked == 0

    async def test_discrepancies_are_reported(self, db, orchestrator, adapter, method, make_order):
        await make_order(method, payment_status="completed", transaction_id="tx-1")
        _, untracked = await make_order(method, payment_status="completed")
        adapter.status_amount = Decimal("1.00")

        report = await orchestrator.reconcile_payments(db)

        assert report.checked == 2
        assert report.reconciled == 0
        issues = {d["payment_id"]: d["issue"] for d in report.discrepancies}
        assert issues[untracked.id] == "Missing provider transaction id"
        assert len(issues) == 2


class TestPaymentStatus:
    async def test_status_view(self, db, orchestrator, method, make_order):
        order, payment = await make_order(method)
        await orchestrator.process_order_payment(db, order.id, REQUEST, BUYER_ID)

        status = await orchestrator.get_order_payment_status(db, order.id, SELLER_ID)

        assert status["order"].status == "confirmed"
        assert status["payment"].id == payment.id
        assert [t.type for t in status["transactions"]] == ["charge"]
        assert status["refunds"] == []
