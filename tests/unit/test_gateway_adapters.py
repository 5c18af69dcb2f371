import json
from decimal import Decimal

import httpx
import pytest

from services.payment_service.adapters import (
    BankTransferAdapter,
    CardAdapter,
    CustomerInfo,
    GatewayConfig,
    InitiationRequest,
    MobileMoneyAdapter,
    RefundRequest,
)
from services.payment_service.errors import PaymentError, PaymentErrorType
from services.payment_service.gateway_manager import PaymentGatewayManager
from services.pricing_service.icd11 import ICD11Client, ICD11Error

pytestmark = pytest.mark.unit


def card_config(**overrides) -> GatewayConfig:
    fields = {
        "id": "gw-card",
        "name": "Card",
        "provider": "libyana_card",
        "type": "card",
        "api_key": "key-123",
        "base_url": "https://card.test/",
        "configuration": {"merchantId": "M-77"},
    }
    fields.update(overrides)
    return GatewayConfig(**fields)


def initiation_request() -> InitiationRequest:
    return InitiationRequest(
        amount=Decimal("250.00"),
        currency="LYD",
        order_id="order-1",
        payment_method_id="pm-1",
        customer=CustomerInfo(name="Test Buyer", email="buyer@example.ly", phone="+218912345678"),
        reference="PAY-LQ2X9K-1A2B3C4D",
    )


class TestCardAdapter:
    async def test_initiate_returns_redirect(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"transactionId": "tx-1", "redirectUrl": "https://card.test/pay/tx-1"})

        adapter = CardAdapter(card_config(), transport=httpx.MockTransport(handler))
        response = await adapter.initiate(initiation_request())

        assert response.success
        assert response.transaction_id == "tx-1"
        assert response.redirect_url == "https://card.test/pay/tx-1"
        assert seen["url"] == "https://card.test/payments/initiate"
        assert seen["headers"]["Authorization"] == "Bearer key-123"
        assert seen["headers"]["X-Merchant-ID"] == "M-77"
        assert seen["body"]["amount"] == 250.0
        assert seen["body"]["merchantReference"] == "PAY-LQ2X9K-1A2B3C4D"
        assert seen["body"]["webhookUrl"].endswith("/payments/webhook/gw-card")

    async def test_missing_transaction_id_is_a_rejection(self):
        adapter = CardAdapter(
            card_config(),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"error": "Card declined"})),
        )
        response = await adapter.initiate(initiation_request())
        assert not response.success
        assert response.error == "Card declined"

    @pytest.mark.parametrize("raw, expected", [
        ("completed", "completed"),
        ("initiated", "pending"),
        ("refunded", "refunded"),
        ("on_hold", "pending"),
    ])
    async def test_status_is_normalized(self, raw, expected):
        body = {"status": raw, "amount": "250.00", "currency": "LYD", "processedAt": "2026-03-01T10:00:00Z"}
        adapter = CardAdapter(card_config(), transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
        status = await adapter.check_status("tx-1")
        assert status.status == expected
        assert status.amount == Decimal("250.00")
        assert status.processed_at.tzinfo is None

    async def test_http_error_is_gateway_error(self):
        adapter = CardAdapter(card_config(), transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        with pytest.raises(PaymentError) as exc:
            await adapter.check_status("tx-1")
        assert exc.value.type == PaymentErrorType.GATEWAY_ERROR
        assert exc.value.details["status_code"] == 503

    async def test_timeout_is_timeout_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        adapter = CardAdapter(card_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(PaymentError) as exc:
            await adapter.initiate(initiation_request())
        assert exc.value.type == PaymentErrorType.TIMEOUT_ERROR
        assert exc.value.retryable

    async def test_connection_failure_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        adapter = CardAdapter(card_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(PaymentError) as exc:
            await adapter.initiate(initiation_request())
        assert exc.value.type == PaymentErrorType.NETWORK_ERROR

    async def test_refund(self):
        def handler(request):
            assert json.loads(request.content)["originalTransactionId"] == "tx-1"
            return httpx.Response(200, json={"refundId": "rf-1", "gatewayRefundId": "g-rf-1"})

        adapter = CardAdapter(card_config(), transport=httpx.MockTransport(handler))
        response = await adapter.process_refund(RefundRequest("tx-1", Decimal("20.00"), "customer_request"))
        assert response.success
        assert response.status == "pending"
        assert response.gateway_refund_id == "g-rf-1"


class TestMobileMoneyAdapter:
    async def test_initiate_returns_qr_code(self):
        def handler(request):
            assert request.headers["X-API-Secret"] == "shh"
            assert json.loads(request.content)["phoneNumber"] == "+218912345678"
            return httpx.Response(200, json={"transactionId": "mm-1", "qrCode": "data:image/png;base64,AAA"})

        config = card_config(id="gw-mm", provider="libyana_mobile", type="mobile_money", api_secret="shh")
        adapter = MobileMoneyAdapter(config, transport=httpx.MockTransport(handler))
        response = await adapter.initiate(initiation_request())
        assert response.qr_code == "data:image/png;base64,AAA"

    async def test_upper_case_vocabulary(self):
        adapter = MobileMoneyAdapter(
            card_config(provider="libyana_mobile"),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "COMPLETED"})),
        )
        assert (await adapter.check_status("mm-1")).status == "completed"


class TestBankTransferAdapter:
    async def test_initiate_returns_reference_and_instructions(self):
        adapter = BankTransferAdapter(card_config(provider="libyana_bank"), clock=lambda: 1_700_000_000.5)
        response = await adapter.initiate(initiation_request())
        assert response.transaction_id == "ORDER-order-1-1700000000500"
        assert "reference=ORDER-order-1-1700000000500" in response.redirect_url
        assert "amount=250.00" in response.redirect_url

    async def test_refund_stays_pending(self):
        adapter = BankTransferAdapter(card_config(provider="libyana_bank"), clock=lambda: 1.0)
        response = await adapter.process_refund(RefundRequest("ref", Decimal("10"), "customer_request"))
        assert response.success
        assert response.status == "pending"
        assert response.refund_id == "REFUND-1000"


class TestGatewayManager:
    def test_register_and_get(self):
        manager = PaymentGatewayManager()
        adapter = CardAdapter(card_config())
        manager.register("gw-card", adapter)
        assert manager.get_gateway("gw-card") is adapter
        assert manager.get_gateway("missing") is None

    def test_unknown_provider_is_skipped(self):
        assert PaymentGatewayManager()._build(card_config(provider="paypal")) is None


class TestICD11Client:
    async def test_search_maps_entities(self):
        body = {"destinationEntities": [
            {"id": "http://id.who.int/icd/entity/1", "theCode": "BA00", "title": {"@value": "Cold"}},
        ]}

        def handler(request):
            assert request.url.params["q"] == "cold"
            assert request.headers["API-Version"] == "v2"
            return httpx.Response(200, json=body)

        client = ICD11Client(base_url="https://icd.test", transport=httpx.MockTransport(handler))
        [category] = await client.search_codes("cold")
        assert category.code == "BA00"
        assert category.title == "Cold"

    async def test_unknown_code_is_none(self):
        client = ICD11Client(base_url="https://icd.test", transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        assert await client.get_category_by_code("ZZ99") is None
        assert not await client.validate_code("ZZ99")

    async def test_server_error_raises(self):
        client = ICD11Client(base_url="https://icd.test", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with pytest.raises(ICD11Error):
            await client.search_codes("cold")
        assert not await client.validate_code("BA00")
