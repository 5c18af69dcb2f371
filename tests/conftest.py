import os

# Must be set before the shared modules are imported
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["OTEL_ENABLED"] = "false"

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config.database import build_engine, create_schemas
from shared.security.jwt_handler import create_access_token
from services.order_service.models import Order, OrderItem
from services.payment_service.models import Payment, PaymentGatewayConfig, PaymentMethod
from services.pricing_service import models as pricing_models  # noqa: F401
from services.settlement_service import models as settlement_models  # noqa: F401

BUYER_ID = "buyer-0001"
SELLER_ID = "seller-0001"


@pytest.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schemas(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def buyer_token():
    return create_access_token({"sub": BUYER_ID})


@pytest.fixture
def internal_headers():
    return {"X-Internal-API-Key": os.environ["INTERNAL_API_KEY"]}


@pytest.fixture
def make_gateway(db):
    async def factory(provider="libyana_card", webhook_secret=None, **fields):
        gateway = PaymentGatewayConfig(
            name=fields.pop("name", f"{provider} gateway"),
            provider=provider,
            type=fields.pop("type", "card"),
            api_key="test-api-key",
            base_url="https://gateway.test",
            webhook_secret=webhook_secret,
            supported_currencies=fields.pop("supported_currencies", ["LYD"]),
            configuration=fields.pop("configuration", {}),
            **fields,
        )
        db.add(gateway)
        await db.commit()
        return gateway
    return factory


@pytest.fixture
def make_method(db):
    async def factory(gateway, user_id=BUYER_ID, type="credit_card", verified=True, **fields):
        method = PaymentMethod(
            user_id=user_id,
            gateway=gateway,
            type=type,
            provider=gateway.provider,
            account_number=fields.pop("account_number", "************1111"),
            account_holder_name=fields.pop("account_holder_name", "Test Buyer"),
            is_verified=verified,
            **fields,
        )
        db.add(method)
        await db.commit()
        return method
    return factory


@pytest.fixture
def make_order(db):
    """An order with one item and its pending payment."""
    async def factory(method, amount=Decimal("250.00"), status="pending", payment_status="pending", **payment_fields):
        order = Order(
            buyer_id=method.user_id,
            seller_id=SELLER_ID,
            total_amount=amount,
            currency="LYD",
            status=status,
            items=[OrderItem(listing_id="listing-1", quantity=1, unit_price=amount, total_price=amount)],
        )
        db.add(order)
        await db.flush()
        payment = Payment(
            order_id=order.id,
            payment_method=method,
            gateway=method.gateway,
            amount=amount,
            currency="LYD",
            status=payment_status,
            meta={"retryCount": 0},
            **payment_fields,
        )
        db.add(payment)
        await db.commit()
        return order, payment
    return factory
