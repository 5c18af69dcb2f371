import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.security.crypto import (
    mask_card_number,
    tokenize_payment_data,
    validate_card_number,
    validate_libyan_mobile_number,
)
from .models import PaymentGatewayConfig, PaymentMethod
from .repository import PaymentRepository
from .schemas import GatewayCreate, PaymentMethodCreate

logger = structlog.get_logger(__name__)


def _mask_account(method_type: str, account_number: str) -> str:
    if method_type == "credit_card":
        return mask_card_number(account_number)
    return "****" + account_number[-4:]


class PaymentService:
    @staticmethod
    async def create_gateway(db: AsyncSession, data: GatewayCreate) -> PaymentGatewayConfig:
        gateway = await PaymentRepository.add(db, PaymentGatewayConfig(**data.model_dump(), is_active=True))
        await db.commit()
        logger.info("payment_gateway_created", gateway_id=gateway.id, provider=gateway.provider)
        return gateway

    @staticmethod
    async def add_payment_method(db: AsyncSession, user_id: str, data: PaymentMethodCreate) -> PaymentMethod:
        gateway = await PaymentRepository.get_gateway(db, data.gateway_id)
        if gateway is None or not gateway.is_active:
            raise LookupError("Payment gateway not found")

        if data.type == "credit_card":
            if not data.account_number or not validate_card_number(data.account_number):
                raise ValueError("Invalid card number")
        elif data.type == "mobile_money":
            if not data.phone_number or not validate_libyan_mobile_number(data.phone_number):
                raise ValueError("Invalid Libyan mobile number")
        elif not data.account_number or not data.bank_name:
            raise ValueError("Bank name and account number are required")

        token = None
        masked = None
        if data.account_number:
            token = tokenize_payment_data({"account_number": data.account_number, "expiry_date": data.expiry_date})
            masked = _mask_account(data.type, data.account_number)

        if data.is_default:
            await PaymentRepository.clear_default_payment_method(db, user_id)

        method = await PaymentRepository.add(db, PaymentMethod(
            user_id=user_id,
            gateway_id=gateway.id,
            type=data.type,
            provider=gateway.provider,
            account_number=masked,
            account_token=token,
            account_holder_name=data.account_holder_name,
            phone_number=data.phone_number,
            bank_name=data.bank_name,
            is_default=data.is_default,
        ))
        await db.commit()
        logger.info("payment_method_added", user_id=user_id, payment_method_id=method.id, type=data.type)
        return method

    @staticmethod
    async def list_payment_methods(db: AsyncSession, user_id: str):
        return await PaymentRepository.list_payment_methods(db, user_id)

    @staticmethod
    async def verify_payment_method(db: AsyncSession, payment_method_id: str) -> PaymentMethod:
        method = await PaymentRepository.get_payment_method(db, payment_method_id)
        if method is None:
            raise LookupError("Payment method not found")
        method.is_verified = True
        await db.commit()
        return method

    @staticmethod
    async def deactivate_payment_method(db: AsyncSession, user_id: str, payment_method_id: str) -> None:
        method = await PaymentRepository.get_payment_method(db, payment_method_id)
        if method is None or method.user_id != user_id or not method.is_active:
            raise LookupError("Payment method not found")
        method.is_active = False
        method.is_default = False
        await db.commit()

    @staticmethod
    async def get_user_payment(db: AsyncSession, user_id: str, payment_id: str):
        """A payment visible to its payer only."""
        payment = await PaymentRepository.get_payment(db, payment_id)
        if payment is None or payment.payment_method.user_id != user_id:
            raise LookupError("Payment not found")
        return payment

    @staticmethod
    async def list_transactions(db: AsyncSession, user_id: str, payment_id: str):
        payment = await PaymentService.get_user_payment(db, user_id, payment_id)
        return await PaymentRepository.list_transactions(db, payment.id)

    @staticmethod
    async def list_refunds(db: AsyncSession, user_id: str, payment_id: str):
        payment = await PaymentService.get_user_payment(db, user_id, payment_id)
        return await PaymentRepository.list_refunds(db, payment.id)
