from datetime import datetime
from decimal import Decimal
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, update

from shared.config.database import utcnow
from shared.security.audit import create_audit_log
from .models import (
    UNRESOLVED_REFUND_STATUSES,
    AuditLog,
    Payment,
    PaymentGatewayConfig,
    PaymentMethod,
    PaymentTransaction,
    PaymentWebhook,
    Refund,
)


class PaymentRepository:
    """Writes are flushed, not committed: the calling service owns the transaction."""

    @staticmethod
    async def add(db: AsyncSession, instance):
        db.add(instance)
        await db.flush()
        return instance

    @staticmethod
    async def add_audit_log(
        db: AsyncSession,
        action: str,
        details: dict,
        entity_type: str = "payment",
        entity_id: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        record = create_audit_log(action, details, user_id=user_id, ip_address=ip_address)
        return await PaymentRepository.add(db, AuditLog(
            id=record["id"],
            user_id=record["user_id"],
            action=record["action"],
            entity_type=entity_type,
            entity_id=entity_id,
            details=record["details"],
            checksum=record["checksum"],
            ip_address=record["ip_address"],
            user_agent=user_agent,
            timestamp=record["timestamp"],
        ))

    # --- Payments ---

    @staticmethod
    async def get_payment(db: AsyncSession, payment_id: str):
        result = await db.execute(select(Payment).where(Payment.id == payment_id))
        return result.scalars().first()

    @staticmethod
    async def get_payment_for_order(db: AsyncSession, order_id: str):
        """The primary (most recent) payment of an order."""
        result = await db.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc())
        )
        return result.scalars().first()

    @staticmethod
    async def get_payment_by_transaction_id(db: AsyncSession, transaction_id: str):
        result = await db.execute(
            select(Payment).where(
                (Payment.transaction_id == transaction_id) | (Payment.gateway_transaction_id == transaction_id)
            )
        )
        return result.scalars().first()

    @staticmethod
    async def transition_status(
        db: AsyncSession,
        payment_id: str,
        expected: Iterable[str],
        target: str,
        **values,
    ) -> bool:
        """
        Compare-and-set status write: UPDATE ... WHERE status IN expected.
        Returns False when another writer got there first, which makes
        retries and duplicate webhooks no-ops.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(tuple(expected)))
            .values(status=target, version=Payment.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        # Reload so a Payment already in the session shows the winning write
        await db.execute(
            select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
        )
        return result.rowcount == 1

    @staticmethod
    async def list_user_payments_since(db: AsyncSession, user_id: str, since: datetime):
        """Payment history of a user, oldest first, for velocity checks."""
        result = await db.execute(
            select(Payment)
            .join(PaymentMethod, Payment.payment_method_id == PaymentMethod.id)
            .where(PaymentMethod.user_id == user_id, Payment.created_at >= since)
            .order_by(Payment.created_at)
        )
        return result.scalars().all()

    @staticmethod
    async def list_unreconciled_completed(db: AsyncSession, limit: int = 100):
        result = await db.execute(
            select(Payment)
            .where(Payment.status == "completed", Payment.reconciled_at.is_(None))
            .order_by(Payment.processed_at)
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def list_transactions(db: AsyncSession, payment_id: str):
        result = await db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.payment_id == payment_id)
            .order_by(PaymentTransaction.created_at)
        )
        return result.scalars().all()

    # --- Refunds ---

    @staticmethod
    async def list_refunds(db: AsyncSession, payment_id: str):
        result = await db.execute(select(Refund).where(Refund.payment_id == payment_id).order_by(Refund.created_at))
        return result.scalars().all()

    @staticmethod
    async def get_unresolved_refund(db: AsyncSession, payment_id: str):
        result = await db.execute(
            select(Refund).where(Refund.payment_id == payment_id, Refund.status.in_(UNRESOLVED_REFUND_STATUSES))
        )
        return result.scalars().first()

    @staticmethod
    async def get_refunded_total(db: AsyncSession, payment_id: str) -> Decimal:
        """Sum of refunds that were not rejected."""
        result = await db.execute(
            select(func.coalesce(func.sum(Refund.amount), 0))
            .where(Refund.payment_id == payment_id, Refund.status != "failed")
        )
        return Decimal(str(result.scalar_one()))

    # --- Gateways and payment methods ---

    @staticmethod
    async def list_active_gateways(db: AsyncSession):
        result = await db.execute(select(PaymentGatewayConfig).where(PaymentGatewayConfig.is_active.is_(True)))
        return result.scalars().all()

    @staticmethod
    async def get_gateway(db: AsyncSession, gateway_id: str):
        result = await db.execute(select(PaymentGatewayConfig).where(PaymentGatewayConfig.id == gateway_id))
        return result.scalars().first()

    @staticmethod
    async def get_payment_method(db: AsyncSession, payment_method_id: str):
        result = await db.execute(select(PaymentMethod).where(PaymentMethod.id == payment_method_id))
        return result.scalars().first()

    @staticmethod
    async def list_payment_methods(db: AsyncSession, user_id: str):
        result = await db.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at)
        )
        return result.scalars().all()

    @staticmethod
    async def clear_default_payment_method(db: AsyncSession, user_id: str):
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    # --- Webhooks ---

    @staticmethod
    async def find_webhook(db: AsyncSession, gateway_id: str, webhook_id: str):
        result = await db.execute(
            select(PaymentWebhook).where(
                PaymentWebhook.gateway_id == gateway_id,
                PaymentWebhook.webhook_id == webhook_id,
                PaymentWebhook.processed.is_(True),
            )
        )
        return result.scalars().first()
