from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    UNPAID_INSTALLMENT_STATUSES,
    CurrencyExchangeRate,
    EscrowAccount,
    InstallmentPayment,
    InstallmentPlan,
    Invoice,
    PaymentSchedule,
)


class SettlementRepository:
    """Writes are flushed, not committed: the calling manager owns the transaction."""

    @staticmethod
    async def add(db: AsyncSession, instance):
        db.add(instance)
        await db.flush()
        return instance

    # --- Escrow ---

    @staticmethod
    async def get_escrow(db: AsyncSession, escrow_id: str, for_update: bool = False):
        stmt = select(EscrowAccount).where(EscrowAccount.id == escrow_id)
        if for_update:
            # Serializes concurrent releases of the same account
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def get_escrow_for_order(db: AsyncSession, order_id: str):
        result = await db.execute(
            select(EscrowAccount).where(EscrowAccount.order_id == order_id).order_by(EscrowAccount.created_at.desc())
        )
        return result.scalars().first()

    @staticmethod
    async def list_escrows_due_for_release(db: AsyncSession, now: datetime):
        result = await db.execute(
            select(EscrowAccount.id).where(
                EscrowAccount.status == "holding",
                EscrowAccount.held_amount > 0,
                EscrowAccount.auto_release_date <= now,
            )
        )
        return result.scalars().all()

    # --- Installments ---

    @staticmethod
    async def get_plan(db: AsyncSession, plan_id: str, for_update: bool = False):
        stmt = select(InstallmentPlan).where(InstallmentPlan.id == plan_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def next_unpaid_installment(db: AsyncSession, plan_id: str):
        result = await db.execute(
            select(InstallmentPayment)
            .where(
                InstallmentPayment.installment_plan_id == plan_id,
                InstallmentPayment.status.in_(UNPAID_INSTALLMENT_STATUSES),
            )
            .order_by(InstallmentPayment.installment_number)
            .limit(1)
        )
        return result.scalars().first()

    @staticmethod
    async def mark_overdue_installments(db: AsyncSession, cutoff: datetime, now: datetime) -> int:
        result = await db.execute(
            update(InstallmentPayment)
            .where(InstallmentPayment.status == "pending", InstallmentPayment.due_date < cutoff)
            .values(status="overdue", updated_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount

    # --- Exchange rates ---

    @staticmethod
    async def get_current_rate(db: AsyncSession, from_currency: str, to_currency: str, now: datetime):
        result = await db.execute(
            select(CurrencyExchangeRate)
            .where(
                CurrencyExchangeRate.from_currency == from_currency,
                CurrencyExchangeRate.to_currency == to_currency,
                CurrencyExchangeRate.is_active.is_(True),
                CurrencyExchangeRate.effective_date <= now,
                (CurrencyExchangeRate.expiry_date.is_(None)) | (CurrencyExchangeRate.expiry_date > now),
            )
            .order_by(CurrencyExchangeRate.effective_date.desc())
            .limit(1)
        )
        return result.scalars().first()

    @staticmethod
    async def deactivate_rates(db: AsyncSession, from_currency: str, to_currency: str, now: datetime):
        await db.execute(
            update(CurrencyExchangeRate)
            .where(
                CurrencyExchangeRate.from_currency == from_currency,
                CurrencyExchangeRate.to_currency == to_currency,
                CurrencyExchangeRate.is_active.is_(True),
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )

    # --- Invoices ---

    @staticmethod
    async def get_invoice(db: AsyncSession, invoice_id: str):
        result = await db.execute(select(Invoice).where(Invoice.id == invoice_id))
        return result.scalars().first()

    @staticmethod
    async def invoice_number_exists(db: AsyncSession, invoice_number: str) -> bool:
        result = await db.execute(select(Invoice.id).where(Invoice.invoice_number == invoice_number))
        return result.first() is not None

    @staticmethod
    async def mark_invoice_paid(db: AsyncSession, invoice_id: str, payment_id: str, now: datetime) -> bool:
        result = await db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status.in_(("draft", "sent", "overdue")))
            .values(status="paid", payment_id=payment_id, paid_date=now, updated_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount == 1

    # --- Schedules ---

    @staticmethod
    async def list_due_schedules(db: AsyncSession, until: datetime, reminder_pending: bool = False):
        stmt = select(PaymentSchedule).where(
            PaymentSchedule.status == "scheduled",
            PaymentSchedule.scheduled_date <= until,
        )
        if reminder_pending:
            stmt = stmt.where(PaymentSchedule.reminder_sent.is_(False))
        result = await db.execute(stmt.order_by(PaymentSchedule.scheduled_date))
        return result.scalars().all()

    @staticmethod
    async def complete_schedule(db: AsyncSession, schedule_id: str, payment_id: str, now: datetime) -> bool:
        result = await db.execute(
            update(PaymentSchedule)
            .where(PaymentSchedule.id == schedule_id, PaymentSchedule.status.in_(("scheduled", "processing")))
            .values(status="completed", payment_id=payment_id, updated_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount == 1

    @staticmethod
    async def complete_installment_schedule(
        db: AsyncSession, plan_id: str, scheduled_date: datetime, payment_id: str, now: datetime
    ):
        await db.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.installment_plan_id == plan_id,
                PaymentSchedule.scheduled_date == scheduled_date,
                PaymentSchedule.status == "scheduled",
            )
            .values(status="completed", payment_id=payment_id, updated_at=now)
            .execution_options(synchronize_session="evaluate")
        )
