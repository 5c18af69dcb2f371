"""
Scheduled payments. Nothing here runs on its own: an external cron calls the
internal endpoints that drive these operations.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import utcnow
from services.pricing_service.cart import to_money
from .models import PaymentSchedule
from .repository import SettlementRepository

logger = structlog.get_logger(__name__)


class PaymentScheduler:
    @staticmethod
    async def schedule_payment(
        db: AsyncSession,
        order_id: str,
        amount: Decimal,
        currency: str,
        scheduled_date: datetime,
        installment_plan_id: str | None = None,
    ) -> PaymentSchedule:
        schedule = await SettlementRepository.add(db, PaymentSchedule(
            order_id=order_id,
            installment_plan_id=installment_plan_id,
            scheduled_date=scheduled_date,
            amount=to_money(amount),
            currency=currency,
        ))
        await db.commit()
        return schedule

    @staticmethod
    async def get_due_payments(db: AsyncSession, now: datetime | None = None):
        return await SettlementRepository.list_due_schedules(db, now or utcnow())

    @staticmethod
    async def process_scheduled_payment(
        db: AsyncSession, schedule_id: str, payment_id: str, now: datetime | None = None
    ) -> bool:
        completed = await SettlementRepository.complete_schedule(db, schedule_id, payment_id, now or utcnow())
        await db.commit()
        return completed

    @staticmethod
    async def send_payment_reminders(db: AsyncSession, now: datetime | None = None) -> int:
        """Flag every scheduled payment due within the reminder horizon. Each
        schedule is reminded once."""
        now = now or utcnow()
        horizon = now + timedelta(days=settings.REMINDER_HORIZON_DAYS)
        schedules = await SettlementRepository.list_due_schedules(db, horizon, reminder_pending=True)
        for schedule in schedules:
            # Delivery (email/SMS) is owned by the notification system
            logger.info(
                "payment_reminder",
                schedule_id=schedule.id,
                order_id=schedule.order_id,
                amount=str(schedule.amount),
                scheduled_date=schedule.scheduled_date.isoformat(),
            )
            schedule.reminder_sent = True
        await db.commit()
        return len(schedules)
