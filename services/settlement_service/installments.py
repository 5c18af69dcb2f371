import calendar
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import utcnow
from services.pricing_service.cart import CENTS, to_money
from .models import InstallmentPayment, InstallmentPlan, PaymentSchedule
from .repository import SettlementRepository

logger = structlog.get_logger(__name__)

FREQUENCIES = ("weekly", "monthly", "quarterly")


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    # Jan 31 + 1 month lands on the last day of February
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_payment_date(from_date: datetime, frequency: str) -> datetime:
    if frequency == "weekly":
        return from_date + timedelta(days=7)
    if frequency == "monthly":
        return add_months(from_date, 1)
    if frequency == "quarterly":
        return add_months(from_date, 3)
    raise ValueError(f"Unsupported installment frequency: {frequency}")


def split_amount(total: Decimal, parts: int) -> list[Decimal]:
    """Equal shares rounded down to the cent, remainder on the last share."""
    share = (total / parts).quantize(CENTS, rounding=ROUND_DOWN)
    return [share] * (parts - 1) + [total - share * (parts - 1)]


class InstallmentManager:
    @staticmethod
    async def create_installment_plan(
        db: AsyncSession,
        order_id: str,
        total_amount: Decimal,
        currency: str,
        number_of_installments: int,
        frequency: str = "monthly",
        interest_rate: Decimal = Decimal("0"),
        now: datetime | None = None,
    ) -> InstallmentPlan:
        """
        Split an order total into scheduled installments. Interest is simple
        and applied once to the total. The first installment is due
        immediately and every later one a frequency period after the previous.
        """
        if number_of_installments < 1:
            raise ValueError("An installment plan needs at least one installment")
        if frequency not in FREQUENCIES:
            raise ValueError(f"Unsupported installment frequency: {frequency}")

        now = now or utcnow()
        total = to_money(total_amount)
        total_with_interest = to_money(total * (1 + Decimal(interest_rate) / 100))
        amounts = split_amount(total_with_interest, number_of_installments)

        plan = InstallmentPlan(
            order_id=order_id,
            total_amount=total,
            currency=currency,
            number_of_installments=number_of_installments,
            installment_amount=amounts[0],
            frequency=frequency,
            interest_rate=Decimal(interest_rate),
            next_payment_date=now,
        )
        due_date = now
        for number, amount in enumerate(amounts, start=1):
            plan.installments.append(InstallmentPayment(
                installment_number=number,
                amount=amount,
                currency=currency,
                due_date=due_date,
            ))
            due_date = calculate_next_payment_date(due_date, frequency)

        await SettlementRepository.add(db, plan)
        for installment in plan.installments:
            db.add(PaymentSchedule(
                order_id=order_id,
                installment_plan_id=plan.id,
                scheduled_date=installment.due_date,
                amount=installment.amount,
                currency=currency,
            ))
        await db.commit()

        logger.info(
            "installment_plan_created",
            plan_id=plan.id,
            order_id=order_id,
            installments=number_of_installments,
            total=str(total_with_interest),
        )
        return plan

    @staticmethod
    async def process_installment_payment(
        db: AsyncSession, plan_id: str, payment_id: str, now: datetime | None = None
    ) -> bool:
        """Mark the next unpaid installment as paid. The plan completes when
        nothing is left to pay."""
        now = now or utcnow()
        plan = await SettlementRepository.get_plan(db, plan_id, for_update=True)
        if plan is None or plan.status != "active":
            await db.rollback()
            return False

        installment = await SettlementRepository.next_unpaid_installment(db, plan_id)
        if installment is None:
            await db.rollback()
            return False

        installment.status = "paid"
        installment.payment_id = payment_id
        installment.paid_date = now
        await SettlementRepository.complete_installment_schedule(db, plan_id, installment.due_date, payment_id, now)
        await db.flush()

        upcoming = await SettlementRepository.next_unpaid_installment(db, plan_id)
        if upcoming is None:
            plan.status = "completed"
            plan.next_payment_date = None
        else:
            plan.next_payment_date = upcoming.due_date
        await db.commit()

        logger.info(
            "installment_paid",
            plan_id=plan_id,
            installment_number=installment.installment_number,
            plan_status=plan.status,
        )
        return True

    @staticmethod
    async def get_plan(db: AsyncSession, plan_id: str):
        return await SettlementRepository.get_plan(db, plan_id)

    @staticmethod
    async def mark_overdue_installments(db: AsyncSession, now: datetime | None = None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(days=settings.INSTALLMENT_GRACE_DAYS)
        count = await SettlementRepository.mark_overdue_installments(db, cutoff, now)
        await db.commit()
        if count:
            logger.info("installments_marked_overdue", count=count)
        return count
