import secrets
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import utcnow
from services.pricing_service.cart import to_money
from .models import Invoice
from .repository import SettlementRepository

logger = structlog.get_logger(__name__)

NUMBER_ATTEMPTS = 10


def generate_invoice_number(now: datetime) -> str:
    return f"INV-{now.year}{now.month:02d}-{secrets.randbelow(10000):04d}"


class InvoiceManager:
    @staticmethod
    async def generate_invoice(
        db: AsyncSession,
        order_id: str,
        buyer_id: str,
        seller_id: str,
        subtotal: Decimal,
        tax_amount: Decimal = Decimal("0"),
        discount_amount: Decimal = Decimal("0"),
        currency: str = settings.HOME_CURRENCY,
        now: datetime | None = None,
        commit: bool = True,
    ) -> Invoice:
        now = now or utcnow()
        for _ in range(NUMBER_ATTEMPTS):
            invoice_number = generate_invoice_number(now)
            if not await SettlementRepository.invoice_number_exists(db, invoice_number):
                break
        else:
            raise RuntimeError("Could not allocate a free invoice number")

        subtotal, tax_amount, discount_amount = to_money(subtotal), to_money(tax_amount), to_money(discount_amount)
        invoice = await SettlementRepository.add(db, Invoice(
            order_id=order_id,
            invoice_number=invoice_number,
            buyer_id=buyer_id,
            seller_id=seller_id,
            subtotal=subtotal,
            tax_amount=tax_amount,
            discount_amount=discount_amount,
            total_amount=subtotal + tax_amount - discount_amount,
            currency=currency,
            issue_date=now,
            due_date=now + timedelta(days=settings.INVOICE_DUE_DAYS),
        ))
        if commit:
            await db.commit()
        logger.info("invoice_generated", invoice_id=invoice.id, invoice_number=invoice_number, order_id=order_id)
        return invoice

    @staticmethod
    async def mark_invoice_as_paid(db: AsyncSession, invoice_id: str, payment_id: str, now: datetime | None = None) -> bool:
        """False when the invoice does not exist or is already paid or cancelled."""
        paid = await SettlementRepository.mark_invoice_paid(db, invoice_id, payment_id, now or utcnow())
        await db.commit()
        return paid

    @staticmethod
    async def get_invoice_details(db: AsyncSession, invoice_id: str):
        return await SettlementRepository.get_invoice(db, invoice_id)
