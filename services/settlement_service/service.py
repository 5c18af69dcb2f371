from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from .escrow import EscrowManager
from .invoices import InvoiceManager
from .repository import SettlementRepository


class SettlementService:
    @staticmethod
    async def open_for_order(db: AsyncSession, order, now: datetime | None = None):
        """
        Fund escrow and issue the invoice of an order whose payment was
        captured. Does not commit. Returns the existing escrow when the order
        was already settled.
        """
        existing = await SettlementRepository.get_escrow_for_order(db, order.id)
        if existing is not None:
            return existing, None

        escrow = await EscrowManager.create_escrow_account(
            db, order.id, order.buyer_id, order.seller_id, order.total_amount, order.currency, now=now, commit=False
        )
        subtotal = sum((Decimal(item.unit_price) * item.quantity for item in order.items), Decimal("0"))
        invoice = await InvoiceManager.generate_invoice(
            db,
            order.id,
            order.buyer_id,
            order.seller_id,
            subtotal,
            discount_amount=subtotal - Decimal(order.total_amount),
            currency=order.currency,
            now=now,
            commit=False,
        )
        return escrow, invoice
