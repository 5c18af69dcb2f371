"""
Escrow ledger. Funds stay held for the seller until they are released, in
one or several steps, or until the holding period ends.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import utcnow
from services.pricing_service.cart import to_money
from .models import EscrowAccount
from .repository import SettlementRepository

logger = structlog.get_logger(__name__)

AUTO_RELEASE_REASON = "Auto-release after holding period"


class EscrowManager:
    @staticmethod
    async def create_escrow_account(
        db: AsyncSession,
        order_id: str,
        buyer_id: str,
        seller_id: str,
        total_amount: Decimal,
        currency: str,
        now: datetime | None = None,
        commit: bool = True,
    ) -> EscrowAccount:
        now = now or utcnow()
        total = to_money(total_amount)
        escrow = await SettlementRepository.add(db, EscrowAccount(
            order_id=order_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            total_amount=total,
            currency=currency,
            held_amount=total,
            released_amount=Decimal("0.00"),
            status="holding",
            auto_release_date=now + timedelta(days=settings.ESCROW_HOLD_DAYS),
        ))
        if commit:
            await db.commit()
        logger.info("escrow_created", escrow_id=escrow.id, order_id=order_id, amount=str(total))
        return escrow

    @staticmethod
    def _release(escrow: EscrowAccount, amount: Decimal, reason: str) -> bool:
        held = Decimal(escrow.held_amount)
        if escrow.status != "holding" or amount <= 0 or amount > held:
            return False

        escrow.held_amount = held - amount
        escrow.released_amount = Decimal(escrow.released_amount or 0) + amount
        escrow.status = "released" if escrow.held_amount == 0 else "holding"
        escrow.updated_at = utcnow()
        logger.info(
            "escrow_released",
            escrow_id=escrow.id,
            amount=str(amount),
            held=str(escrow.held_amount),
            reason=reason,
        )
        return True

    @staticmethod
    async def release_escrow_funds(db: AsyncSession, escrow_id: str, amount: Decimal, reason: str) -> bool:
        """Move `amount` from held to released. Rejected (False, nothing
        changed) when the account is missing, not holding, or short."""
        escrow = await SettlementRepository.get_escrow(db, escrow_id, for_update=True)
        if escrow is None:
            return False

        released = EscrowManager._release(escrow, to_money(amount), reason)
        if released:
            await db.commit()
        else:
            await db.rollback()
        return released

    @staticmethod
    async def check_escrow_status(db: AsyncSession, escrow_id: str, now: datetime | None = None):
        """Current account, releasing whatever is still held once the
        auto-release date has passed."""
        now = now or utcnow()
        escrow = await SettlementRepository.get_escrow(db, escrow_id, for_update=True)
        if escrow is None:
            return None

        if (
            escrow.auto_release_date
            and now >= escrow.auto_release_date
            and Decimal(escrow.held_amount) > 0
        ):
            EscrowManager._release(escrow, Decimal(escrow.held_amount), AUTO_RELEASE_REASON)
        await db.commit()
        return escrow

    @staticmethod
    async def auto_release_due(db: AsyncSession, now: datetime | None = None) -> int:
        now = now or utcnow()
        released = 0
        for escrow_id in await SettlementRepository.list_escrows_due_for_release(db, now):
            escrow = await EscrowManager.check_escrow_status(db, escrow_id, now)
            if escrow is not None and escrow.status == "released":
                released += 1
        return released

    @staticmethod
    async def refund_escrow(db: AsyncSession, order_id: str) -> EscrowAccount | None:
        """Close the holding account of a cancelled order. Amounts are left
        as they are so the ledger still balances. Does not commit."""
        escrow = await SettlementRepository.get_escrow_for_order(db, order_id)
        if escrow is None or escrow.status != "holding":
            return None
        escrow = await SettlementRepository.get_escrow(db, escrow.id, for_update=True)
        escrow.status = "refunded"
        logger.info("escrow_refunded", escrow_id=escrow.id, order_id=order_id, held=str(escrow.held_amount))
        return escrow
