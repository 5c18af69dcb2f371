from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import utcnow
from services.pricing_service.cart import to_money
from .models import CurrencyExchangeRate
from .repository import SettlementRepository

logger = structlog.get_logger(__name__)

RATE_VALIDITY = timedelta(hours=24)


@dataclass
class ExchangeRateInput:
    from_currency: str
    to_currency: str
    rate: Decimal
    source: str

    def to_dict(self) -> dict:
        return asdict(self)


def get_libyan_exchange_rates() -> list[ExchangeRateInput]:
    """Central Bank of Libya reference rates (simplified)."""
    return [
        ExchangeRateInput("USD", "LYD", Decimal("4.85"), "central_bank_ly"),
        ExchangeRateInput("EUR", "LYD", Decimal("5.25"), "central_bank_ly"),
        ExchangeRateInput("LYD", "USD", Decimal("0.206"), "central_bank_ly"),
        ExchangeRateInput("LYD", "EUR", Decimal("0.190"), "central_bank_ly"),
    ]


class CurrencyManager:
    @staticmethod
    async def get_exchange_rate(
        db: AsyncSession, from_currency: str, to_currency: str, now: datetime | None = None
    ) -> Decimal | None:
        """Active, unexpired rate for the pair, or None when there is none."""
        if from_currency == to_currency:
            return Decimal("1")
        rate = await SettlementRepository.get_current_rate(db, from_currency, to_currency, now or utcnow())
        return Decimal(rate.rate) if rate else None

    @staticmethod
    async def convert_currency(
        db: AsyncSession, amount: Decimal, from_currency: str, to_currency: str, now: datetime | None = None
    ) -> Decimal | None:
        rate = await CurrencyManager.get_exchange_rate(db, from_currency, to_currency, now)
        if rate is None:
            return None
        return to_money(Decimal(amount) * rate)

    @staticmethod
    async def update_exchange_rates(
        db: AsyncSession, rates: list[ExchangeRateInput], now: datetime | None = None
    ) -> list[CurrencyExchangeRate]:
        """Replace the active rate of every pair. New rates expire after 24 hours."""
        now = now or utcnow()
        created = []
        for item in rates:
            await SettlementRepository.deactivate_rates(db, item.from_currency, item.to_currency, now)
            created.append(await SettlementRepository.add(db, CurrencyExchangeRate(
                from_currency=item.from_currency,
                to_currency=item.to_currency,
                rate=Decimal(item.rate),
                source=item.source,
                effective_date=now,
                expiry_date=now + RATE_VALIDITY,
                is_active=True,
            )))
        await db.commit()
        logger.info("exchange_rates_updated", pairs=len(created))
        return created
