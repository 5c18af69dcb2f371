"""
TTL cache for pricing results, market data and ICD-11 lookups, stored in the
pricing schema so every instance sees the same entries.
"""
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import utcnow
from .models import CachedPricingData

logger = structlog.get_logger(__name__)


def generate_pricing_key(
    service_name: str,
    icd11_code: str | None,
    quantity: int,
    region: str,
    currency: str,
) -> str:
    return f"pricing:{service_name}:{icd11_code or 'none'}:{quantity}:{region}:{currency}"


def generate_market_key(service_id: str | None, icd11_code: str | None, region: str, currency: str) -> str:
    return f"market:{service_id or 'none'}:{icd11_code or 'none'}:{region}:{currency}"


def generate_icd11_key(code: str) -> str:
    return f"icd11:{code}"


class PricingCache:
    @staticmethod
    async def get(db: AsyncSession, key: str, now: datetime | None = None) -> Any | None:
        result = await db.execute(select(CachedPricingData).where(CachedPricingData.cache_key == key))
        entry = result.scalars().first()
        if entry is None:
            return None

        if (now or utcnow()) > entry.expires_at:
            await PricingCache.delete(db, key)
            return None

        return entry.data

    @staticmethod
    async def set(
        db: AsyncSession,
        key: str,
        data: Any,
        ttl_seconds: int = settings.PRICING_CACHE_TTL_SECONDS,
        now: datetime | None = None,
    ) -> None:
        expires_at = (now or utcnow()) + timedelta(seconds=ttl_seconds)
        result = await db.execute(select(CachedPricingData).where(CachedPricingData.cache_key == key))
        entry = result.scalars().first()

        if entry:
            entry.data = data
            entry.expires_at = expires_at
        else:
            db.add(CachedPricingData(cache_key=key, data=data, expires_at=expires_at))
        await db.flush()

    @staticmethod
    async def delete(db: AsyncSession, key: str) -> None:
        await db.execute(delete(CachedPricingData).where(CachedPricingData.cache_key == key))
        await db.flush()

    @staticmethod
    async def cleanup(db: AsyncSession, now: datetime | None = None) -> int:
        """Remove every expired entry. Returns the number of rows deleted."""
        result = await db.execute(
            delete(CachedPricingData).where(CachedPricingData.expires_at < (now or utcnow()))
        )
        await db.flush()
        logger.info("pricing_cache_cleanup", removed=result.rowcount)
        return result.rowcount
