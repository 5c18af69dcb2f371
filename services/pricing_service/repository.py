from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from .models import PricingCalculation


class PricingRepository:
    @staticmethod
    async def add_calculation(db: AsyncSession, calculation: PricingCalculation):
        db.add(calculation)
        await db.flush()
        return calculation

    @staticmethod
    async def list_calculations(db: AsyncSession, user_id: str, limit: int = 50):
        result = await db.execute(
            select(PricingCalculation)
            .where(PricingCalculation.user_id == user_id)
            .order_by(PricingCalculation.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()
