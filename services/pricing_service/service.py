from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .cache import PricingCache, generate_icd11_key
from .calculator import PricingCalculator
from .cart import CartLine, CartTotals, calculate_cart
from .icd11 import COMMON_ICD11_CODES, ICD11Category, ICD11Client, get_complexity_score, get_service_category
from .models import PricingCalculation
from .oracle import LLMPricingOracle
from .repository import PricingRepository
from .schemas import BulkPricingItem, CartRequest, ICD11CategoryResponse, PricingInput, PricingResult

logger = structlog.get_logger(__name__)


def _describe(category: ICD11Category) -> ICD11CategoryResponse:
    return ICD11CategoryResponse(
        **category.to_dict(),
        service_category=get_service_category(category.code) if category.code else None,
        complexity_score=get_complexity_score(category.code) if category.code else None,
    )


class PricingService:
    def __init__(self, calculator: PricingCalculator | None = None, icd11_client: ICD11Client | None = None):
        self.calculator = calculator or PricingCalculator(oracle=LLMPricingOracle())
        self.icd11_client = icd11_client or ICD11Client()

    async def calculate(self, db: AsyncSession, data: PricingInput, user_id: str | None = None) -> PricingResult:
        outcome = await self.calculator.evaluate(db, data)

        # Cached answers were already recorded when they were computed
        if user_id and not outcome.from_cache:
            await self._record(db, data, outcome.result, user_id)

        await db.commit()
        return outcome.result

    async def calculate_bulk(self, db: AsyncSession, services: list[BulkPricingItem], user_id: str | None = None):
        results = await self.calculator.calculate_bulk_pricing(db, services)
        await db.commit()
        logger.info("bulk_pricing_calculated", count=len(results), user_id=user_id)
        return results

    @staticmethod
    def calculate_cart(data: CartRequest) -> CartTotals:
        lines = [
            CartLine(item.listing_id, item.quantity, item.unit_price, item.total_price)
            for item in data.items
        ]
        return calculate_cart(lines, data.currency)

    @staticmethod
    async def list_calculations(db: AsyncSession, user_id: str):
        return await PricingRepository.list_calculations(db, user_id)

    async def search_icd11(self, query: str, limit: int = 20) -> list[ICD11CategoryResponse]:
        return [_describe(category) for category in await self.icd11_client.search_codes(query, limit)]

    async def get_icd11_category(self, db: AsyncSession, code: str) -> ICD11CategoryResponse | None:
        """Local table first, then the cache, then the WHO API."""
        if code in COMMON_ICD11_CODES:
            return _describe(COMMON_ICD11_CODES[code])

        key = generate_icd11_key(code)
        cached = await PricingCache.get(db, key)
        if cached is not None:
            return _describe(ICD11Category(**cached))

        category = await self.icd11_client.get_category_by_code(code)
        if category is None:
            return None

        await PricingCache.set(db, key, category.to_dict())
        await db.commit()
        return _describe(category)

    @staticmethod
    async def cleanup_expired(db: AsyncSession) -> int:
        removed = await PricingCache.cleanup(db)
        await db.commit()
        return removed

    @staticmethod
    async def _record(db: AsyncSession, data: PricingInput, result: PricingResult, user_id: str):
        calculation = PricingCalculation(
            user_id=user_id,
            icd11_code=data.icd11_code,
            service_name=data.service_name,
            service_description=data.service_description,
            quantity=data.quantity,
            currency=data.currency,
            region=data.region,
            base_price=Decimal(str(round(result.base_price, 2))),
            ai_suggested_price=Decimal(str(round(result.ai_suggested_price, 2))),
            market_average_price=Decimal(str(round(result.market_average_price, 2))),
            complexity_score=Decimal(str(result.complexity_score)),
            discount_percentage=Decimal(str(result.discount_percentage)),
            final_price=Decimal(str(round(result.final_price, 2))),
            health_units=Decimal(str(round(result.health_units, 4))),
            suggestion_source=result.suggestion_source,
            calculation_data={
                "input": data.model_dump(mode="json"),
                "result": result.model_dump(mode="json"),
            },
        )
        await PricingRepository.add_calculation(db, calculation)
