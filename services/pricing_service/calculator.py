from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.observability import hm_pricing_suggestions_total
from .cache import PricingCache, generate_pricing_key
from .icd11 import get_complexity_score
from .oracle import PricingOracle, get_price_suggestion
from .schemas import BulkPricingItem, BulkPricingResult, MarketData, PricingInput, PricingResult

logger = structlog.get_logger(__name__)

# Health unit conversion rates per region (LYD to health units). Also used as
# the regional price multiplier.
HEALTH_UNIT_RATES = {
    "Libya": 1.0,
    "Tunisia": 0.8,
    "Egypt": 0.6,
    "Algeria": 0.7,
    "Morocco": 0.5,
    "Saudi Arabia": 0.4,
    "UAE": 0.3,
    "Qatar": 0.35,
    "Kuwait": 0.4,
    "Bahrain": 0.45,
}

MINIMUM_BASE_PRICE = 100.0

# (minimum quantity, discount percent), highest tier first
BULK_DISCOUNT_TIERS = [(100, 25), (50, 15), (20, 10), (10, 5)]

BATCH_DISCOUNT_THRESHOLD = 5
BATCH_DISCOUNT_PERCENT = 5

MARKET_INSIGHTS = [
    "Market demand is steady for this service type",
    "Competitive pricing in the region",
    "Similar services priced between 80-180% of base rate",
]


def get_bulk_discount(quantity: int) -> int:
    for minimum, percent in BULK_DISCOUNT_TIERS:
        if quantity >= minimum:
            return percent
    return 0


def get_region_rate(region: str) -> float:
    # Unknown regions degrade to the base rate instead of failing
    return HEALTH_UNIT_RATES.get(region, 1.0)


def calculate_base_price(service_name: str, complexity_score: float, region: str) -> float:
    price = MINIMUM_BASE_PRICE * complexity_score

    name = service_name.lower()
    if "surgery" in name:
        price *= 5
    elif "consultation" in name:
        price *= 1.5
    elif "test" in name or "scan" in name:
        price *= 2

    return round(price * get_region_rate(region), 2)


def get_market_data(data: PricingInput) -> MarketData:
    """Synthetic market data derived from the medium-complexity base price.
    There is no market data feed yet."""
    base = calculate_base_price(data.service_name, 2.0, data.region)
    return MarketData(
        average_price=base * 1.2,
        min_price=base * 0.8,
        max_price=base * 1.8,
        trend="stable",
        insights=list(MARKET_INSIGHTS),
    )


def convert_to_health_units(amount: float, currency: str, region: str) -> float:
    # TODO: convert non-LYD currencies through CurrencyManager rates before
    # applying the regional rate; they are treated 1:1 for now.
    return amount / get_region_rate(region)


@dataclass
class PricingOutcome:
    result: PricingResult
    from_cache: bool


class PricingCalculator:
    def __init__(self, oracle: PricingOracle | None = None, ttl_seconds: int = settings.PRICING_CACHE_TTL_SECONDS):
        self.oracle = oracle
        self.ttl_seconds = ttl_seconds

    async def evaluate(self, db: AsyncSession, data: PricingInput) -> PricingOutcome:
        if data.quantity < 1:
            raise ValueError("Quantity must be at least 1")

        cache_key = generate_pricing_key(
            data.service_name, data.icd11_code, data.quantity, data.region, data.currency
        )
        cached = await PricingCache.get(db, cache_key)
        if cached is not None:
            hm_pricing_suggestions_total.labels(source="cache").inc()
            return PricingOutcome(PricingResult.model_validate(cached), from_cache=True)

        complexity_score = get_complexity_score(data.icd11_code)
        market = get_market_data(data)
        base_price = data.base_price or calculate_base_price(data.service_name, complexity_score, data.region)

        outcome = await get_price_suggestion(self.oracle, data, market, complexity_score)
        suggestion = outcome.suggestion
        hm_pricing_suggestions_total.labels(source=outcome.source).inc()

        discount_percentage = get_bulk_discount(data.quantity)
        discounted_price = base_price * (1 - discount_percentage / 100)
        final_price = max(discounted_price, suggestion.min_price)

        result = PricingResult(
            base_price=base_price,
            ai_suggested_price=suggestion.suggested_price,
            minimum_price=suggestion.min_price,
            market_average_price=market.average_price,
            complexity_score=complexity_score,
            discount_percentage=discount_percentage,
            final_price=final_price,
            health_units=convert_to_health_units(final_price, data.currency, data.region),
            currency=data.currency,
            reasoning=suggestion.reasoning,
            market_insights=market.insights,
            suggestion_source=outcome.source,
        )

        await PricingCache.set(db, cache_key, result.model_dump(mode="json"), self.ttl_seconds)
        return PricingOutcome(result, from_cache=False)

    async def calculate_pricing(self, db: AsyncSession, data: PricingInput) -> PricingResult:
        return (await self.evaluate(db, data)).result

    async def calculate_bulk_pricing(self, db: AsyncSession, services: list[BulkPricingItem]) -> list[BulkPricingResult]:
        # Sequential: a single AsyncSession must not be used concurrently
        results = []
        for item in services:
            result = await self.calculate_pricing(db, item)
            results.append(BulkPricingResult(**result.model_dump(), id=item.id))

        # Batch discount applies to the returned copies only, never to cached rows
        if len(services) >= BATCH_DISCOUNT_THRESHOLD:
            for result in results:
                result.discount_percentage += BATCH_DISCOUNT_PERCENT
                result.final_price *= 1 - BATCH_DISCOUNT_PERCENT / 100

        return results
