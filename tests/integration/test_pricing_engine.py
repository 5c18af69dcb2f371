import json
from datetime import timedelta

import pytest

from shared.config.database import utcnow
from services.pricing_service.cache import PricingCache, generate_pricing_key
from services.pricing_service.calculator import PricingCalculator
from services.pricing_service.schemas import BulkPricingItem, PricingInput
from services.pricing_service.service import PricingService

pytestmark = pytest.mark.integration


class FakeOracle:
    def __init__(self, suggested=450.0, minimum=300.0, fail=False):
        self.answer = json.dumps({"suggestedPrice": suggested, "minPrice": minimum, "reasoning": "market fit"})
        self.fail = fail
        self.calls = 0

    async def suggest(self, prompt: str) -> str:
        self.calls += 1
        if self.fail:
            raise RuntimeError("rate limited")
        return self.answer


class TestPricingCalculator:
    async def test_second_identical_request_is_cached(self, db):
        oracle = FakeOracle()
        calculator = PricingCalculator(oracle=oracle)
        data = PricingInput(service_name="Blood test", quantity=1)

        first = await calculator.evaluate(db, data)
        second = await calculator.evaluate(db, data)

        assert not first.from_cache
        assert second.from_cache
        assert second.result == first.result
        assert oracle.calls == 1

    async def test_final_price_never_below_oracle_minimum(self, db):
        calculator = PricingCalculator(oracle=FakeOracle(suggested=6000.0, minimum=5000.0))
        result = await calculator.calculate_pricing(db, PricingInput(service_name="Blood test"))
        assert result.base_price == 400.0
        assert result.final_price == 5000.0
        assert result.suggestion_source == "oracle"

    async def test_bulk_discount_applies_to_base_price(self, db):
        calculator = PricingCalculator(oracle=FakeOracle(minimum=1.0))
        result = await calculator.calculate_pricing(db, PricingInput(service_name="Blood test", quantity=20))
        assert result.discount_percentage == 10
        assert result.final_price == pytest.approx(360.0)

    async def test_oracle_failure_falls_back(self, db):
        calculator = PricingCalculator(oracle=FakeOracle(fail=True))
        result = await calculator.calculate_pricing(db, PricingInput(service_name="Blood test"))
        assert result.suggestion_source == "fallback"
        assert result.reasoning.startswith("Rule-based pricing")
        assert result.final_price >= result.minimum_price

    async def test_batch_discount_does_not_touch_cache(self, db):
        calculator = PricingCalculator(oracle=FakeOracle(minimum=1.0))
        items = [BulkPricingItem(id=f"svc-{i}", service_name=f"Physiotherapy {i}") for i in range(5)]

        results = await calculator.calculate_bulk_pricing(db, items)

        assert [r.id for r in results] == [item.id for item in items]
        assert all(r.discount_percentage == 5 for r in results)
        assert results[0].final_price == pytest.approx(190.0)

        cached = await calculator.evaluate(db, items[0])
        assert cached.from_cache
        assert cached.result.discount_percentage == 0
        assert cached.result.final_price == pytest.approx(200.0)

    async def test_small_batches_get_no_batch_discount(self, db):
        calculator = PricingCalculator(oracle=FakeOracle(minimum=1.0))
        items = [BulkPricingItem(id=f"svc-{i}", service_name="Physiotherapy") for i in range(2)]
        results = await calculator.calculate_bulk_pricing(db, items)
        assert all(r.discount_percentage == 0 for r in results)


class TestPricingCache:
    async def test_expired_entries_are_dropped(self, db):
        key = generate_pricing_key("Blood test", None, 1, "Libya", "LYD")
        now = utcnow()
        await PricingCache.set(db, key, {"final_price": 1}, ttl_seconds=60, now=now)

        assert await PricingCache.get(db, key, now=now + timedelta(seconds=30)) == {"final_price": 1}
        assert await PricingCache.get(db, key, now=now + timedelta(seconds=61)) is None
        assert await PricingCache.get(db, key, now=now) is None

    async def test_cleanup_counts_removed_rows(self, db):
        now = utcnow()
        await PricingCache.set(db, "a", 1, ttl_seconds=10, now=now)
        await PricingCache.set(db, "b", 2, ttl_seconds=1000, now=now)
        assert await PricingCache.cleanup(db, now=now + timedelta(seconds=100)) == 1
        assert await PricingCache.get(db, "b", now=now) == 2


class TestPricingService:
    async def test_calculations_are_recorded_once(self, db):
        service = PricingService(calculator=PricingCalculator(oracle=FakeOracle()))
        data = PricingInput(service_name="General consultation", icd11_code="BA00")

        await service.calculate(db, data, user_id="user-1")
        await service.calculate(db, data, user_id="user-1")

        [calculation] = await service.list_calculations(db, "user-1")
        assert calculation.service_name == "General consultation"
        assert calculation.suggestion_source == "oracle"
        assert calculation.calculation_data["input"]["icd11_code"] == "BA00"

    def test_cart_endpoint_logic(self):
        from services.pricing_service.schemas import CartRequest

        totals = PricingService.calculate_cart(CartRequest(items=[
            {"listing_id": "l-1", "quantity": 10, "unit_price": "100.00"},
        ]))
        assert str(totals.final_total) == "950.00"
