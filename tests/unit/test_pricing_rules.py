from decimal import Decimal

import pytest

from services.pricing_service.calculator import (
    calculate_base_price,
    convert_to_health_units,
    get_bulk_discount,
    get_market_data,
)
from services.pricing_service.cart import CartLine, calculate_cart
from services.pricing_service.icd11 import get_complexity_score, get_service_category
from services.pricing_service.oracle import fallback_suggestion, parse_suggestion
from services.pricing_service.schemas import PricingInput

pytestmark = pytest.mark.unit


class TestBulkDiscount:
    @pytest.mark.parametrize(
        "quantity, expected",
        [(1, 0), (9, 0), (10, 5), (19, 5), (20, 10), (49, 10), (50, 15), (99, 15), (100, 25), (500, 25)],
    )
    def test_tier_breakpoints(self, quantity, expected):
        assert get_bulk_discount(quantity) == expected


class TestComplexity:
    def test_missing_code_is_medium(self):
        assert get_complexity_score(None) == 2.0
        assert get_complexity_score("") == 2.0

    def test_longer_codes_are_more_complex(self):
        assert get_complexity_score("1A0") == 1.0
        assert get_complexity_score("BA00") == 2.0
        assert get_complexity_score("BA00.0") == 3.0
        assert get_complexity_score("BA00.0Z1") == 4.0

    def test_service_category_from_chapter_letter(self):
        assert get_service_category("CA00") == "Neoplasms"
        assert get_service_category("ba00") == "Infectious diseases"
        assert get_service_category("9X") == "General healthcare"


class TestBasePrice:
    def test_surgery_multiplier(self):
        assert calculate_base_price("Knee Surgery", 2.0, "Libya") == 1000.0

    def test_consultation_multiplier(self):
        assert calculate_base_price("General consultation", 1.0, "Libya") == 150.0

    def test_scan_multiplier_and_region_rate(self):
        assert calculate_base_price("MRI scan", 1.0, "Egypt") == 120.0

    def test_unknown_region_uses_base_rate(self):
        assert calculate_base_price("Physiotherapy", 1.0, "Atlantis") == 100.0

    def test_health_units_divide_by_region_rate(self):
        assert convert_to_health_units(80.0, "LYD", "Tunisia") == pytest.approx(100.0)


class TestOracleParsing:
    def test_accepts_fenced_json(self):
        text = '```json\n{"suggestedPrice": 120.5, "minPrice": 90, "reasoning": "ok"}\n```'
        suggestion = parse_suggestion(text)
        assert suggestion.suggested_price == 120.5
        assert suggestion.min_price == 90

    @pytest.mark.parametrize(
        "text",
        [
            "I think about 100 LYD",
            '{"suggestedPrice": 100}',
            '{"suggestedPrice": -5, "minPrice": 1, "reasoning": "x"}',
        ],
    )
    def test_rejects_unusable_answers(self, text):
        with pytest.raises(ValueError):
            parse_suggestion(text)

    def test_fallback_applies_quantity_factor(self):
        data = PricingInput(service_name="Blood test", quantity=20)
        market = get_market_data(data)
        suggestion = fallback_suggestion(data, market, 2.0)
        assert suggestion.suggested_price == pytest.approx(market.average_price * 2.0 * 1.5 * 0.9)
        assert suggestion.min_price == pytest.approx(suggestion.suggested_price * 0.7)


class TestCart:
    def test_bulk_line_discount(self):
        totals = calculate_cart([CartLine("listing-1", 10, Decimal("100.00"))])
        assert totals.subtotal == Decimal("1000.00")
        assert totals.discount_total == Decimal("50.00")
        assert totals.final_total == Decimal("950.00")

    def test_stored_line_total_wins(self):
        totals = calculate_cart([CartLine("listing-1", 2, Decimal("10.00"), total_price=Decimal("18.00"))])
        assert totals.subtotal == Decimal("18.00")
        assert totals.final_total == Decimal("18.00")

    def test_lines_are_priced_independently(self):
        totals = calculate_cart([
            CartLine("listing-1", 20, Decimal("5.00")),
            CartLine("listing-2", 1, Decimal("40.00")),
        ])
        assert [item.discount_percentage for item in totals.items] == [10, 0]
        assert totals.final_total == Decimal("130.00")

    def test_rejects_empty_quantity(self):
        with pytest.raises(ValueError):
            calculate_cart([CartLine("listing-1", 0, Decimal("5.00"))])
