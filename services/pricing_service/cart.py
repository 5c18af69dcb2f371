"""Cart totals with per-line bulk discounts."""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .calculator import get_bulk_discount

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class CartLine:
    listing_id: str
    quantity: int
    unit_price: Decimal
    # Stored line total, when the cart already carries one
    total_price: Decimal | None = None


@dataclass
class PricedCartLine:
    listing_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    discount_percentage: int
    discount_amount: Decimal
    final_price: Decimal


@dataclass
class CartTotals:
    items: list[PricedCartLine]
    subtotal: Decimal
    discount_total: Decimal
    final_total: Decimal
    currency: str


def price_cart_line(line: CartLine) -> PricedCartLine:
    if line.quantity < 1:
        raise ValueError("Quantity must be at least 1")

    subtotal = to_money(line.total_price if line.total_price is not None else Decimal(line.unit_price) * line.quantity)
    discount_percentage = get_bulk_discount(line.quantity)
    discount_amount = to_money(subtotal * discount_percentage / 100)

    return PricedCartLine(
        listing_id=line.listing_id,
        quantity=line.quantity,
        unit_price=to_money(line.unit_price),
        subtotal=subtotal,
        discount_percentage=discount_percentage,
        discount_amount=discount_amount,
        final_price=subtotal - discount_amount,
    )


def calculate_cart(lines: list[CartLine], currency: str = "LYD") -> CartTotals:
    items = [price_cart_line(line) for line in lines]
    return CartTotals(
        items=items,
        subtotal=sum((item.subtotal for item in items), Decimal("0.00")),
        discount_total=sum((item.discount_amount for item in items), Decimal("0.00")),
        final_total=sum((item.final_price for item in items), Decimal("0.00")),
        currency=currency,
    )
