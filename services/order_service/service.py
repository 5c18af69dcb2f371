from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import utcnow
from services.pricing_service.cart import CartLine, calculate_cart
from .models import ORDER_STATUS_FLOW, TERMINAL_ORDER_STATUSES, Order, OrderItem
from .repository import OrderRepository
from .schemas import OrderCreate


def can_transition(current: str, target: str) -> bool:
    """Orders only move forward through the flow, one or more steps at a time.
    Any non-terminal order can be cancelled."""
    if current in TERMINAL_ORDER_STATUSES:
        return False
    if target == "cancelled":
        return True
    if current not in ORDER_STATUS_FLOW or target not in ORDER_STATUS_FLOW:
        return False
    return ORDER_STATUS_FLOW.index(target) > ORDER_STATUS_FLOW.index(current)


class OrderService:
    @staticmethod
    def build_order(buyer_id: str, data: OrderCreate) -> Order:
        """Price the items (bulk discounts per line) and build an unsaved order."""
        cart = calculate_cart(
            [CartLine(item.listing_id, item.quantity, item.unit_price) for item in data.items],
            data.currency,
        )
        items = [
            OrderItem(
                listing_id=line.listing_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount_percentage=line.discount_percentage,
                total_price=line.final_price,
            )
            for line in cart.items
        ]
        return Order(
            buyer_id=buyer_id,
            seller_id=data.seller_id,
            total_amount=cart.final_total,
            currency=data.currency,
            status="pending",
            notes=data.notes,
            items=items,
        )

    @staticmethod
    async def get_order(db: AsyncSession, order_id: str):
        return await OrderRepository.get_order(db, order_id)

    @staticmethod
    async def list_orders(db: AsyncSession, user_id: str, status: str | None = None):
        return await OrderRepository.list_orders_for_user(db, user_id, status)

    @staticmethod
    async def transition(db: AsyncSession, order: Order, target: str) -> Order:
        """Apply a status change without committing. Raises ValueError when the
        change would move the order backwards or out of a terminal state."""
        if order.status == target:
            return order
        if not can_transition(order.status, target):
            raise ValueError(f"Cannot move order from '{order.status}' to '{target}'")

        if target == "delivered":
            order.delivery_date = utcnow()
        return await OrderRepository.set_status(db, order, target)

    @staticmethod
    async def update_status(db: AsyncSession, order_id: str, target: str):
        order = await OrderRepository.get_order(db, order_id)
        if not order:
            return None
        await OrderService.transition(db, order, target)
        await db.commit()
        return order
