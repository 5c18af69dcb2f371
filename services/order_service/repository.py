from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, select
from .models import Order


class OrderRepository:
    """Writes are flushed, not committed: the calling service owns the transaction."""

    @staticmethod
    async def add_order(db: AsyncSession, order: Order):
        db.add(order)
        await db.flush()
        return order

    @staticmethod
    async def get_order(db: AsyncSession, order_id: str):
        result = await db.execute(select(Order).where(Order.id == order_id))
        return result.scalars().first()

    @staticmethod
    async def list_orders_for_user(db: AsyncSession, user_id: str, status: str | None = None):
        query = select(Order).where(or_(Order.buyer_id == user_id, Order.seller_id == user_id))
        if status:
            query = query.where(Order.status == status)
        result = await db.execute(query.order_by(Order.created_at.desc()))
        return result.scalars().all()

    @staticmethod
    async def set_status(db: AsyncSession, order: Order, status: str):
        order.status = status
        await db.flush()
        return order
