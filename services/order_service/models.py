from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from shared.config.database import Base, new_id, utcnow

# Forward path of an order. Cancellation is allowed from any non-terminal state.
ORDER_STATUS_FLOW = ["pending", "confirmed", "shipped", "delivered"]
TERMINAL_ORDER_STATUSES = {"delivered", "cancelled"}


class Order(Base):
    __tablename__ = "orders"
    # We use a separate schema to simulate microservice isolation
    __table_args__ = {"schema": "order_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    buyer_id = Column(String(36), nullable=False, index=True)
    seller_id = Column(String(36), nullable=False, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="LYD")
    status = Column(String(20), nullable=False, default="pending") # pending, confirmed, shipped, delivered, cancelled
    notes = Column(Text, nullable=True)
    order_date = Column(DateTime, nullable=False, default=utcnow)
    delivery_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="selectin", cascade="all, delete-orphan")


class OrderItem(Base):
    """Immutable once the order is placed."""
    __tablename__ = "order_items"
    __table_args__ = {"schema": "order_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("order_schema.orders.id", ondelete="CASCADE"), nullable=False, index=True)
    listing_id = Column(String(36), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    total_price = Column(Numeric(12, 2), nullable=False) # after bulk discount
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="items")
