from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship
from shared.config.database import Base, new_id, utcnow

SCHEMA = {"schema": "settlement_schema"}

# Installments that still have to be paid
UNPAID_INSTALLMENT_STATUSES = ("pending", "overdue")


class EscrowAccount(Base):
    """Buyer funds held for an order. held_amount + released_amount == total_amount."""
    __tablename__ = "escrow_accounts"
    __table_args__ = SCHEMA

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), nullable=False, index=True)
    buyer_id = Column(String(36), nullable=False)
    seller_id = Column(String(36), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    held_amount = Column(Numeric(12, 2), nullable=False)
    released_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="holding") # holding, released, refunded, disputed
    release_conditions = Column(JSON, nullable=True)
    auto_release_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class InstallmentPlan(Base):
    __tablename__ = "installment_plans"
    __table_args__ = SCHEMA

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), nullable=False, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    number_of_installments = Column(Integer, nullable=False)
    installment_amount = Column(Numeric(12, 2), nullable=False)
    frequency = Column(String(20), nullable=False) # weekly, monthly, quarterly
    interest_rate = Column(Numeric(5, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active") # active, completed, cancelled, defaulted
    next_payment_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    installments = relationship(
        "InstallmentPayment",
        back_populates="plan",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="InstallmentPayment.installment_number",
    )


class InstallmentPayment(Base):
    __tablename__ = "installment_payments"
    __table_args__ = SCHEMA

    id = Column(String(36), primary_key=True, default=new_id)
    installment_plan_id = Column(
        String(36), ForeignKey("settlement_schema.installment_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_id = Column(String(36), nullable=True)
    installment_number = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    due_date = Column(DateTime, nullable=False)
    paid_date = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False, default="pending") # pending, paid, overdue, missed
    late_fee = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    plan = relationship("InstallmentPlan", back_populates="installments")


class CurrencyExchangeRate(Base):
    __tablename__ = "currency_exchange_rates"
    __table_args__ = SCHEMA

    id = Column(String(36), primary_key=True, default=new_id)
    from_currency = Column(String(3), nullable=False, index=True)
    to_currency = Column(String(3), nullable=False, index=True)
    rate = Column(Numeric(12, 6), nullable=False)
    source = Column(String(64), nullable=False) # central_bank_ly, ecb, custom
    effective_date = Column(DateTime, nullable=False)
    expiry_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = SCHEMA

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), nullable=False, index=True)
    invoice_number = Column(String(32), nullable=False, unique=True)
    buyer_id = Column(String(36), nullable=False)
    seller_id = Column(String(36), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="draft") # draft, sent, paid, overdue, cancelled
    payment_id = Column(String(36), nullable=True)
    issue_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=True)
    paid_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    payment_terms = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PaymentSchedule(Base):
    __tablename__ = "payment_schedules"
    __table_args__ = SCHEMA

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), nullable=False, index=True)
    installment_plan_id = Column(String(36), ForeignKey("settlement_schema.installment_plans.id"), nullable=True)
    scheduled_date = Column(DateTime, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="scheduled") # scheduled, processing, completed, failed, cancelled
    payment_id = Column(String(36), nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
