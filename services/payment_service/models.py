from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship
from shared.config.database import Base, new_id, utcnow

PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "refunded", "cancelled")
UNRESOLVED_REFUND_STATUSES = ("pending", "processing")


class PaymentGatewayConfig(Base):
    """Read-mostly provider configuration, loaded by the gateway manager."""
    __tablename__ = "payment_gateways"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False) # libyana_mobile, libyana_bank, libyana_card
    type = Column(String(50), nullable=False) # mobile_money, bank_transfer, card, wallet
    api_key = Column(Text, nullable=True)
    api_secret = Column(Text, nullable=True)
    webhook_secret = Column(Text, nullable=True)
    base_url = Column(String(512), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    supported_currencies = Column(JSON, nullable=True)
    configuration = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PaymentMethod(Base):
    __tablename__ = "payment_methods"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    gateway_id = Column(String(36), ForeignKey("payment_schema.payment_gateways.id"), nullable=False)
    type = Column(String(50), nullable=False) # credit_card, bank_transfer, mobile_money
    provider = Column(String(50), nullable=False)
    account_number = Column(String(64), nullable=True) # masked
    account_token = Column(Text, nullable=True) # encrypted token of the full account data
    account_holder_name = Column(String(255), nullable=True)
    phone_number = Column(String(32), nullable=True)
    bank_name = Column(String(255), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    gateway = relationship("PaymentGatewayConfig", lazy="selectin")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), nullable=False, index=True)
    payment_method_id = Column(String(36), ForeignKey("payment_schema.payment_methods.id"), nullable=False)
    gateway_id = Column(String(36), ForeignKey("payment_schema.payment_gateways.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True) # see PAYMENT_STATUSES
    transaction_id = Column(String(255), nullable=True, index=True)
    gateway_transaction_id = Column(String(255), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    reconciled_at = Column(DateTime, nullable=True)
    # Bumped by every guarded status write
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    payment_method = relationship("PaymentMethod", lazy="selectin")
    gateway = relationship("PaymentGatewayConfig", lazy="selectin")


class PaymentTransaction(Base):
    """Append-only ledger of gateway interactions."""
    __tablename__ = "payment_transactions"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    payment_id = Column(String(36), ForeignKey("payment_schema.payments.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False) # charge, refund, void, capture
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False) # pending, completed, failed
    gateway_transaction_id = Column(String(255), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Refund(Base):
    __tablename__ = "refunds"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    payment_id = Column(String(36), ForeignKey("payment_schema.payments.id"), nullable=False, index=True)
    order_id = Column(String(36), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(String(64), nullable=False) # customer_request, duplicate, fraudulent, service_issue, order_cancelled
    status = Column(String(20), nullable=False, default="pending") # pending, processing, completed, failed
    gateway_refund_id = Column(String(255), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    requested_by = Column(String(36), nullable=False)
    approved_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class FraudAlert(Base):
    __tablename__ = "fraud_alerts"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    payment_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    alert_type = Column(String(50), nullable=False) # risk_score, gateway_report
    severity = Column(String(20), nullable=False) # low, medium, high, critical
    description = Column(Text, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    status = Column(String(20), nullable=False, default="open") # open, investigating, resolved, dismissed
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ComplianceRecord(Base):
    __tablename__ = "compliance_records"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    payment_id = Column(String(36), nullable=True, index=True)
    regulation_type = Column(String(64), nullable=False) # Libyan_Financial_Regulations, AML, PCI_DSS
    compliance_status = Column(String(20), nullable=False) # compliant, non_compliant, pending_review
    check_date = Column(DateTime, nullable=False, default=utcnow)
    details = Column(JSON, nullable=True)
    reviewed_by = Column(String(36), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True, index=True)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(36), nullable=True)
    details = Column(JSON, nullable=True)
    checksum = Column(String(64), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)


class PaymentWebhook(Base):
    """Inbox of provider callbacks, stored before they are trusted or applied."""
    __tablename__ = "payment_webhooks"
    __table_args__ = {"schema": "payment_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    gateway_id = Column(String(36), nullable=False, index=True)
    payment_id = Column(String(36), nullable=True)
    event_type = Column(String(64), nullable=False)
    webhook_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False)
    signature = Column(String(255), nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
