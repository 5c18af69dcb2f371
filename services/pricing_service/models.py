from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String, Text
from shared.config.database import Base, new_id, utcnow


class PricingCalculation(Base):
    """One computed pricing request and its result. Never updated."""
    __tablename__ = "pricing_calculations"
    __table_args__ = {"schema": "pricing_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    service_id = Column(String(36), nullable=True)
    icd11_code = Column(String(20), nullable=True)
    service_name = Column(String(255), nullable=False)
    service_description = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    currency = Column(String(3), nullable=False, default="LYD")
    region = Column(String(64), nullable=False, default="Libya")
    base_price = Column(Numeric(12, 2))
    ai_suggested_price = Column(Numeric(12, 2))
    market_average_price = Column(Numeric(12, 2))
    complexity_score = Column(Numeric(3, 2))
    discount_percentage = Column(Numeric(5, 2), default=0)
    final_price = Column(Numeric(12, 2))
    health_units = Column(Numeric(14, 4))
    suggestion_source = Column(String(10), nullable=False) # oracle, fallback
    calculation_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CachedPricingData(Base):
    __tablename__ = "cached_pricing_data"
    __table_args__ = {"schema": "pricing_schema"}

    id = Column(String(36), primary_key=True, default=new_id)
    cache_key = Column(String(512), nullable=False, unique=True, index=True)
    data = Column(JSON, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
