from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    code = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")
    billing_cycle = Column(String(20), nullable=False, default=BillingCycle.MONTHLY.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
