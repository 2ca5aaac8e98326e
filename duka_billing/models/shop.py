"""Shop (tenant) model."""

from enum import Enum

from sqlalchemy import Column, DateTime, String, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class ShopStatus(str, Enum):
    """Shop onboarding status.

    ``ACTIVE`` is the only approved state: approving a pending shop moves it
    straight to active.
    """

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class Shop(Base):
    """Shop model - the tenant that owns exactly one subscription."""

    __tablename__ = "shops"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=ShopStatus.PENDING.value, index=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
