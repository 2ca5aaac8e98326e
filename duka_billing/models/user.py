"""User model - shop staff accounts that receive billing notifications."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    CASHIER = "cashier"


class User(Base):
    __tablename__ = "users"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    shop_id = Column(
        UUIDType,
        ForeignKey("shops.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CASHIER.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
