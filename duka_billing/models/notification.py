"""Notification model for in-app notification system."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class Notification(Base):
    """Notification model - stores in-app notifications for shop users."""

    __tablename__ = "notifications"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    shop_id = Column(
        UUIDType,
        ForeignKey("shops.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id = Column(UUIDType, nullable=True, index=True)
    category = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(String(1000), nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
