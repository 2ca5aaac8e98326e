"""Service for creating in-app notifications from system events."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.models.notification import Notification
from duka_billing.repositories.notification_repository import NotificationRepository

# Notification categories
CATEGORY_SUBSCRIPTION = "subscription"
CATEGORY_STOCK = "stock"
CATEGORY_PAYMENT = "payment"
CATEGORY_REPORT = "report"


class NotificationService:
    """Service for creating in-app notifications from system events."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = NotificationRepository(db)

    def notify(
        self,
        *,
        shop_id: UUID,
        category: str,
        title: str,
        message: str,
        user_id: UUID | None = None,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        """Create a notification."""
        return self.repo.create(
            shop_id=shop_id,
            user_id=user_id,
            category=category,
            title=title,
            message=message,
            data=data,
        )

    def notify_stock_alert(
        self,
        *,
        shop_id: UUID,
        product_id: str,
        product_name: str,
        alert_type: str,
        current_stock: int,
    ) -> Notification:
        if alert_type == "out_of_stock":
            title = f"{product_name} is out of stock"
        else:
            title = f"{product_name} is running low"
        return self.notify(
            shop_id=shop_id,
            category=CATEGORY_STOCK,
            title=title,
            message=f"{current_stock} units left.",
            data={"product_id": product_id, "alert_type": alert_type},
        )
