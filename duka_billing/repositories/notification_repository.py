"""Repository for Notification CRUD operations."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.models.notification import Notification
from duka_billing.models.shared import generate_uuid


class NotificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        shop_id: UUID,
        category: str,
        title: str,
        message: str,
        user_id: UUID | None = None,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            id=generate_uuid(),
            shop_id=shop_id,
            user_id=user_id,
            category=category,
            title=title,
            message=message,
            data=data,
        )
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification
