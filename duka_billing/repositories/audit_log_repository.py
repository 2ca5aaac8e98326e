"""Repository for AuditLog writes and queries.

The audit trail is append-only: there is no update or delete.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.models.audit_log import AuditLog
from duka_billing.models.shared import generate_uuid


class AuditLogRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        shop_id: UUID,
        resource_type: str,
        resource_id: UUID | None,
        action: str,
        performed_by: str,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> AuditLog:
        audit_log = AuditLog(
            id=generate_uuid(),
            shop_id=shop_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            performed_by=performed_by,
            old_value=old_value,
            new_value=new_value,
            reason=reason,
        )
        self.db.add(audit_log)
        self.db.commit()
        self.db.refresh(audit_log)
        return audit_log

    def get_by_shop(
        self,
        shop_id: UUID,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.shop_id == shop_id)
            .order_by(AuditLog.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        shop_id: UUID | None = None,
        action: str | None = None,
        performed_by: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> list[AuditLog]:
        query = self.db.query(AuditLog)
        if shop_id is not None:
            query = query.filter(AuditLog.shop_id == shop_id)
        if action is not None:
            query = query.filter(AuditLog.action == action)
        if performed_by is not None:
            query = query.filter(AuditLog.performed_by == performed_by)
        if start_date is not None:
            query = query.filter(AuditLog.created_at >= start_date)
        if end_date is not None:
            query = query.filter(AuditLog.created_at <= end_date)
        return query.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit).all()
