"""Audit service for recording subscription and payment state changes."""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.repositories.audit_log_repository import AuditLogRepository

SYSTEM_ACTOR = "system"


def webhook_actor(provider: str) -> str:
    return f"webhook:{provider}"


class AuditService:
    """Service for recording audit trail entries."""

    def __init__(self, db: Session):
        self.repo = AuditLogRepository(db)

    def log_status_change(
        self,
        *,
        shop_id: UUID,
        resource_type: str,
        resource_id: UUID | None,
        old_status: str | None,
        new_status: str,
        performed_by: str = SYSTEM_ACTOR,
        reason: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Log a status transition, with any dependent fields in ``extra``."""
        new_value: dict[str, Any] = {"status": new_status}
        if extra:
            new_value.update(extra)
        self.repo.create(
            shop_id=shop_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action="status_changed",
            performed_by=performed_by,
            old_value={"status": old_status},
            new_value=new_value,
            reason=reason,
        )

    def log_action(
        self,
        *,
        shop_id: UUID,
        resource_type: str,
        resource_id: UUID | None,
        action: str,
        performed_by: str = SYSTEM_ACTOR,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        """Log a named action, keeping only fields whose value changed."""
        old = old_value or {}
        new = new_value or {}
        changed = {k for k in set(old) | set(new) if old.get(k) != new.get(k)}
        self.repo.create(
            shop_id=shop_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            performed_by=performed_by,
            old_value={k: old.get(k) for k in sorted(changed)} or None,
            new_value={k: new.get(k) for k in sorted(changed)} or None,
            reason=reason,
        )
