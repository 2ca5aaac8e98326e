"""AuditLog model for the append-only billing compliance trail."""

from typing import Any

from sqlalchemy import JSON, Column, DateTime, String, Text, event, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class AuditLog(Base):
    """AuditLog model - records administrative and system-driven state changes."""

    __tablename__ = "audit_logs"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    shop_id = Column(UUIDType, nullable=False, index=True)
    resource_type = Column(String(50), nullable=False, index=True)
    resource_id = Column(UUIDType, nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)
    performed_by = Column(String(255), nullable=False, default="system")
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLogImmutableError(RuntimeError):
    """Raised when something tries to modify or delete an audit entry."""


@event.listens_for(AuditLog, "before_update")
def _reject_update(mapper: Any, connection: Any, target: AuditLog) -> None:
    raise AuditLogImmutableError(f"Audit log {target.id} is write-once")


@event.listens_for(AuditLog, "before_delete")
def _reject_delete(mapper: Any, connection: Any, target: AuditLog) -> None:
    raise AuditLogImmutableError(f"Audit log {target.id} cannot be deleted")
