"""Pydantic schemas for AuditLog."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class AuditLogResponse(BaseModel):
    id: UUID
    shop_id: UUID
    resource_type: str
    resource_id: UUID | None
    action: str
    performed_by: str
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    reason: str | None

    model_config = {"from_attributes": True}

    created_at: datetime | None
