"""WebhookEvent model - the idempotency ledger for inbound provider events."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class WebhookEvent(Base):
    """One row per provider-issued event id.

    ``event_id`` is unique; a second insert for the same id fails, which is how
    duplicate deliveries are told apart from first sightings. Rows are purged only
    after ``processed`` is true and ``expires_at`` has passed.
    """

    __tablename__ = "webhook_events"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    event_id = Column(String(255), nullable=False, unique=True, index=True)
    provider = Column(String(20), nullable=False, default="stripe")
    type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
