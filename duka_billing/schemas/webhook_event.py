from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class WebhookEventResponse(BaseModel):
    id: UUID
    event_id: str
    provider: str
    type: str
    processed: bool
    processed_at: datetime | None
    error: str | None
    retry_count: int
    last_retry_at: datetime | None
    expires_at: datetime | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class IngestResult(BaseModel):
    """Internal outcome of one webhook delivery; the HTTP reply is always the same."""

    status: str
    event_id: str | None = None
    event_type: str | None = None
    error: str | None = None


class ReplayResult(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
