"""Repository for the webhook event ledger."""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from duka_billing.models.shared import generate_uuid
from duka_billing.models.webhook_event import WebhookEvent


class WebhookEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_event_id(self, event_id: str) -> WebhookEvent | None:
        return self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        processed: bool | None = None,
        event_type: str | None = None,
    ) -> list[WebhookEvent]:
        query = self.db.query(WebhookEvent)
        if processed is not None:
            query = query.filter(WebhookEvent.processed == processed)
        if event_type is not None:
            query = query.filter(WebhookEvent.type == event_type)
        return query.order_by(WebhookEvent.created_at.desc()).offset(skip).limit(limit).all()

    def create_claimed(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        provider: str,
        now: datetime,
    ) -> WebhookEvent | None:
        """Insert an unprocessed ledger row already claimed by the caller.

        Returns None if another request inserted the same ``event_id`` first.
        """
        record = WebhookEvent(
            id=generate_uuid(),
            event_id=event_id,
            provider=provider,
            type=event_type,
            payload=payload,
            processed=False,
            locked_at=now,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        self.db.refresh(record)
        return record

    def claim(self, event_id: str, now: datetime, lock_timeout_seconds: int) -> bool:
        """Claim an unprocessed event for processing.

        The conditional UPDATE succeeds for exactly one caller while the claim
        is fresh; a claim older than ``lock_timeout_seconds`` is considered
        abandoned and may be taken over.
        """
        stale_before = now - timedelta(seconds=lock_timeout_seconds)
        count = (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.event_id == event_id,
                WebhookEvent.processed.is_(False),
                or_(WebhookEvent.locked_at.is_(None), WebhookEvent.locked_at < stale_before),
            )
            .update({"locked_at": now}, synchronize_session=False)
        )
        self.db.commit()
        return bool(count)

    def mark_processed(self, event_id: str, now: datetime, retention_days: int) -> None:
        self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).update(
            {
                "processed": True,
                "processed_at": now,
                "expires_at": now + timedelta(days=retention_days),
                "locked_at": None,
                "error": None,
            },
            synchronize_session=False,
        )
        self.db.commit()

    def mark_failed(self, event_id: str, error: str, now: datetime) -> None:
        self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).update(
            {
                "error": error[:2000],
                "retry_count": WebhookEvent.retry_count + 1,
                "last_retry_at": now,
                "locked_at": None,
            },
            synchronize_session=False,
        )
        self.db.commit()

    def get_replayable(self, max_retries: int, limit: int = 100) -> list[WebhookEvent]:
        """Unprocessed events that have failed fewer than ``max_retries`` times."""
        return (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.processed.is_(False),
                WebhookEvent.retry_count < max_retries,
            )
            .order_by(WebhookEvent.created_at)
            .limit(limit)
            .all()
        )

    def delete_expired(self, now: datetime) -> int:
        """TTL purge: only processed rows past their retention window."""
        count = (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.processed.is_(True),
                WebhookEvent.expires_at.isnot(None),
                WebhookEvent.expires_at < now,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return int(count)
