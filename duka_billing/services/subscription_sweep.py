"""Scheduled subscription state machine.

Rules, applied in order on each run:

1. trial/active past period end without auto-renew -> expired
2. trial/active past period end with auto-renew -> past_due (grace period starts)
3. past_due past grace end -> suspended
4. past_due/suspended/expired not moved this run -> dunning reminder check

Every transition re-reads the row, re-checks its condition and writes with an
UPDATE guarded by the expected old status, so overlapping or repeated runs
cannot apply the same transition twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from duka_billing.core.config import Settings, settings
from duka_billing.models.shared import ensure_utc, utc_now
from duka_billing.models.subscription import (
    LAPSED_STATUSES,
    LIVE_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from duka_billing.repositories.subscription_repository import SubscriptionRepository
from duka_billing.schemas.lifecycle import DunningResult, SweepResult
from duka_billing.services.audit_service import SYSTEM_ACTOR, AuditService
from duka_billing.services.dunning_service import DunningService

logger = logging.getLogger(__name__)


class SubscriptionSweepService:
    def __init__(
        self,
        db: Session,
        dunning: DunningService | None = None,
        config: Settings = settings,
    ):
        self.db = db
        self.config = config
        self.repo = SubscriptionRepository(db)
        self.audit = AuditService(db)
        self.dunning = dunning or DunningService(db, config=config)

    async def run(self, now: datetime | None = None) -> SweepResult:
        now = now or utc_now()
        result = SweepResult()
        seen: set[UUID] = set()
        transitioned: set[UUID] = set()

        candidates = self.repo.get_lapsed_live(now) + self.repo.get_expired_grace(now)
        for subscription in candidates:
            seen.add(subscription.id)
            try:
                new_status = self._transition(subscription, now)
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Sweep failed to transition subscription %s", subscription.id)
                result.errors.append(f"{subscription.shop_id}: {exc}")
                continue
            if new_status is None:
                continue

            transitioned.add(subscription.id)
            if new_status == SubscriptionStatus.EXPIRED.value:
                result.expired += 1
            elif new_status == SubscriptionStatus.PAST_DUE.value:
                result.past_due += 1
            else:
                result.suspended += 1
            self._record(result, await self._notify(subscription, new_status, now))

        for subscription in self.repo.get_by_statuses(LAPSED_STATUSES):
            if subscription.id in transitioned:
                continue
            seen.add(subscription.id)
            try:
                reminder = await self.dunning.evaluate_subscription(subscription, now)
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Sweep reminder check failed for subscription %s", subscription.id)
                result.errors.append(f"{subscription.shop_id}: {exc}")
                continue
            if reminder is not None:
                self._record(result, reminder)

        result.processed = len(seen)
        logger.info(
            "Sweep finished: processed=%d expired=%d past_due=%d suspended=%d emails=%d errors=%d",
            result.processed,
            result.expired,
            result.past_due,
            result.suspended,
            result.emails_sent,
            len(result.errors),
        )
        return result

    def _transition(self, subscription: Subscription, now: datetime) -> str | None:
        """Apply the first matching rule to the freshly read row; return the new status."""
        self.repo.reload(subscription)
        old_status = subscription.status
        period_end = ensure_utc(subscription.current_period_end)
        grace_end = ensure_utc(subscription.grace_period_end_date)

        values: dict[str, Any]
        if old_status in LIVE_STATUSES and period_end < now:
            if subscription.auto_renew:
                values = {
                    "status": SubscriptionStatus.PAST_DUE.value,
                    "grace_period_end_date": now + timedelta(days=self.config.GRACE_PERIOD_DAYS),
                    "past_due_notice_sent": False,
                }
            else:
                values = {
                    "status": SubscriptionStatus.EXPIRED.value,
                    "grace_period_end_date": None,
                    "expiry_notice_sent": False,
                }
        elif old_status == SubscriptionStatus.PAST_DUE.value and grace_end is not None and grace_end < now:
            values = {
                "status": SubscriptionStatus.SUSPENDED.value,
                "grace_period_end_date": None,
                "suspended_at": now,
                "suspension_notice_sent": False,
                "suspension_notice_sent_at": None,
            }
        else:
            return None

        if not self.repo.compare_and_set(subscription.id, old_status, values):
            logger.info("Subscription %s changed concurrently, skipping", subscription.id)
            return None

        new_status = values["status"]
        extra = {
            k: v.isoformat() if isinstance(v, datetime) else v
            for k, v in values.items()
            if k in ("grace_period_end_date", "suspended_at")
        }
        self.audit.log_status_change(
            shop_id=subscription.shop_id,
            resource_type="subscription",
            resource_id=subscription.id,
            old_status=old_status,
            new_status=new_status,
            performed_by=SYSTEM_ACTOR,
            reason="scheduled sweep",
            extra=extra,
        )
        self.repo.reload(subscription)
        logger.info("Subscription %s: %s -> %s", subscription.id, old_status, new_status)
        return new_status

    async def _notify(self, subscription: Subscription, new_status: str, now: datetime) -> DunningResult:
        if new_status == SubscriptionStatus.EXPIRED.value:
            send = self.dunning.send_expired_notice(subscription, now)
        elif new_status == SubscriptionStatus.PAST_DUE.value:
            send = self.dunning.send_past_due_notice(subscription, now)
        else:
            send = self.dunning.send_suspension_notice(subscription, now)
        try:
            return await send
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Notice for subscription %s failed", subscription.id)
            return DunningResult(
                shop_id=str(subscription.shop_id), action=new_status, success=False, error=str(exc)
            )

    @staticmethod
    def _record(result: SweepResult, notice: DunningResult) -> None:
        if notice.success:
            result.emails_sent += 1
        else:
            result.errors.append(f"{notice.shop_id} ({notice.action}): {notice.error}")
