"""Operator actions on a shop's subscription, plus the invariant audit."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.core.config import Settings, settings
from duka_billing.models.shared import ensure_utc, utc_now
from duka_billing.models.subscription import (
    DUNNING_MARKER_RESET,
    LIVE_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from duka_billing.repositories.subscription_repository import SubscriptionRepository
from duka_billing.schemas.lifecycle import DunningResult
from duka_billing.schemas.subscription import (
    ConsistencyIssue,
    ConsistencyReport,
    SubscriptionCancel,
)
from duka_billing.services.audit_service import SYSTEM_ACTOR, AuditService
from duka_billing.services.dunning_service import DunningService
from duka_billing.services.subscription_dates import add_billing_cycle

logger = logging.getLogger(__name__)

REACTIVATABLE_STATUSES = (
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
    SubscriptionStatus.SUSPENDED.value,
)


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in values.items()}


class SubscriptionService:
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

    def get_for_shop(self, shop_id: UUID) -> Subscription:
        subscription = self.repo.get_by_shop_id(shop_id)
        if subscription is None:
            raise ValueError("Subscription not found")
        return subscription

    def cancel(
        self, shop_id: UUID, data: SubscriptionCancel, now: datetime | None = None
    ) -> Subscription:
        """Stop renewal, and end service now when ``immediate`` is set.

        A non-immediate cancel keeps the current status; the sweep expires the
        subscription once its period ends.

        Raises:
            ValueError: If there is no subscription or it is already cancelled.
        """
        now = now or utc_now()
        subscription = self.get_for_shop(shop_id)
        old_status = subscription.status
        if old_status == SubscriptionStatus.CANCELLED.value:
            raise ValueError("Subscription is already cancelled")

        values: dict[str, Any] = {
            "auto_renew": False,
            "cancelled_at": now,
            "cancel_reason": data.reason,
        }
        if data.immediate:
            values.update(
                status=SubscriptionStatus.CANCELLED.value,
                current_period_end=now,
                grace_period_end_date=None,
            )
        if not self.repo.compare_and_set(subscription.id, old_status, values):
            raise ValueError("Subscription changed concurrently, retry the request")
        self.repo.reload(subscription)

        if data.immediate:
            self.audit.log_status_change(
                shop_id=shop_id,
                resource_type="subscription",
                resource_id=subscription.id,
                old_status=old_status,
                new_status=SubscriptionStatus.CANCELLED.value,
                performed_by=data.performed_by,
                reason=data.reason,
            )
        else:
            self.audit.log_action(
                shop_id=shop_id,
                resource_type="subscription",
                resource_id=subscription.id,
                action="cancel_scheduled",
                performed_by=data.performed_by,
                old_value={"auto_renew": True},
                new_value={"auto_renew": False},
                reason=data.reason,
            )
        logger.info("Cancelled subscription for shop %s (immediate=%s)", shop_id, data.immediate)
        return subscription

    async def reactivate(
        self, shop_id: UUID, performed_by: str = "admin", now: datetime | None = None
    ) -> tuple[Subscription, DunningResult]:
        """Start a fresh billing period for a cancelled, expired or suspended subscription.

        Raises:
            ValueError: If there is no subscription or it cannot be reactivated.
        """
        now = now or utc_now()
        subscription = self.get_for_shop(shop_id)
        old_status = subscription.status
        if old_status not in REACTIVATABLE_STATUSES:
            raise ValueError(f"Subscription in status '{old_status}' cannot be reactivated")

        values: dict[str, Any] = {
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": now,
            "current_period_end": add_billing_cycle(now, subscription.billing_cycle),
            "grace_period_end_date": None,
            "auto_renew": True,
            "cancelled_at": None,
            "cancel_reason": None,
            "failed_payment_attempts": 0,
            "reactivated_at": now,
            **DUNNING_MARKER_RESET,
        }
        if not self.repo.compare_and_set(subscription.id, old_status, values):
            raise ValueError("Subscription changed concurrently, retry the request")
        self.repo.reload(subscription)

        self.audit.log_status_change(
            shop_id=shop_id,
            resource_type="subscription",
            resource_id=subscription.id,
            old_status=old_status,
            new_status=SubscriptionStatus.ACTIVE.value,
            performed_by=performed_by,
            reason="reactivated",
            extra=_jsonable({"current_period_end": values["current_period_end"]}),
        )
        confirmation = await self.dunning.send_reactivation_confirmation(shop_id)
        if not confirmation.success:
            logger.warning("Reactivation confirmation for shop %s failed: %s", shop_id, confirmation.error)
        return subscription, confirmation

    def audit_consistency(self, dry_run: bool = True, now: datetime | None = None) -> ConsistencyReport:
        """Check every subscription against the lifecycle invariants.

        With ``dry_run`` false, fixable issues are repaired with narrow updates
        and each repair is written to the audit trail.
        """
        now = now or utc_now()
        subscriptions = self.repo.get_all(limit=None)
        report = ConsistencyReport(dry_run=dry_run, checked=len(subscriptions))

        for subscription in subscriptions:
            for issue, fix in self._check(subscription, now):
                entry = ConsistencyIssue(
                    subscription_id=subscription.id,
                    shop_id=subscription.shop_id,
                    status=subscription.status,
                    issue=issue,
                )
                if fix and not dry_run:
                    self.repo.update_fields(subscription.id, fix)
                    self.audit.log_action(
                        shop_id=subscription.shop_id,
                        resource_type="subscription",
                        resource_id=subscription.id,
                        action="consistency_fix",
                        performed_by=SYSTEM_ACTOR,
                        old_value=_jsonable({k: getattr(subscription, k) for k in fix}),
                        new_value=_jsonable(fix),
                        reason=issue,
                    )
                    self.repo.reload(subscription)
                    entry.fixed = True
                    report.fixed += 1
                report.issues.append(entry)

        logger.info(
            "Consistency audit (dry_run=%s): %d checked, %d issues, %d fixed",
            dry_run,
            report.checked,
            len(report.issues),
            report.fixed,
        )
        return report

    def _check(
        self, subscription: Subscription, now: datetime
    ) -> list[tuple[str, dict[str, Any] | None]]:
        """Issues for one subscription, each with the fields that would repair it."""
        found: list[tuple[str, dict[str, Any] | None]] = []
        status = subscription.status
        grace_end = ensure_utc(subscription.grace_period_end_date)

        if status == SubscriptionStatus.PAST_DUE.value and grace_end is None:
            found.append(
                (
                    "past_due without grace period end date",
                    {"grace_period_end_date": now + timedelta(days=self.config.GRACE_PERIOD_DAYS)},
                )
            )
        if status != SubscriptionStatus.PAST_DUE.value and grace_end is not None:
            found.append(("grace period end date set outside past_due", {"grace_period_end_date": None}))
        if status == SubscriptionStatus.SUSPENDED.value and subscription.suspended_at is None:
            found.append(("suspended without suspended_at", {"suspended_at": now}))
        if status == SubscriptionStatus.CANCELLED.value and subscription.cancelled_at is None:
            found.append(("cancelled without cancelled_at", {"cancelled_at": now}))
        if status in LIVE_STATUSES and (
            subscription.past_due_notice_sent or subscription.suspension_notice_sent
        ):
            found.append(("live subscription with stale dunning markers", dict(DUNNING_MARKER_RESET)))
        if status in LIVE_STATUSES and ensure_utc(subscription.current_period_end) < now:
            # Left to the sweep, which owns lifecycle transitions
            found.append(("period ended but not yet swept", None))
        return found
