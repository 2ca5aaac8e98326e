"""Dunning engine: escalating subscription notices, each sent once per milestone.

Every send loads the shop, its admin user and the plan, renders a template,
then fans out an email job and an in-app notification job. A milestone marker
on the subscription is persisted only after the email went out (or was queued),
so a failed send is retried on the next run.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from duka_billing.core.config import Settings, settings
from duka_billing.models.plan import SubscriptionPlan
from duka_billing.models.shared import ensure_utc, utc_now
from duka_billing.models.subscription import Subscription, SubscriptionStatus
from duka_billing.repositories.plan_repository import PlanRepository
from duka_billing.repositories.shop_repository import ShopRepository
from duka_billing.repositories.subscription_repository import SubscriptionRepository
from duka_billing.schemas.job import Job, JobOutcome
from duka_billing.schemas.lifecycle import DunningResult
from duka_billing.services.dispatch_service import (
    DispatchConfig,
    Dispatcher,
    email_job,
    notification_job,
)
from duka_billing.services.job_executor import JobExecutor
from duka_billing.services.template_service import TemplateNotFoundError, TemplateService

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)

EXPIRY_WARNING_TEMPLATES = {
    7: "subscription_expiring_7days",
    3: "subscription_expiring_3days",
    1: "subscription_expiring_1day",
}

_NOTIFICATION_TITLES = {
    "expiry_warning": "Subscription renews in {days} days",
    "past_due_notice": "Payment overdue",
    "grace_reminder": "Payment overdue - {days} days until suspension",
    "suspension_notice": "Shop suspended",
    "expired_notice": "Subscription expired",
    "reactivation_confirmation": "Subscription reactivated",
    "payment_failed_notice": "Payment failed",
}


def days_ceil(delta: timedelta) -> int:
    """Whole days in ``delta``, rounded up."""
    return math.ceil(delta / DAY)


def format_amount(cents: int | None, currency: str | None) -> str:
    return f"{currency or 'KES'} {(cents or 0) / 100:,.2f}"


def _format_date(value: datetime | None) -> str:
    value = ensure_utc(value)
    return value.strftime("%d %b %Y") if value else ""


class DunningService:
    """Sends expiry warnings, grace reminders and lifecycle notices."""

    def __init__(
        self,
        db: Session,
        dispatcher: Dispatcher | None = None,
        executor: JobExecutor | None = None,
        templates: TemplateService | None = None,
        config: Settings = settings,
    ):
        self.db = db
        self.config = config
        # A dispatcher that was never started is unavailable, so jobs run inline
        self.dispatcher = dispatcher or Dispatcher(DispatchConfig())
        self.templates = templates or TemplateService()
        self.executor = executor or JobExecutor(db=db, template_service=self.templates)
        self.subscription_repo = SubscriptionRepository(db)
        self.shop_repo = ShopRepository(db)
        self.plan_repo = PlanRepository(db)

    # ===== Batch entry point =====

    async def process_dunning_notifications(self, now: datetime | None = None) -> list[DunningResult]:
        now = now or utc_now()
        results: list[DunningResult] = []
        results.extend(await self.send_expiry_warnings(now))
        results.extend(await self.send_grace_reminders(now))
        results.extend(await self.send_suspension_notices(now))
        results.extend(await self.send_pending_transition_notices(now))
        sent = sum(1 for r in results if r.success)
        logger.info("Dunning run finished: %d sent, %d failed", sent, len(results) - sent)
        return results

    async def send_expiry_warnings(self, now: datetime) -> list[DunningResult]:
        """Warn auto-renewing subscriptions N days before their period ends."""
        warning_days = sorted(set(self.config.EXPIRY_WARNING_DAYS))
        if not warning_days:
            return []
        horizon = now + timedelta(days=max(warning_days), microseconds=1)
        results: list[DunningResult] = []
        for subscription in self.subscription_repo.get_renewing_ending_between(now, horizon):
            period_end = ensure_utc(subscription.current_period_end)
            days_left = days_ceil(period_end - now)
            if days_left not in warning_days:
                continue
            if self._expiry_warning_already_sent(subscription, days_left):
                continue
            results.append(
                await self._guarded(subscription, self.send_expiry_warning(subscription, days_left, now))
            )
        return results

    async def send_grace_reminders(self, now: datetime) -> list[DunningResult]:
        results: list[DunningResult] = []
        for subscription in self.subscription_repo.get_by_statuses([SubscriptionStatus.PAST_DUE.value]):
            grace_end = ensure_utc(subscription.grace_period_end_date)
            if grace_end is None or grace_end <= now:
                continue
            if not self._grace_reminder_due(subscription, now):
                continue
            results.append(await self._guarded(subscription, self.send_grace_reminder(subscription, now)))
        return results

    async def send_suspension_notices(self, now: datetime) -> list[DunningResult]:
        results: list[DunningResult] = []
        for subscription in self.subscription_repo.get_by_statuses([SubscriptionStatus.SUSPENDED.value]):
            if subscription.suspension_notice_sent:
                continue
            results.append(await self._guarded(subscription, self.send_suspension_notice(subscription, now)))
        return results

    async def send_pending_transition_notices(self, now: datetime) -> list[DunningResult]:
        """Past-due and expired notices whose first delivery never succeeded."""
        results: list[DunningResult] = []
        statuses = [SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.EXPIRED.value]
        for subscription in self.subscription_repo.get_by_statuses(statuses):
            if subscription.status == SubscriptionStatus.PAST_DUE.value:
                if subscription.past_due_notice_sent:
                    continue
                send = self.send_past_due_notice(subscription, now)
            else:
                if subscription.expiry_notice_sent:
                    continue
                send = self.send_expired_notice(subscription, now)
            results.append(await self._guarded(subscription, send))
        return results

    async def evaluate_subscription(
        self, subscription: Subscription, now: datetime | None = None
    ) -> DunningResult | None:
        """Send whichever reminder a lapsed subscription is due, if any."""
        now = now or utc_now()
        status = subscription.status
        if status == SubscriptionStatus.PAST_DUE.value:
            if not subscription.past_due_notice_sent:
                return await self.send_past_due_notice(subscription, now)
            grace_end = ensure_utc(subscription.grace_period_end_date)
            if grace_end and grace_end > now and self._grace_reminder_due(subscription, now):
                return await self.send_grace_reminder(subscription, now)
        elif status == SubscriptionStatus.SUSPENDED.value:
            if not subscription.suspension_notice_sent:
                return await self.send_suspension_notice(subscription, now)
        elif status == SubscriptionStatus.EXPIRED.value:
            if not subscription.expiry_notice_sent:
                return await self.send_expired_notice(subscription, now)
        return None

    # ===== Milestone checks =====

    def _expiry_warning_already_sent(self, subscription: Subscription, days_left: int) -> bool:
        marker_period = ensure_utc(subscription.last_expiry_warning_period_end)
        if marker_period is None or subscription.last_expiry_warning_days is None:
            return False
        if marker_period != ensure_utc(subscription.current_period_end):
            return False
        return subscription.last_expiry_warning_days <= days_left

    def _grace_reminder_due(self, subscription: Subscription, now: datetime) -> bool:
        grace_end = ensure_utc(subscription.grace_period_end_date)
        days_until_suspension = days_ceil(grace_end - now)
        day_in_grace = self.config.GRACE_PERIOD_DAYS - days_until_suspension
        if day_in_grace not in self.config.GRACE_REMINDER_DAYS:
            return False
        last_sent = ensure_utc(subscription.last_reminder_sent_at)
        return last_sent is None or last_sent.date() != now.date()

    # ===== Individual sends =====

    async def send_expiry_warning(
        self, subscription: Subscription, days_left: int, now: datetime
    ) -> DunningResult:
        template = EXPIRY_WARNING_TEMPLATES.get(days_left, f"subscription_expiring_{days_left}days")
        return await self._send(
            subscription,
            action=f"expiry_warning_{days_left}d",
            template=template,
            title_key="expiry_warning",
            extra={"days_left": days_left},
            marker={
                "last_expiry_warning_days": days_left,
                "last_expiry_warning_period_end": subscription.current_period_end,
            },
        )

    async def send_grace_reminder(self, subscription: Subscription, now: datetime) -> DunningResult:
        grace_end = ensure_utc(subscription.grace_period_end_date)
        days_until_suspension = days_ceil(grace_end - now)
        day_in_grace = self.config.GRACE_PERIOD_DAYS - days_until_suspension
        template = "subscription_past_due_day5" if day_in_grace >= 5 else "subscription_past_due_day1"
        return await self._send(
            subscription,
            action=f"grace_reminder_day{day_in_grace}",
            template=template,
            title_key="grace_reminder",
            extra={"days_until_suspension": days_until_suspension, "day_in_grace": day_in_grace},
            marker={"last_reminder_sent_at": now},
        )

    async def send_past_due_notice(self, subscription: Subscription, now: datetime) -> DunningResult:
        return await self._send(
            subscription,
            action="past_due_notice",
            template="subscription_past_due",
            title_key="past_due_notice",
            marker={"past_due_notice_sent": True, "last_reminder_sent_at": now},
        )

    async def send_suspension_notice(self, subscription: Subscription, now: datetime) -> DunningResult:
        return await self._send(
            subscription,
            action="suspension_notice",
            template="subscription_suspended_notice",
            title_key="suspension_notice",
            marker={"suspension_notice_sent": True, "suspension_notice_sent_at": now},
        )

    async def send_expired_notice(self, subscription: Subscription, now: datetime) -> DunningResult:
        return await self._send(
            subscription,
            action="expired_notice",
            template="subscription_expired",
            title_key="expired_notice",
            marker={"expiry_notice_sent": True},
        )

    async def send_reactivation_confirmation(self, shop_id: UUID) -> DunningResult:
        subscription = self.subscription_repo.get_by_shop_id(shop_id)
        if subscription is None:
            logger.warning("No subscription for shop %s, skipping reactivation confirmation", shop_id)
            return DunningResult(
                shop_id=str(shop_id),
                action="reactivation_confirmation",
                success=False,
                error="Subscription not found",
            )
        return await self._send(
            subscription,
            action="reactivation_confirmation",
            template="subscription_reactivated",
            title_key="reactivation_confirmation",
        )

    async def send_payment_failed_notice(
        self, subscription: Subscription, reason: str | None = None
    ) -> DunningResult:
        return await self._send(
            subscription,
            action="payment_failed_notice",
            template="payment_failed",
            title_key="payment_failed_notice",
            extra={"reason": reason or "the payment was declined"},
        )

    # ===== Plumbing =====

    async def _guarded(
        self, subscription: Subscription, send: Awaitable[DunningResult]
    ) -> DunningResult:
        """Await one send inside a batch, turning database errors into a failed result."""
        try:
            return await send
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Dunning send failed for subscription %s", subscription.id)
            return DunningResult(
                shop_id=str(subscription.shop_id), action="error", success=False, error=str(exc)
            )

    def _variables(
        self, subscription: Subscription, shop: Any, admin: Any, plan: SubscriptionPlan | None
    ) -> dict[str, Any]:
        return {
            "shop_name": shop.name,
            "admin_name": admin.name or "there",
            "plan_name": plan.name if plan else subscription.plan_code,
            "amount": format_amount(subscription.current_price_cents, subscription.currency),
            "period_end": _format_date(subscription.current_period_end),
            "grace_end": _format_date(subscription.grace_period_end_date),
            "billing_url": f"{self.config.FRONTEND_URL.rstrip('/')}/settings/billing",
            "data_retention_days": self.config.DATA_RETENTION_DAYS,
        }

    def _plan_for(self, subscription: Subscription) -> SubscriptionPlan | None:
        if subscription.plan_id is not None:
            plan = self.plan_repo.get_by_id(subscription.plan_id)
            if plan is not None:
                return plan
        return self.plan_repo.get_by_code(subscription.plan_code)

    async def dispatch(self, job: Job) -> JobOutcome:
        """Queue ``job``, or run it inline when the broker cannot take it."""
        job_id = await self.dispatcher.submit(job)
        if job_id is not None:
            return JobOutcome(success=True, message_id=job_id)
        return await self.executor.execute(job)

    async def _send(
        self,
        subscription: Subscription,
        *,
        action: str,
        template: str,
        title_key: str,
        extra: dict[str, Any] | None = None,
        marker: dict[str, Any] | None = None,
    ) -> DunningResult:
        shop_id = subscription.shop_id
        shop = self.shop_repo.get_by_id(shop_id)
        if shop is None:
            logger.warning("Shop %s not found for %s", shop_id, action)
            return DunningResult(shop_id=str(shop_id), action=action, success=False, error="Shop not found")

        admin = self.shop_repo.get_admin(shop_id)
        if admin is None or not admin.email:
            logger.warning("Shop %s has no admin user, skipping %s", shop_id, action)
            return DunningResult(
                shop_id=str(shop_id),
                shop_name=shop.name,
                action=action,
                success=False,
                error="Shop admin not found",
            )

        variables = self._variables(subscription, shop, admin, self._plan_for(subscription))
        if extra:
            variables.update(extra)

        try:
            subject, html = self.templates.render(template, variables)
        except TemplateNotFoundError as exc:
            return DunningResult(
                shop_id=str(shop_id), shop_name=shop.name, action=action, success=False, error=str(exc)
            )

        outcome = await self.dispatch(email_job(str(admin.email), subject, html, shop_id=shop_id))
        if not outcome.success:
            logger.warning("Failed to send %s email to shop %s: %s", action, shop_id, outcome.error)
            return DunningResult(
                shop_id=str(shop_id),
                shop_name=shop.name,
                action=action,
                success=False,
                error=outcome.error or "Email delivery failed",
            )

        title = _NOTIFICATION_TITLES[title_key].format(
            days=variables.get("days_left") or variables.get("days_until_suspension") or ""
        )
        notified = await self.dispatch(
            notification_job(
                shop_id,
                title,
                subject,
                user_id=admin.id,
                data={"action": action, "billing_url": variables["billing_url"]},
            )
        )
        if not notified.success:
            logger.warning("In-app notification for %s failed for shop %s: %s", action, shop_id, notified.error)

        if marker:
            self.subscription_repo.update_fields(subscription.id, marker)
            self.subscription_repo.reload(subscription)

        logger.info("Sent %s to shop %s", action, shop_id)
        return DunningResult(shop_id=str(shop_id), shop_name=shop.name, action=action, success=True)
