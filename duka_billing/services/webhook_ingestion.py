"""Applies payment provider webhook events at most once.

Each event id moves through the ledger as::

    UNSEEN -> LEDGERED (claimed) -> PROCESSED
                                 -> FAILED (retry_count + 1, replayable)

The ledger row is written and claimed before any handler runs. Handlers
overwrite local fields from the event payload rather than applying deltas,
except refunds, which are de-duplicated by refund id before their amount is
added.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.core.config import Settings, settings
from duka_billing.models.payment import PaymentStatus
from duka_billing.models.shared import ensure_utc, utc_now
from duka_billing.models.subscription import (
    DUNNING_MARKER_RESET,
    LAPSED_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from duka_billing.repositories.payment_repository import PaymentRepository
from duka_billing.repositories.shop_repository import ShopRepository
from duka_billing.repositories.subscription_repository import SubscriptionRepository
from duka_billing.repositories.webhook_event_repository import WebhookEventRepository
from duka_billing.schemas.webhook_event import IngestResult, ReplayResult
from duka_billing.services.audit_service import AuditService, webhook_actor
from duka_billing.services.dispatch_service import Dispatcher
from duka_billing.services.dunning_service import DunningService
from duka_billing.services.payment_provider import (
    PAYMENT_INTENT_STATUSES,
    ProviderEvent,
    StripeProvider,
    WebhookVerificationError,
    from_unix,
    parse_event,
)
from duka_billing.services.subscription_dates import add_billing_cycle

logger = logging.getLogger(__name__)

# Stripe subscription status -> local status; None leaves the local status alone
STRIPE_SUBSCRIPTION_STATUSES: dict[str, str | None] = {
    "trialing": SubscriptionStatus.TRIAL.value,
    "active": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.SUSPENDED.value,
    "canceled": SubscriptionStatus.CANCELLED.value,
    "incomplete_expired": SubscriptionStatus.CANCELLED.value,
    "incomplete": None,
}


def _ref_id(value: Any) -> str | None:
    """Provider references arrive either as an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


class WebhookIngestionService:
    def __init__(
        self,
        db: Session,
        dispatcher: Dispatcher | None = None,
        provider: StripeProvider | None = None,
        dunning: DunningService | None = None,
        config: Settings = settings,
    ):
        self.db = db
        self.config = config
        self.provider = provider or StripeProvider()
        self.dunning = dunning or DunningService(db, dispatcher=dispatcher, config=config)
        self.ledger = WebhookEventRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.shop_repo = ShopRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.audit = AuditService(db)
        self.actor = webhook_actor(self.provider.provider_name.value)
        self._handlers = {
            "customer.subscription.created": self._handle_subscription,
            "customer.subscription.updated": self._handle_subscription,
            "customer.subscription.deleted": self._handle_subscription,
            "customer.subscription.paused": self._handle_subscription,
            "customer.subscription.resumed": self._handle_subscription,
            "customer.subscription.trial_will_end": self._handle_subscription,
            "customer.updated": self._handle_customer_updated,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "charge.succeeded": self._handle_charge_succeeded,
            "charge.refunded": self._handle_charge_refunded,
        }
        for event_type in PAYMENT_INTENT_STATUSES:
            self._handlers[event_type] = self._handle_payment_intent

    # ===== Entry points =====

    async def ingest(self, raw_body: bytes, signature: str | None) -> IngestResult:
        """Verify and apply one delivery. Never raises for bad input or handler errors."""
        try:
            event = self.provider.construct_event(raw_body, signature)
        except WebhookVerificationError as exc:
            logger.warning("Rejected webhook delivery: %s", exc)
            return IngestResult(status="invalid_signature", error=str(exc))
        return await self.process_event(event)

    async def process_event(self, event: ProviderEvent, now: datetime | None = None) -> IngestResult:
        now = now or utc_now()
        existing = self.ledger.get_by_event_id(event.event_id)
        if existing is not None and existing.processed:
            logger.info("Webhook event %s already processed", event.event_id)
            return self._result("duplicate", event)

        if existing is None:
            record = self.ledger.create_claimed(
                event_id=event.event_id,
                event_type=event.event_type,
                payload=event.payload,
                provider=self.provider.provider_name.value,
                now=now,
            )
            if record is None:
                logger.info("Webhook event %s is being processed by another request", event.event_id)
                return self._result("in_progress", event)
        elif not self.ledger.claim(event.event_id, now, self.config.WEBHOOK_LOCK_TIMEOUT_SECONDS):
            logger.info("Webhook event %s is claimed by another request", event.event_id)
            return self._result("in_progress", event)

        return await self._run_claimed(event, now)

    async def replay_failed_events(self, limit: int = 50) -> ReplayResult:
        """Re-run unprocessed ledger rows from their stored payload."""
        result = ReplayResult()
        rows = self.ledger.get_replayable(self.config.WEBHOOK_MAX_RETRIES, limit=limit)
        for row in rows:
            now = utc_now()
            if not self.ledger.claim(row.event_id, now, self.config.WEBHOOK_LOCK_TIMEOUT_SECONDS):
                continue
            try:
                event = parse_event(row.payload)
            except WebhookVerificationError as exc:
                self.ledger.mark_failed(row.event_id, str(exc), now)
                result.attempted += 1
                result.failed += 1
                continue
            result.attempted += 1
            outcome = await self._run_claimed(event, now)
            if outcome.status == "failed":
                result.failed += 1
            else:
                result.succeeded += 1
        if result.attempted:
            logger.info(
                "Replayed %d webhook events: %d succeeded, %d failed",
                result.attempted,
                result.succeeded,
                result.failed,
            )
        return result

    def purge_expired_events(self, now: datetime | None = None) -> int:
        count = self.ledger.delete_expired(now or utc_now())
        if count:
            logger.info("Purged %d expired webhook events", count)
        return count

    # ===== Processing =====

    async def _run_claimed(self, event: ProviderEvent, now: datetime) -> IngestResult:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Unhandled webhook event type %s (%s)", event.event_type, event.event_id)
            self.ledger.mark_processed(event.event_id, now, self.config.WEBHOOK_EVENT_RETENTION_DAYS)
            return self._result("ignored", event)

        try:
            await handler(event, now)
        except Exception as exc:
            self.db.rollback()
            logger.exception("Webhook event %s (%s) failed", event.event_id, event.event_type)
            self.ledger.mark_failed(event.event_id, f"{type(exc).__name__}: {exc}", now)
            return self._result("failed", event, error=str(exc))

        self.ledger.mark_processed(event.event_id, now, self.config.WEBHOOK_EVENT_RETENTION_DAYS)
        logger.info("Processed webhook event %s (%s)", event.event_id, event.event_type)
        return self._result("processed", event)

    @staticmethod
    def _result(status: str, event: ProviderEvent, error: str | None = None) -> IngestResult:
        return IngestResult(
            status=status, event_id=event.event_id, event_type=event.event_type, error=error
        )

    # ===== Lookups =====

    def _shop_id_for(self, obj: dict[str, Any]) -> UUID | None:
        metadata = obj.get("metadata") or {}
        if metadata.get("shop_id"):
            return UUID(str(metadata["shop_id"]))
        customer_id = _ref_id(obj.get("customer"))
        if customer_id:
            shop = self.shop_repo.get_by_stripe_customer_id(customer_id)
            if shop is not None:
                return shop.id
        return None

    def _subscription_for(
        self, stripe_subscription_id: str | None, obj: dict[str, Any]
    ) -> Subscription | None:
        if stripe_subscription_id:
            subscription = self.subscription_repo.get_by_stripe_subscription_id(stripe_subscription_id)
            if subscription is not None:
                return subscription
        shop_id = self._shop_id_for(obj)
        if shop_id is None:
            return None
        return self.subscription_repo.get_by_shop_id(shop_id)

    def _write_status(
        self,
        subscription: Subscription,
        new_status: str,
        values: dict[str, Any],
        now: datetime,
        reason: str,
    ) -> str:
        """Overwrite fields, keeping the grace date set only while past due.

        Returns the previous status.
        """
        old_status = subscription.status
        values = dict(values)
        values["status"] = new_status
        if new_status == SubscriptionStatus.PAST_DUE.value:
            if old_status != SubscriptionStatus.PAST_DUE.value or subscription.grace_period_end_date is None:
                values["grace_period_end_date"] = now + timedelta(days=self.config.GRACE_PERIOD_DAYS)
        else:
            values["grace_period_end_date"] = None
        if new_status == SubscriptionStatus.SUSPENDED.value and old_status != new_status:
            values["suspended_at"] = now
        if new_status in (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value):
            values.update(DUNNING_MARKER_RESET)
            if old_status in LAPSED_STATUSES:
                values["reactivated_at"] = now

        self.subscription_repo.update_fields(subscription.id, values)
        self.subscription_repo.reload(subscription)
        if old_status != new_status:
            self.audit.log_status_change(
                shop_id=subscription.shop_id,
                resource_type="subscription",
                resource_id=subscription.id,
                old_status=old_status,
                new_status=new_status,
                performed_by=self.actor,
                reason=reason,
            )
        return old_status

    # ===== Handlers =====

    async def _handle_payment_intent(self, event: ProviderEvent, now: datetime) -> None:
        intent = event.data_object
        status = PAYMENT_INTENT_STATUSES[event.event_type]
        values: dict[str, Any] = {
            "amount_cents": int(intent.get("amount") or 0),
            "currency": str(intent.get("currency") or "kes").upper(),
            "status": status.value,
        }
        shop_id = self._shop_id_for(intent)
        if shop_id is not None:
            values["shop_id"] = shop_id
            subscription = self.subscription_repo.get_by_shop_id(shop_id)
            if subscription is not None:
                values["subscription_id"] = subscription.id
        if status == PaymentStatus.SUCCEEDED:
            values["paid_at"] = event.created or now
        elif status == PaymentStatus.CANCELED:
            values["canceled_at"] = from_unix(intent.get("canceled_at")) or now
        elif status == PaymentStatus.FAILED:
            error = intent.get("last_payment_error") or {}
            values["failure_code"] = error.get("code")
            values["failure_message"] = error.get("message") or "Payment failed"

        self.payment_repo.upsert_from_provider(str(intent["id"]), values)

    async def _handle_subscription(self, event: ProviderEvent, now: datetime) -> None:
        remote = event.data_object
        stripe_subscription_id = _ref_id(remote.get("id"))
        subscription = self._subscription_for(stripe_subscription_id, remote)
        if subscription is None:
            logger.warning(
                "No local subscription for Stripe subscription %s, ignoring %s",
                stripe_subscription_id,
                event.event_type,
            )
            return

        if event.event_type == "customer.subscription.deleted":
            new_status: str | None = SubscriptionStatus.CANCELLED.value
        else:
            new_status = STRIPE_SUBSCRIPTION_STATUSES.get(str(remote.get("status")))
            # The sweep may already have moved past the provider's dunning state
            if new_status == SubscriptionStatus.PAST_DUE.value and subscription.status in (
                SubscriptionStatus.SUSPENDED.value,
                SubscriptionStatus.EXPIRED.value,
                SubscriptionStatus.CANCELLED.value,
            ):
                new_status = None

        # Newer API versions carry the period on the subscription items
        items = (remote.get("items") or {}).get("data") or []
        period_source = items[0] if items else {}
        period_start = from_unix(remote.get("current_period_start") or period_source.get("current_period_start"))
        period_end = from_unix(remote.get("current_period_end") or period_source.get("current_period_end"))

        values: dict[str, Any] = {"stripe_subscription_id": stripe_subscription_id}
        if period_start is not None:
            values["current_period_start"] = period_start
        if period_end is not None:
            values["current_period_end"] = period_end
        if "cancel_at_period_end" in remote:
            values["auto_renew"] = not remote["cancel_at_period_end"]
        canceled_at = from_unix(remote.get("canceled_at"))
        if canceled_at is not None:
            values["cancelled_at"] = canceled_at

        if new_status is None:
            self.subscription_repo.update_fields(subscription.id, values)
            self.subscription_repo.reload(subscription)
            return
        if new_status == SubscriptionStatus.CANCELLED.value and "cancelled_at" not in values:
            values["cancelled_at"] = now
        self._write_status(subscription, new_status, values, now, reason=event.event_type)

    async def _handle_customer_updated(self, event: ProviderEvent, now: datetime) -> None:
        customer = event.data_object
        shop = self.shop_repo.get_by_stripe_customer_id(str(customer["id"]))
        if shop is None:
            logger.info("No shop for Stripe customer %s", customer["id"])
            return
        self.shop_repo.update_contact(shop.id, email=customer.get("email"), phone=customer.get("phone"))

    async def _handle_invoice_paid(self, event: ProviderEvent, now: datetime) -> None:
        invoice = event.data_object
        subscription = self._subscription_for(self._invoice_subscription_id(invoice), invoice)
        if subscription is None:
            logger.warning("No local subscription for paid invoice %s", invoice.get("id"))
            return

        transitions = invoice.get("status_transitions") or {}
        paid_at = from_unix(transitions.get("paid_at")) or now
        values: dict[str, Any] = {
            "latest_invoice_id": _ref_id(invoice.get("id")),
            "last_payment_at": paid_at,
            "last_payment_amount_cents": int(invoice.get("amount_paid") or 0),
            "failed_payment_attempts": 0,
        }
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            # Cancelled is terminal; only an operator reactivation restores service
            logger.warning(
                "Paid invoice %s for cancelled subscription %s, status left unchanged",
                invoice.get("id"),
                subscription.id,
            )
            self.subscription_repo.update_fields(subscription.id, values)
            self.subscription_repo.reload(subscription)
            return

        values["current_period_end"] = self._paid_period_end(invoice, subscription, now)
        period_start = self._line_period(invoice, "start")
        if period_start is not None:
            values["current_period_start"] = period_start

        old_status = self._write_status(
            subscription, SubscriptionStatus.ACTIVE.value, values, now, reason="invoice.paid"
        )
        if old_status in LAPSED_STATUSES:
            await self.dunning.send_reactivation_confirmation(subscription.shop_id)

    async def _handle_invoice_payment_failed(self, event: ProviderEvent, now: datetime) -> None:
        invoice = event.data_object
        subscription = self._subscription_for(self._invoice_subscription_id(invoice), invoice)
        if subscription is None:
            logger.warning("No local subscription for failed invoice %s", invoice.get("id"))
            return

        self.subscription_repo.update_fields(
            subscription.id,
            {
                "failed_payment_attempts": int(invoice.get("attempt_count") or 0),
                "latest_invoice_id": _ref_id(invoice.get("id")),
            },
        )
        self.subscription_repo.reload(subscription)
        error = invoice.get("last_finalization_error") or {}
        result = await self.dunning.send_payment_failed_notice(subscription, error.get("message"))
        if not result.success:
            logger.warning("Payment failed notice not sent for shop %s: %s", result.shop_id, result.error)

    async def _handle_charge_succeeded(self, event: ProviderEvent, now: datetime) -> None:
        charge = event.data_object
        payment_intent_id = _ref_id(charge.get("payment_intent"))
        if not payment_intent_id:
            logger.info("Charge %s has no payment intent, nothing to record", charge.get("id"))
            return
        values: dict[str, Any] = {"receipt_url": charge.get("receipt_url")}
        if self.payment_repo.get_by_provider_payment_id(payment_intent_id) is None:
            values.update(
                amount_cents=int(charge.get("amount") or 0),
                currency=str(charge.get("currency") or "kes").upper(),
                status=PaymentStatus.SUCCEEDED.value,
                paid_at=event.created or now,
                shop_id=self._shop_id_for(charge),
            )
        self.payment_repo.upsert_from_provider(payment_intent_id, values)

    async def _handle_charge_refunded(self, event: ProviderEvent, now: datetime) -> None:
        charge = event.data_object
        payment_intent_id = _ref_id(charge.get("payment_intent")) or _ref_id(charge.get("id"))
        payment = self.payment_repo.get_by_provider_payment_id(payment_intent_id)
        if payment is None:
            payment = self.payment_repo.upsert_from_provider(
                payment_intent_id,
                {
                    "amount_cents": int(charge.get("amount") or 0),
                    "currency": str(charge.get("currency") or "kes").upper(),
                    "status": PaymentStatus.SUCCEEDED.value,
                    "shop_id": self._shop_id_for(charge),
                },
            )

        refunds = (charge.get("refunds") or {}).get("data") or []
        if not refunds:
            # Refund list not expanded: the provider total is authoritative
            total = int(charge.get("amount_refunded") or 0)
            if total > (payment.amount_refunded_cents or 0):
                self.payment_repo.upsert_from_provider(payment_intent_id, {"amount_refunded_cents": total})
            return

        for refund in refunds:
            applied = self.payment_repo.record_refund(
                payment.id, str(refund["id"]), int(refund.get("amount") or 0)
            )
            if not applied:
                logger.info("Refund %s already recorded", refund["id"])

    # ===== Invoice helpers =====

    @staticmethod
    def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
        subscription_ref = _ref_id(invoice.get("subscription"))
        if subscription_ref:
            return subscription_ref
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        return _ref_id(details.get("subscription"))

    @staticmethod
    def _line_period(invoice: dict[str, Any], edge: str) -> datetime | None:
        lines = (invoice.get("lines") or {}).get("data") or []
        for line in lines:
            value = (line.get("period") or {}).get(edge)
            if value:
                return from_unix(value)
        return None

    def _paid_period_end(
        self, invoice: dict[str, Any], subscription: Subscription, now: datetime
    ) -> datetime:
        line_end = self._line_period(invoice, "end")
        if line_end is not None and line_end > now:
            return line_end
        current_end = ensure_utc(subscription.current_period_end)
        base = current_end if current_end and current_end > now else now
        return add_billing_cycle(base, subscription.billing_cycle)
