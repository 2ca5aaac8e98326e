"""Tests for idempotent payment provider webhook ingestion."""

import hashlib
import hmac
import json
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from duka_billing.models.notification import Notification
from duka_billing.models.payment import Payment
from duka_billing.models.shared import ensure_utc
from duka_billing.models.subscription import SubscriptionStatus
from duka_billing.models.webhook_event import WebhookEvent
from duka_billing.repositories.audit_log_repository import AuditLogRepository
from duka_billing.repositories.webhook_event_repository import WebhookEventRepository
from duka_billing.services.payment_provider import StripeProvider, parse_event
from duka_billing.services.webhook_ingestion import WebhookIngestionService
from tests.conftest import NOW, make_subscription

SECRET = "whsec_test_secret"


def _ts(dt):
    return int(dt.timestamp())


def _payload(event_type, obj, event_id="evt_1"):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": _ts(NOW),
        "data": {"object": obj},
    }


def _event(event_type, obj, event_id="evt_1"):
    return parse_event(_payload(event_type, obj, event_id))


def _sign(body: bytes, secret: str = SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _intent(intent_id="pi_1", amount=250000, **extra):
    obj = {"id": intent_id, "object": "payment_intent", "amount": amount, "currency": "kes"}
    obj.update(extra)
    return obj


@pytest.fixture
def service(db_session):
    return WebhookIngestionService(db_session, provider=StripeProvider(webhook_secret=SECRET))


@pytest.fixture
def linked_subscription(db_session, shop, admin, plan):
    return make_subscription(db_session, shop, plan, stripe_subscription_id="sub_123")


class TestLedger:
    @pytest.mark.asyncio
    async def test_first_delivery_is_processed(self, db_session, service):
        result = await service.process_event(_event("payment_intent.succeeded", _intent()), now=NOW)

        assert result.status == "processed"
        row = WebhookEventRepository(db_session).get_by_event_id("evt_1")
        assert row.processed is True
        assert row.locked_at is None
        assert ensure_utc(row.expires_at) == NOW + timedelta(days=90)

    @pytest.mark.asyncio
    async def test_duplicate_delivery_has_no_effect(self, db_session, service):
        event = _event("payment_intent.succeeded", _intent())
        await service.process_event(event, now=NOW)

        result = await service.process_event(event, now=NOW + timedelta(minutes=1))

        assert result.status == "duplicate"
        assert db_session.query(Payment).count() == 1
        assert db_session.query(WebhookEvent).count() == 1

    @pytest.mark.asyncio
    async def test_claimed_event_is_reported_in_progress(self, db_session, service):
        event = _event("payment_intent.succeeded", _intent())
        WebhookEventRepository(db_session).create_claimed(
            event_id="evt_1", event_type=event.event_type, payload=event.payload, provider="stripe", now=NOW
        )

        result = await service.process_event(event, now=NOW + timedelta(seconds=60))

        assert result.status == "in_progress"
        assert db_session.query(Payment).count() == 0

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, db_session, service):
        event = _event("payment_intent.succeeded", _intent())
        WebhookEventRepository(db_session).create_claimed(
            event_id="evt_1", event_type=event.event_type, payload=event.payload, provider="stripe", now=NOW
        )

        result = await service.process_event(event, now=NOW + timedelta(minutes=10))

        assert result.status == "processed"
        assert db_session.query(Payment).count() == 1

    @pytest.mark.asyncio
    async def test_lost_insert_race_is_in_progress(self, db_session, service):
        event = _event("payment_intent.succeeded", _intent())
        WebhookEventRepository(db_session).create_claimed(
            event_id="evt_1", event_type=event.event_type, payload=event.payload, provider="stripe", now=NOW
        )

        with patch.object(WebhookEventRepository, "get_by_event_id", return_value=None):
            result = await service.process_event(event, now=NOW)

        assert result.status == "in_progress"
        assert db_session.query(WebhookEvent).count() == 1

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ledgered_and_ignored(self, db_session, service):
        result = await service.process_event(_event("product.created", {"id": "prod_1"}), now=NOW)

        assert result.status == "ignored"
        assert WebhookEventRepository(db_session).get_by_event_id("evt_1").processed is True

    @pytest.mark.asyncio
    async def test_handler_failure_is_recorded_and_replayable(self, db_session):
        with patch.object(
            WebhookIngestionService, "_handle_payment_intent", side_effect=ValueError("boom")
        ):
            failing = WebhookIngestionService(db_session)
            result = await failing.process_event(_event("payment_intent.succeeded", _intent()), now=NOW)

        assert result.status == "failed"
        row = WebhookEventRepository(db_session).get_by_event_id("evt_1")
        assert row.processed is False
        assert row.retry_count == 1
        assert "boom" in row.error
        assert row.locked_at is None

        replay = await WebhookIngestionService(db_session).replay_failed_events()

        assert (replay.attempted, replay.succeeded, replay.failed) == (1, 1, 0)
        db_session.refresh(row)
        assert row.processed is True
        assert db_session.query(Payment).count() == 1

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_is_recorded(self, db_session, service):
        malformed = _intent(metadata=["not", "a", "mapping"])

        result = await service.process_event(_event("payment_intent.succeeded", malformed), now=NOW)

        assert result.status == "failed"
        row = WebhookEventRepository(db_session).get_by_event_id("evt_1")
        assert row.processed is False
        assert row.retry_count == 1
        assert row.error.startswith("AttributeError")
        assert row.locked_at is None

    @pytest.mark.asyncio
    async def test_replay_continues_past_a_poisoned_event(self, db_session, service):
        repo = WebhookEventRepository(db_session)
        payloads = {
            "evt_bad": _payload("payment_intent.succeeded", _intent("pi_bad", metadata=["x"]), "evt_bad"),
            "evt_good": _payload("payment_intent.succeeded", _intent("pi_good"), "evt_good"),
        }
        for event_id, payload in payloads.items():
            repo.create_claimed(
                event_id=event_id,
                event_type="payment_intent.succeeded",
                payload=payload,
                provider="stripe",
                now=NOW,
            )
            repo.mark_failed(event_id, "earlier failure", NOW)

        replay = await service.replay_failed_events()

        assert (replay.attempted, replay.succeeded, replay.failed) == (2, 1, 1)
        assert repo.get_by_event_id("evt_good").processed is True
        bad = repo.get_by_event_id("evt_bad")
        db_session.refresh(bad)
        assert bad.processed is False
        assert bad.retry_count == 2
        assert [p.provider_payment_id for p in db_session.query(Payment).all()] == ["pi_good"]

    @pytest.mark.asyncio
    async def test_replay_skips_exhausted_events(self, db_session, service):
        repo = WebhookEventRepository(db_session)
        repo.create_claimed(
            event_id="evt_1",
            event_type="payment_intent.succeeded",
            payload=_payload("payment_intent.succeeded", _intent()),
            provider="stripe",
            now=NOW,
        )
        for _ in range(5):
            repo.mark_failed("evt_1", "still broken", NOW)

        replay = await service.replay_failed_events()

        assert replay.attempted == 0

    def test_purge_removes_only_expired_processed_rows(self, db_session, service):
        repo = WebhookEventRepository(db_session)
        for event_id in ("evt_old", "evt_recent", "evt_pending"):
            repo.create_claimed(
                event_id=event_id, event_type="x", payload={}, provider="stripe", now=NOW
            )
        repo.mark_processed("evt_old", NOW - timedelta(days=100), retention_days=90)
        repo.mark_processed("evt_recent", NOW - timedelta(days=10), retention_days=90)

        assert service.purge_expired_events(now=NOW) == 1
        remaining = {row.event_id for row in db_session.query(WebhookEvent).all()}
        assert remaining == {"evt_recent", "evt_pending"}


class TestIngest:
    @pytest.mark.asyncio
    async def test_valid_signature_is_processed(self, db_session, service):
        body = json.dumps(_payload("payment_intent.succeeded", _intent())).encode()

        result = await service.ingest(body, _sign(body))

        assert result.status == "processed"
        assert result.event_id == "evt_1"

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected_without_ledger_row(self, db_session, service):
        body = json.dumps(_payload("payment_intent.succeeded", _intent())).encode()

        result = await service.ingest(body, _sign(body, secret="whsec_other"))

        assert result.status == "invalid_signature"
        assert db_session.query(WebhookEvent).count() == 0

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, db_session, service):
        result = await service.ingest(b"{}", None)

        assert result.status == "invalid_signature"
        assert "Missing" in result.error


class TestPayments:
    @pytest.mark.asyncio
    async def test_payment_intent_links_shop_and_subscription(
        self, db_session, service, linked_subscription
    ):
        intent = _intent(metadata={"shop_id": str(linked_subscription.shop_id)})

        await service.process_event(_event("payment_intent.succeeded", intent), now=NOW)

        payment = db_session.query(Payment).one()
        assert payment.status == "succeeded"
        assert payment.currency == "KES"
        assert payment.shop_id == linked_subscription.shop_id
        assert payment.subscription_id == linked_subscription.id
        assert ensure_utc(payment.paid_at) == NOW

    @pytest.mark.asyncio
    async def test_failed_intent_keeps_failure_reason(self, db_session, service):
        intent = _intent(last_payment_error={"code": "card_declined", "message": "Declined"})

        await service.process_event(_event("payment_intent.payment_failed", intent), now=NOW)

        payment = db_session.query(Payment).one()
        assert payment.status == "failed"
        assert payment.failure_code == "card_declined"
        assert payment.failure_message == "Declined"

    @pytest.mark.asyncio
    async def test_refund_counted_once_per_refund_id(self, db_session, service):
        await service.process_event(_event("payment_intent.succeeded", _intent(amount=1000)), now=NOW)
        charge = {
            "id": "ch_1",
            "payment_intent": "pi_1",
            "amount": 1000,
            "refunds": {"data": [{"id": "re_1", "amount": 400}]},
        }
        await service.process_event(_event("charge.refunded", charge, "evt_r1"), now=NOW)

        charge["refunds"]["data"].append({"id": "re_2", "amount": 300})
        await service.process_event(_event("charge.refunded", charge, "evt_r2"), now=NOW)

        payment = db_session.query(Payment).one()
        db_session.refresh(payment)
        assert payment.amount_refunded_cents == 700

    @pytest.mark.asyncio
    async def test_refund_total_without_list_never_decreases(self, db_session, service):
        charge = {"id": "ch_2", "payment_intent": "pi_2", "amount": 1000, "amount_refunded": 500}
        await service.process_event(_event("charge.refunded", charge, "evt_r1"), now=NOW)
        charge["amount_refunded"] = 300
        await service.process_event(_event("charge.refunded", charge, "evt_r2"), now=NOW)

        payment = db_session.query(Payment).one()
        db_session.refresh(payment)
        assert payment.amount_refunded_cents == 500

    @pytest.mark.asyncio
    async def test_charge_succeeded_stores_receipt(self, db_session, service):
        await service.process_event(_event("payment_intent.succeeded", _intent()), now=NOW)
        charge = {"id": "ch_1", "payment_intent": "pi_1", "receipt_url": "https://pay.example/r/1"}

        await service.process_event(_event("charge.succeeded", charge, "evt_c1"), now=NOW)

        payment = db_session.query(Payment).one()
        db_session.refresh(payment)
        assert payment.receipt_url == "https://pay.example/r/1"
        assert payment.amount_cents == 250000

    @pytest.mark.asyncio
    async def test_customer_update_refreshes_shop_contact(self, db_session, service, shop):
        customer = {"id": "cus_test123", "email": "new@example.com", "phone": "+254700000000"}

        await service.process_event(_event("customer.updated", customer), now=NOW)

        db_session.refresh(shop)
        assert shop.email == "new@example.com"
        assert shop.phone == "+254700000000"


class TestSubscriptionEvents:
    @pytest.mark.asyncio
    async def test_provider_past_due_starts_grace(self, db_session, service, linked_subscription):
        remote = {"id": "sub_123", "status": "past_due", "customer": "cus_test123"}

        await service.process_event(_event("customer.subscription.updated", remote), now=NOW)

        db_session.refresh(linked_subscription)
        assert linked_subscription.status == SubscriptionStatus.PAST_DUE.value
        assert ensure_utc(linked_subscription.grace_period_end_date) == NOW + timedelta(days=7)
        log = AuditLogRepository(db_session).get_all(action="status_changed")[0]
        assert log.performed_by == "webhook:stripe"
        assert log.reason == "customer.subscription.updated"

    @pytest.mark.asyncio
    async def test_provider_past_due_does_not_undo_suspension(
        self, db_session, service, shop, admin, plan
    ):
        sub = make_subscription(
            db_session,
            shop,
            plan,
            stripe_subscription_id="sub_123",
            status=SubscriptionStatus.SUSPENDED.value,
            suspended_at=NOW - timedelta(days=1),
        )
        remote = {"id": "sub_123", "status": "past_due", "cancel_at_period_end": True}

        await service.process_event(_event("customer.subscription.updated", remote), now=NOW)

        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.SUSPENDED.value
        assert sub.auto_renew is False

    @pytest.mark.asyncio
    async def test_subscription_period_from_items(self, db_session, service, linked_subscription):
        start, end = NOW, NOW + timedelta(days=30)
        remote = {
            "id": "sub_123",
            "status": "active",
            "items": {"data": [{"current_period_start": _ts(start), "current_period_end": _ts(end)}]},
        }

        await service.process_event(_event("customer.subscription.updated", remote), now=NOW)

        db_session.refresh(linked_subscription)
        assert ensure_utc(linked_subscription.current_period_end) == end
        assert ensure_utc(linked_subscription.current_period_start) == start

    @pytest.mark.asyncio
    async def test_deleted_subscription_is_cancelled(self, db_session, service, linked_subscription):
        remote = {"id": "sub_123", "status": "canceled", "canceled_at": _ts(NOW)}

        await service.process_event(_event("customer.subscription.deleted", remote), now=NOW)

        db_session.refresh(linked_subscription)
        assert linked_subscription.status == SubscriptionStatus.CANCELLED.value
        assert ensure_utc(linked_subscription.cancelled_at) == NOW

    @pytest.mark.asyncio
    async def test_paused_subscription_is_suspended(self, db_session, service, linked_subscription):
        remote = {"id": "sub_123", "status": "paused"}

        result = await service.process_event(_event("customer.subscription.paused", remote), now=NOW)

        assert result.status == "processed"
        db_session.refresh(linked_subscription)
        assert linked_subscription.status == SubscriptionStatus.SUSPENDED.value
        assert ensure_utc(linked_subscription.suspended_at) == NOW
        assert linked_subscription.grace_period_end_date is None

    @pytest.mark.asyncio
    async def test_resumed_subscription_is_active_again(self, db_session, service, shop, admin, plan):
        sub = make_subscription(
            db_session,
            shop,
            plan,
            stripe_subscription_id="sub_123",
            status=SubscriptionStatus.SUSPENDED.value,
            suspended_at=NOW - timedelta(days=3),
            suspension_notice_sent=True,
        )
        remote = {"id": "sub_123", "status": "active"}

        result = await service.process_event(_event("customer.subscription.resumed", remote), now=NOW)

        assert result.status == "processed"
        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.suspension_notice_sent is False
        assert ensure_utc(sub.reactivated_at) == NOW

    @pytest.mark.asyncio
    async def test_trial_will_end_refreshes_period(self, db_session, service, shop, admin, plan):
        sub = make_subscription(
            db_session, shop, plan, stripe_subscription_id="sub_123", status=SubscriptionStatus.TRIAL.value
        )
        trial_end = NOW + timedelta(days=3)
        remote = {"id": "sub_123", "status": "trialing", "current_period_end": _ts(trial_end)}

        result = await service.process_event(
            _event("customer.subscription.trial_will_end", remote), now=NOW
        )

        assert result.status == "processed"
        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.TRIAL.value
        assert ensure_utc(sub.current_period_end) == trial_end

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_ignored(self, db_session, service):
        remote = {"id": "sub_missing", "status": "active"}

        result = await service.process_event(_event("customer.subscription.updated", remote), now=NOW)

        assert result.status == "processed"


class TestInvoiceEvents:
    @pytest.mark.asyncio
    async def test_invoice_paid_reactivates_past_due(self, db_session, service, shop, admin, plan):
        sub = make_subscription(
            db_session,
            shop,
            plan,
            stripe_subscription_id="sub_123",
            status=SubscriptionStatus.PAST_DUE.value,
            current_period_end=NOW - timedelta(days=2),
            grace_period_end_date=NOW + timedelta(days=5),
            past_due_notice_sent=True,
            failed_payment_attempts=2,
        )
        period_end = NOW + timedelta(days=30)
        invoice = {
            "id": "in_1",
            "subscription": "sub_123",
            "amount_paid": 250000,
            "status_transitions": {"paid_at": _ts(NOW)},
            "lines": {"data": [{"period": {"start": _ts(NOW), "end": _ts(period_end)}}]},
        }

        await service.process_event(_event("invoice.paid", invoice), now=NOW)

        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.grace_period_end_date is None
        assert sub.past_due_notice_sent is False
        assert sub.failed_payment_attempts == 0
        assert sub.latest_invoice_id == "in_1"
        assert ensure_utc(sub.current_period_end) == period_end
        assert ensure_utc(sub.reactivated_at) == NOW
        titles = [n.title for n in db_session.query(Notification).all()]
        assert titles == ["Subscription reactivated"]

    @pytest.mark.asyncio
    async def test_invoice_paid_without_lines_extends_by_cycle(
        self, db_session, service, linked_subscription
    ):
        old_end = ensure_utc(linked_subscription.current_period_end)
        invoice = {"id": "in_2", "subscription": "sub_123", "amount_paid": 250000}

        await service.process_event(_event("invoice.paid", invoice), now=NOW)

        db_session.refresh(linked_subscription)
        new_end = ensure_utc(linked_subscription.current_period_end)
        assert new_end.month == old_end.month + 1
        assert new_end.day == old_end.day
        assert db_session.query(Notification).count() == 0

    @pytest.mark.asyncio
    async def test_invoice_paid_leaves_cancelled_subscription_cancelled(
        self, db_session, service, shop, admin, plan
    ):
        old_end = NOW - timedelta(days=1)
        sub = make_subscription(
            db_session,
            shop,
            plan,
            stripe_subscription_id="sub_123",
            status=SubscriptionStatus.CANCELLED.value,
            auto_renew=False,
            cancelled_at=NOW - timedelta(days=2),
            current_period_end=old_end,
        )
        invoice = {"id": "in_late", "subscription": "sub_123", "amount_paid": 250000}

        result = await service.process_event(_event("invoice.paid", invoice), now=NOW)

        assert result.status == "processed"
        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.CANCELLED.value
        assert sub.latest_invoice_id == "in_late"
        assert sub.last_payment_amount_cents == 250000
        assert ensure_utc(sub.current_period_end) == old_end
        assert sub.reactivated_at is None
        assert AuditLogRepository(db_session).get_all(action="status_changed") == []
        assert db_session.query(Notification).count() == 0

    @pytest.mark.asyncio
    async def test_invoice_payment_failed_counts_attempts(
        self, db_session, service, linked_subscription
    ):
        invoice = {"id": "in_3", "subscription": "sub_123", "attempt_count": 2}

        await service.process_event(_event("invoice.payment_failed", invoice), now=NOW)

        db_session.refresh(linked_subscription)
        assert linked_subscription.failed_payment_attempts == 2
        assert linked_subscription.status == SubscriptionStatus.ACTIVE.value
        titles = [n.title for n in db_session.query(Notification).all()]
        assert titles == ["Payment failed"]
