"""Tests for JobExecutor, the side-effect runner shared by workers and inline fallback."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from duka_billing.models.notification import Notification
from duka_billing.models.payment import Payment
from duka_billing.schemas.job import Job, JobKind
from duka_billing.services.dispatch_service import (
    alert_job,
    email_job,
    message_job,
    notification_job,
    payment_callback_job,
    report_job,
)
from duka_billing.services.email_service import TransportResult
from duka_billing.services.job_executor import JobExecutor
from duka_billing.services.template_service import TemplateService
from tests.conftest import NOW


def _transport(result=None):
    service = MagicMock()
    service.send_email = AsyncMock(return_value=result or TransportResult(success=True, message_id="m1"))
    service.send_message = AsyncMock(return_value=result or TransportResult(success=True, message_id="m1"))
    return service


class TestTransports:
    @pytest.mark.asyncio
    async def test_email_job(self):
        email = _transport()
        outcome = await JobExecutor(email_service=email).execute(
            email_job("a@example.com", "Subject", "<p>Body</p>")
        )

        assert outcome.success is True
        assert outcome.message_id == "m1"
        email.send_email.assert_awaited_once_with("a@example.com", "Subject", "<p>Body</p>")

    @pytest.mark.asyncio
    async def test_email_failure_is_reported(self):
        email = _transport(TransportResult(success=False, error="421 try later"))
        outcome = await JobExecutor(email_service=email).execute(
            email_job("a@example.com", "Subject", "<p>Body</p>")
        )

        assert outcome.success is False
        assert outcome.error == "421 try later"

    @pytest.mark.asyncio
    async def test_message_job_uses_channel(self):
        messaging = _transport()
        job = message_job("+254700000000", "Pay now", channel="whatsapp")

        outcome = await JobExecutor(messaging_service=messaging).execute(job)

        assert outcome.success is True
        messaging.send_message.assert_awaited_once_with("+254700000000", "Pay now", "whatsapp")

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_without_raising(self):
        outcome = await JobExecutor().execute(Job(kind=JobKind.EMAIL, payload={"to": "x"}))

        assert outcome.success is False
        assert outcome.error.startswith("Invalid payload")


class TestNotifications:
    @pytest.mark.asyncio
    async def test_notification_with_shared_session(self, db_session, shop, admin):
        job = notification_job(shop.id, "Title", "Message", user_id=admin.id)

        outcome = await JobExecutor(db=db_session).execute(job)

        assert outcome.success is True
        notification = db_session.query(Notification).one()
        assert str(notification.id) == outcome.message_id
        assert notification.user_id == admin.id

    @pytest.mark.asyncio
    async def test_notification_opens_own_session(self, db_session, shop):
        outcome = await JobExecutor().execute(notification_job(shop.id, "Title", "Message"))

        assert outcome.success is True
        assert db_session.query(Notification).count() == 1


class TestAlerts:
    @pytest.mark.asyncio
    async def test_alert_notifies_and_emails_admin(self, db_session, shop, admin):
        email = _transport()
        job = alert_job(shop.id, "sku-1", "Sugar 1kg", alert_type="out_of_stock", reorder_level=5)

        outcome = await JobExecutor(db=db_session, email_service=email).execute(job)

        assert outcome.success is True
        notification = db_session.query(Notification).one()
        assert notification.title == "Sugar 1kg is out of stock"
        assert notification.category == "stock"
        to, subject, html = email.send_email.await_args.args
        assert to == "owner@example.com"
        assert subject == "Stock alert: Sugar 1kg"
        assert "out of stock" in html

    @pytest.mark.asyncio
    async def test_alert_without_admin_only_notifies(self, db_session, shop):
        email = _transport()

        outcome = await JobExecutor(db=db_session, email_service=email).execute(
            alert_job(shop.id, "sku-1", "Sugar 1kg")
        )

        assert outcome.success is True
        email.send_email.assert_not_awaited()
        assert db_session.query(Notification).count() == 1


class TestReports:
    @pytest.mark.asyncio
    async def test_report_totals_succeeded_payments(self, db_session, shop, admin):
        db_session.add_all(
            [
                Payment(
                    shop_id=shop.id,
                    provider_payment_id="pi_a",
                    amount_cents=150000,
                    status="succeeded",
                    paid_at=NOW,
                ),
                Payment(
                    shop_id=shop.id,
                    provider_payment_id="pi_b",
                    amount_cents=99900,
                    status="failed",
                ),
            ]
        )
        db_session.commit()
        email = _transport()
        job = report_job(shop.id, "payments", "2000-01-01T00:00:00+00:00", "2100-01-01T00:00:00+00:00")

        outcome = await JobExecutor(db=db_session, email_service=email).execute(job)

        assert outcome.success is True
        to, subject, html = email.send_email.await_args.args
        assert to == "owner@example.com"
        assert subject == "Your payments report is ready"
        assert "1500.00" in html
        assert "pi_b" in html
        notification = db_session.query(Notification).one()
        assert notification.data == {"total_cents": 150000, "count": 2}

    @pytest.mark.asyncio
    async def test_missing_template_fails(self, db_session, shop):
        email = _transport()
        executor = JobExecutor(
            db=db_session, email_service=email, template_service=TemplateService(templates={})
        )
        job = report_job(
            shop.id,
            "billing",
            "2026-03-01T00:00:00+00:00",
            "2026-03-31T00:00:00+00:00",
            email="ops@example.com",
        )

        outcome = await executor.execute(job)

        assert outcome.success is False
        assert "report_ready" in outcome.error
        email.send_email.assert_not_awaited()


class TestPaymentCallbacks:
    @pytest.mark.asyncio
    async def test_paid_callback_records_payment_and_notifies(self, db_session, shop, subscription):
        job = payment_callback_job(
            "ws_CO_001",
            shop_id=shop.id,
            amount_cents=250000,
            receipt_number="RKT12ABC",
            paid_at="2026-03-10T12:00:00+00:00",
        )

        outcome = await JobExecutor(db=db_session).execute(job)

        assert outcome.success is True
        payment = db_session.query(Payment).one()
        assert str(payment.id) == outcome.message_id
        assert payment.provider == "mpesa"
        assert payment.status == "succeeded"
        assert payment.receipt_number == "RKT12ABC"
        assert payment.currency == "KES"
        assert payment.subscription_id == subscription.id
        assert payment.paid_at is not None
        notification = db_session.query(Notification).one()
        assert notification.category == "payment"
        assert notification.title == "Payment received"
        assert notification.data["receipt_number"] == "RKT12ABC"

    @pytest.mark.asyncio
    async def test_repeated_callback_does_not_duplicate(self, db_session, shop, subscription):
        job = payment_callback_job("ws_CO_002", shop_id=shop.id, amount_cents=100000)
        executor = JobExecutor(db=db_session)

        await executor.execute(job)
        outcome = await executor.execute(job)

        assert outcome.success is True
        assert db_session.query(Payment).count() == 1
        assert db_session.query(Notification).count() == 1

    @pytest.mark.asyncio
    async def test_customer_cancelled_callback(self, db_session, shop):
        job = payment_callback_job(
            "ws_CO_003", shop_id=shop.id, amount_cents=100000, result_code=1032
        )

        await JobExecutor(db=db_session).execute(job)

        payment = db_session.query(Payment).one()
        assert payment.status == "canceled"
        assert payment.canceled_at is not None
        assert db_session.query(Notification).count() == 0

    @pytest.mark.asyncio
    async def test_failed_callback_keeps_result_code(self, db_session, shop):
        job = payment_callback_job(
            "ws_CO_004",
            shop_id=shop.id,
            amount_cents=100000,
            result_code=2001,
            result_desc="Wrong PIN",
        )

        await JobExecutor(db=db_session).execute(job)

        payment = db_session.query(Payment).one()
        assert payment.status == "failed"
        assert payment.failure_code == "2001"
        assert payment.failure_message == "Wrong PIN"
        assert payment.paid_at is None

    @pytest.mark.asyncio
    async def test_callback_without_shop_is_recorded_unlinked(self, db_session):
        outcome = await JobExecutor(db=db_session).execute(
            payment_callback_job("ws_CO_005", amount_cents=5000)
        )

        assert outcome.success is True
        payment = db_session.query(Payment).one()
        assert payment.shop_id is None
        assert db_session.query(Notification).count() == 0
