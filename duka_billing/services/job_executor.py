"""Runs the side effect of a dispatch job.

Shared by the arq worker tasks and by callers that fall back to inline
execution when the broker is unavailable.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from duka_billing.core import database
from duka_billing.models.payment import PaymentStatus
from duka_billing.models.shared import ensure_utc, utc_now
from duka_billing.repositories.payment_repository import PaymentRepository
from duka_billing.repositories.shop_repository import ShopRepository
from duka_billing.repositories.subscription_repository import SubscriptionRepository
from duka_billing.schemas.job import (
    AlertJobData,
    EmailJobData,
    Job,
    JobKind,
    JobOutcome,
    MessageJobData,
    NotificationJobData,
    PaymentCallbackJobData,
    ReportJobData,
)
from duka_billing.services.email_service import EmailService
from duka_billing.services.messaging_service import MessagingService
from duka_billing.services.notification_service import (
    CATEGORY_PAYMENT,
    CATEGORY_REPORT,
    NotificationService,
)
from duka_billing.services.template_service import TemplateNotFoundError, TemplateService

logger = logging.getLogger(__name__)


class JobExecutor:
    def __init__(
        self,
        db: Session | None = None,
        email_service: EmailService | None = None,
        messaging_service: MessagingService | None = None,
        template_service: TemplateService | None = None,
    ):
        self.db = db
        self.email_service = email_service or EmailService()
        self.messaging_service = messaging_service or MessagingService()
        self.templates = template_service or TemplateService()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Reuse the caller's session, or open and close a fresh one."""
        if self.db is not None:
            yield self.db
            return
        db = database.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    async def execute(self, job: Job) -> JobOutcome:
        """Run ``job`` once. Failures are reported in the outcome, not raised."""
        handlers = {
            JobKind.EMAIL: self._send_email,
            JobKind.NOTIFICATION: self._create_notification,
            JobKind.MESSAGE: self._send_message,
            JobKind.ALERT: self._process_alert,
            JobKind.REPORT: self._generate_report,
            JobKind.PAYMENT_CALLBACK: self._apply_payment_callback,
        }
        try:
            return await handlers[job.kind](job)
        except ValidationError as exc:
            logger.error("Invalid %s job payload: %s", job.kind.value, exc)
            return JobOutcome(success=False, error=f"Invalid payload: {exc.error_count()} errors")
        except (SQLAlchemyError, TemplateNotFoundError, ValueError) as exc:
            logger.exception("%s job failed", job.kind.value)
            return JobOutcome(success=False, error=str(exc))

    async def _send_email(self, job: Job) -> JobOutcome:
        data = EmailJobData.model_validate(job.payload)
        result = await self.email_service.send_email(data.to, data.subject, data.html)
        return JobOutcome(success=result.success, error=result.error, message_id=result.message_id)

    async def _send_message(self, job: Job) -> JobOutcome:
        data = MessageJobData.model_validate(job.payload)
        result = await self.messaging_service.send_message(data.to, data.text, data.channel)
        return JobOutcome(success=result.success, error=result.error, message_id=result.message_id)

    async def _create_notification(self, job: Job) -> JobOutcome:
        data = NotificationJobData.model_validate(job.payload)
        with self._session() as db:
            notification = NotificationService(db).notify(
                shop_id=UUID(data.shop_id),
                user_id=UUID(data.user_id) if data.user_id else None,
                category=data.category,
                title=data.title,
                message=data.message,
                data=data.data,
            )
            return JobOutcome(success=True, message_id=str(notification.id))

    async def _process_alert(self, job: Job) -> JobOutcome:
        data = AlertJobData.model_validate(job.payload)
        shop_id = UUID(data.shop_id)
        with self._session() as db:
            NotificationService(db).notify_stock_alert(
                shop_id=shop_id,
                product_id=data.product_id,
                product_name=data.product_name,
                alert_type=data.alert_type,
                current_stock=data.current_stock,
            )
            admin = ShopRepository(db).get_admin(shop_id)
            admin_email = str(admin.email) if admin and admin.email else None

        if not admin_email:
            return JobOutcome(success=True)

        label = "out of stock" if data.alert_type == "out_of_stock" else "running low"
        subject, html = self.templates.render(
            "stock_alert",
            {
                "product_name": data.product_name,
                "alert_label": label,
                "current_stock": data.current_stock,
                "reorder_level": data.reorder_level,
            },
        )
        result = await self.email_service.send_email(admin_email, subject, html)
        return JobOutcome(success=result.success, error=result.error, message_id=result.message_id)

    async def _generate_report(self, job: Job) -> JobOutcome:
        data = ReportJobData.model_validate(job.payload)
        shop_id = UUID(data.shop_id)
        start = datetime.fromisoformat(data.start)
        end = datetime.fromisoformat(data.end)

        with self._session() as db:
            repo = PaymentRepository(db)
            payments = repo.get_by_shop(shop_id, start=start, end=end)
            total_cents = repo.total_succeeded_cents(shop_id, start=start, end=end)
            recipient = data.email
            if not recipient:
                admin = ShopRepository(db).get_admin(shop_id)
                recipient = str(admin.email) if admin and admin.email else None

            rows = "".join(
                f"<tr><td>{p.provider_payment_id}</td><td>{p.status}</td>"
                f"<td>{p.amount_cents / 100:.2f} {p.currency}</td></tr>"
                for p in payments
            )
            body = (
                f"<table>{rows}</table>"
                f"<p><strong>Total collected:</strong> {total_cents / 100:.2f}</p>"
            )
            NotificationService(db).notify(
                shop_id=shop_id,
                category=CATEGORY_REPORT,
                title=f"{data.report_type.title()} report ready",
                message=f"{len(payments)} payments between {data.start} and {data.end}.",
                data={"total_cents": total_cents, "count": len(payments)},
            )

        if not recipient:
            logger.info("No recipient for %s report of shop %s", data.report_type, shop_id)
            return JobOutcome(success=True)

        subject, html = self.templates.render(
            "report_ready",
            {"report_type": data.report_type, "start": data.start, "end": data.end, "body": body},
        )
        result = await self.email_service.send_email(recipient, subject, html)
        return JobOutcome(success=result.success, error=result.error, message_id=result.message_id)

    async def _apply_payment_callback(self, job: Job) -> JobOutcome:
        """Record a gateway payment result. Re-running the same callback is harmless."""
        data = PaymentCallbackJobData.model_validate(job.payload)
        # M-Pesa result codes: 0 paid, 1032 cancelled by the customer
        if data.result_code == 0:
            status = PaymentStatus.SUCCEEDED
        elif data.result_code == 1032:
            status = PaymentStatus.CANCELED
        else:
            status = PaymentStatus.FAILED

        values: dict[str, Any] = {
            "amount_cents": data.amount_cents,
            "currency": data.currency.upper(),
            "status": status.value,
            "receipt_number": data.receipt_number,
        }
        now = utc_now()
        if status == PaymentStatus.SUCCEEDED:
            values["paid_at"] = ensure_utc(datetime.fromisoformat(data.paid_at)) if data.paid_at else now
        elif status == PaymentStatus.CANCELED:
            values["canceled_at"] = now
        else:
            values["failure_code"] = str(data.result_code)
            values["failure_message"] = data.result_desc or "Payment failed"

        shop_id = UUID(data.shop_id) if data.shop_id else None
        with self._session() as db:
            repo = PaymentRepository(db)
            existing = repo.get_by_provider_payment_id(data.provider_payment_id)
            already_paid = existing is not None and existing.status == PaymentStatus.SUCCEEDED.value
            if shop_id is not None:
                values["shop_id"] = shop_id
                subscription = SubscriptionRepository(db).get_by_shop_id(shop_id)
                if subscription is not None:
                    values["subscription_id"] = subscription.id
            payment = repo.upsert_from_provider(
                data.provider_payment_id, values, provider=data.provider
            )
            logger.info(
                "Payment %s via %s recorded as %s", data.provider_payment_id, data.provider, status.value
            )

            if status == PaymentStatus.SUCCEEDED and shop_id is not None and not already_paid:
                NotificationService(db).notify(
                    shop_id=shop_id,
                    category=CATEGORY_PAYMENT,
                    title="Payment received",
                    message=f"{data.currency.upper()} {data.amount_cents / 100:.2f} received.",
                    data={"payment_id": str(payment.id), "receipt_number": data.receipt_number},
                )
            return JobOutcome(success=True, message_id=str(payment.id))
