from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from duka_billing.models.payment import Payment, PaymentRefund, PaymentStatus
from duka_billing.models.shared import generate_uuid


class PaymentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_provider_payment_id(self, provider_payment_id: str) -> Payment | None:
        return (
            self.db.query(Payment)
            .filter(Payment.provider_payment_id == provider_payment_id)
            .first()
        )

    def get_by_shop(
        self,
        shop_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Payment]:
        query = self.db.query(Payment).filter(Payment.shop_id == shop_id)
        if start is not None:
            query = query.filter(Payment.created_at >= start)
        if end is not None:
            query = query.filter(Payment.created_at <= end)
        return query.order_by(Payment.created_at.desc()).all()

    def total_succeeded_cents(
        self, shop_id: UUID, start: datetime | None = None, end: datetime | None = None
    ) -> int:
        query = self.db.query(func.coalesce(func.sum(Payment.amount_cents), 0)).filter(
            Payment.shop_id == shop_id,
            Payment.status == PaymentStatus.SUCCEEDED.value,
        )
        if start is not None:
            query = query.filter(Payment.paid_at >= start)
        if end is not None:
            query = query.filter(Payment.paid_at <= end)
        return int(query.scalar() or 0)

    def upsert_from_provider(
        self,
        provider_payment_id: str,
        values: dict[str, Any],
        *,
        provider: str = "stripe",
    ) -> Payment:
        """Overwrite a payment's fields from provider data, creating it if unseen."""
        payment = self.get_by_provider_payment_id(provider_payment_id)
        if payment is None:
            payment = Payment(
                id=generate_uuid(),
                provider=provider,
                provider_payment_id=provider_payment_id,
            )
            self.db.add(payment)
        for key, value in values.items():
            setattr(payment, key, value)
        self.db.commit()
        self.db.refresh(payment)
        return payment

    def record_refund(self, payment_id: UUID, provider_refund_id: str, amount_cents: int) -> bool:
        """Apply a refund delta once per provider refund id.

        Returns False if the refund had already been recorded.
        """
        refund = PaymentRefund(
            id=generate_uuid(),
            payment_id=payment_id,
            provider_refund_id=provider_refund_id,
            amount_cents=amount_cents,
        )
        self.db.add(refund)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            return False
        self.db.query(Payment).filter(Payment.id == payment_id).update(
            {"amount_refunded_cents": Payment.amount_refunded_cents + amount_cents},
            synchronize_session=False,
        )
        self.db.commit()
        return True
