"""Payment models for subscription charges collected by the payment provider."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class PaymentStatus(str, Enum):
    """Payment status enum."""

    PENDING = "pending"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class PaymentProvider(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    MPESA = "mpesa"
    MANUAL = "manual"


class Payment(Base):
    """Payment model - one row per provider payment intent."""

    __tablename__ = "payments"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    shop_id = Column(
        UUIDType, ForeignKey("shops.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    provider = Column(String(20), nullable=False, default=PaymentProvider.STRIPE.value)
    provider_payment_id = Column(String(255), nullable=False, unique=True, index=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    amount_refunded_cents = Column(Integer, nullable=False, default=0)
    failure_code = Column(String(100), nullable=True)
    failure_message = Column(Text, nullable=True)
    receipt_url = Column(String(1000), nullable=True)
    receipt_number = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class PaymentRefund(Base):
    """Refund ledger keyed by the provider refund id.

    A refund is added to ``payments.amount_refunded_cents`` only when its row is
    inserted for the first time.
    """

    __tablename__ = "payment_refunds"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    payment_id = Column(
        UUIDType, ForeignKey("payments.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    provider_refund_id = Column(String(255), nullable=False, unique=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
