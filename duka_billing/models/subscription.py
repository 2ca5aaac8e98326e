from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, func

from duka_billing.core.database import Base
from duka_billing.models.shared import UUIDType, generate_uuid


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Statuses in which the shop still has service and a running billing period
LIVE_STATUSES = (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value)

# Statuses the dunning engine keeps reminding about
LAPSED_STATUSES = (
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.SUSPENDED.value,
    SubscriptionStatus.EXPIRED.value,
)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    shop_id = Column(
        UUIDType,
        ForeignKey("shops.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
        index=True,
    )
    plan_id = Column(
        UUIDType,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    plan_code = Column(String(50), nullable=False)
    billing_cycle = Column(String(20), nullable=False, default="monthly")
    status = Column(
        String(20), nullable=False, default=SubscriptionStatus.TRIAL.value, index=True
    )
    current_price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")
    auto_renew = Column(Boolean, nullable=False, default=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    # Non-null iff status == past_due
    grace_period_end_date = Column(DateTime(timezone=True), nullable=True, index=True)

    # Provider links
    stripe_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    latest_invoice_id = Column(String(255), nullable=True)

    # Payment tracking
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_amount_cents = Column(Integer, nullable=True)
    failed_payment_attempts = Column(Integer, nullable=False, default=0)

    # Lifecycle timestamps
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    reactivated_at = Column(DateTime(timezone=True), nullable=True)

    # Dunning milestone markers
    last_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    past_due_notice_sent = Column(Boolean, nullable=False, default=False)
    suspension_notice_sent = Column(Boolean, nullable=False, default=False)
    suspension_notice_sent_at = Column(DateTime(timezone=True), nullable=True)
    expiry_notice_sent = Column(Boolean, nullable=False, default=False)
    last_expiry_warning_days = Column(Integer, nullable=True)
    last_expiry_warning_period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# Marker columns cleared whenever a subscription returns to a live status
DUNNING_MARKER_RESET = {
    "last_reminder_sent_at": None,
    "past_due_notice_sent": False,
    "suspension_notice_sent": False,
    "suspension_notice_sent_at": None,
    "expiry_notice_sent": False,
}
