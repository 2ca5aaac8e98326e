from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from duka_billing.models.plan import BillingCycle
from duka_billing.models.subscription import SubscriptionStatus


class SubscriptionCreate(BaseModel):
    shop_id: UUID
    plan_code: str = Field(..., min_length=1, max_length=50)
    status: SubscriptionStatus = SubscriptionStatus.TRIAL
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    current_price_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="KES", min_length=3, max_length=3)
    auto_renew: bool = True
    current_period_start: datetime | None = None
    current_period_end: datetime
    stripe_subscription_id: str | None = None


class SubscriptionCancel(BaseModel):
    immediate: bool = False
    reason: str | None = Field(default=None, max_length=1000)
    performed_by: str = Field(default="admin", min_length=1, max_length=255)


class SubscriptionReactivate(BaseModel):
    performed_by: str = Field(default="admin", min_length=1, max_length=255)


class SubscriptionResponse(BaseModel):
    id: UUID
    shop_id: UUID
    plan_id: UUID | None
    plan_code: str
    billing_cycle: str
    status: str
    current_price_cents: int
    currency: str
    auto_renew: bool
    current_period_start: datetime | None
    current_period_end: datetime
    grace_period_end_date: datetime | None
    failed_payment_attempts: int
    last_payment_at: datetime | None
    suspended_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    reactivated_at: datetime | None
    last_reminder_sent_at: datetime | None
    suspension_notice_sent: bool
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class ConsistencyIssue(BaseModel):
    subscription_id: UUID
    shop_id: UUID
    status: str
    issue: str
    fixed: bool = False


class ConsistencyReport(BaseModel):
    dry_run: bool
    checked: int
    fixed: int = 0
    issues: list[ConsistencyIssue] = Field(default_factory=list)
