from pydantic import BaseModel, Field

from duka_billing.models.plan import BillingCycle


class PlanCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    price_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="KES", min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
