from uuid import UUID

from pydantic import BaseModel, Field

from duka_billing.models.shop import ShopStatus
from duka_billing.models.user import UserRole


class ShopCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str | None = None
    phone: str | None = None
    status: ShopStatus = ShopStatus.PENDING
    stripe_customer_id: str | None = None


class UserCreate(BaseModel):
    shop_id: UUID
    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = None
    phone: str | None = None
    role: UserRole = UserRole.ADMIN
