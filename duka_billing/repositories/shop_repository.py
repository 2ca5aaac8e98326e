from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.models.shop import Shop, ShopStatus
from duka_billing.models.user import User, UserRole
from duka_billing.schemas.shop import ShopCreate, UserCreate


class ShopRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, shop_id: UUID) -> Shop | None:
        return self.db.query(Shop).filter(Shop.id == shop_id).first()

    def get_by_stripe_customer_id(self, stripe_customer_id: str) -> Shop | None:
        return self.db.query(Shop).filter(Shop.stripe_customer_id == stripe_customer_id).first()

    def create(self, data: ShopCreate) -> Shop:
        shop = Shop(
            name=data.name,
            email=data.email,
            phone=data.phone,
            status=data.status.value,
            stripe_customer_id=data.stripe_customer_id,
        )
        self.db.add(shop)
        self.db.commit()
        self.db.refresh(shop)
        return shop

    def approve(self, shop_id: UUID) -> Shop | None:
        """Move a pending shop to its single approved state, ``active``."""
        shop = self.get_by_id(shop_id)
        if not shop:
            return None
        if shop.status == ShopStatus.PENDING.value:
            shop.status = ShopStatus.ACTIVE.value  # type: ignore[assignment]
            self.db.commit()
            self.db.refresh(shop)
        return shop

    def update_contact(
        self, shop_id: UUID, *, email: str | None = None, phone: str | None = None
    ) -> bool:
        values: dict[str, str] = {}
        if email is not None:
            values["email"] = email
        if phone is not None:
            values["phone"] = phone
        if not values:
            return False
        count = (
            self.db.query(Shop)
            .filter(Shop.id == shop_id)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return bool(count)

    def get_admin(self, shop_id: UUID) -> User | None:
        """Return the shop's admin user, the recipient of billing notices."""
        return (
            self.db.query(User)
            .filter(User.shop_id == shop_id, User.role == UserRole.ADMIN.value)
            .order_by(User.created_at)
            .first()
        )

    def create_user(self, data: UserCreate) -> User:
        user = User(
            shop_id=data.shop_id,
            name=data.name,
            email=data.email,
            phone=data.phone,
            role=data.role.value,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user
