from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.models.plan import SubscriptionPlan
from duka_billing.schemas.plan import PlanCreate


class PlanRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_all(self, active_only: bool = True) -> list[SubscriptionPlan]:
        query = self.db.query(SubscriptionPlan)
        if active_only:
            query = query.filter(SubscriptionPlan.is_active.is_(True))
        return query.order_by(SubscriptionPlan.price_cents).all()

    def get_by_id(self, plan_id: UUID) -> SubscriptionPlan | None:
        return self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()

    def get_by_code(self, code: str) -> SubscriptionPlan | None:
        return self.db.query(SubscriptionPlan).filter(SubscriptionPlan.code == code).first()

    def create(self, data: PlanCreate) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            code=data.code,
            name=data.name,
            price_cents=data.price_cents,
            currency=data.currency,
            billing_cycle=data.billing_cycle.value,
        )
        self.db.add(plan)
        self.db.commit()
        self.db.refresh(plan)
        return plan
