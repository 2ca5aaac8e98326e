from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from duka_billing.models.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus
from duka_billing.schemas.subscription import SubscriptionCreate


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_all(self, skip: int = 0, limit: int | None = 100) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .order_by(Subscription.created_at)
            .offset(skip)
            .limit(limit)
            .all()
        )

    def get_by_shop_id(self, shop_id: UUID) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.shop_id == shop_id).first()

    def get_by_stripe_subscription_id(self, stripe_subscription_id: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.stripe_subscription_id == stripe_subscription_id)
            .first()
        )

    def get_by_statuses(self, statuses: Sequence[str]) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.status.in_(list(statuses)))
            .order_by(Subscription.current_period_end)
            .all()
        )

    def get_lapsed_live(self, now: datetime) -> list[Subscription]:
        """Trial/active subscriptions whose current period has ended."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status.in_(LIVE_STATUSES),
                Subscription.current_period_end < now,
            )
            .all()
        )

    def get_expired_grace(self, now: datetime) -> list[Subscription]:
        """Past-due subscriptions whose grace period has ended."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.grace_period_end_date < now,
            )
            .all()
        )

    def get_renewing_ending_between(self, start: datetime, end: datetime) -> list[Subscription]:
        """Auto-renewing trial/active subscriptions whose period ends in [start, end)."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status.in_(LIVE_STATUSES),
                Subscription.auto_renew.is_(True),
                Subscription.current_period_end >= start,
                Subscription.current_period_end < end,
            )
            .all()
        )

    def create(self, data: SubscriptionCreate, *, plan_id: UUID | None = None) -> Subscription:
        subscription = Subscription(
            shop_id=data.shop_id,
            plan_id=plan_id,
            plan_code=data.plan_code,
            billing_cycle=data.billing_cycle.value,
            status=data.status.value,
            current_price_cents=data.current_price_cents,
            currency=data.currency,
            auto_renew=data.auto_renew,
            current_period_start=data.current_period_start,
            current_period_end=data.current_period_end,
            stripe_subscription_id=data.stripe_subscription_id,
        )
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        return subscription

    def compare_and_set(
        self,
        subscription_id: UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> bool:
        """Narrow update applied only if the row still has ``expected_status``.

        Returns False when another writer changed the status first.
        """
        count = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                Subscription.status == expected_status,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return bool(count)

    def update_fields(self, subscription_id: UUID, values: dict[str, Any]) -> bool:
        """Narrow field update without replacing the whole row."""
        count = (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return bool(count)

    def reload(self, subscription: Subscription) -> Subscription:
        """Re-read a subscription from the database, discarding cached state."""
        self.db.refresh(subscription)
        return subscription
