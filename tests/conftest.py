"""Shared test fixtures for all test modules."""

import contextlib
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import duka_billing.models  # noqa: F401
from duka_billing.core import database as db_module
from duka_billing.core.database import Base, get_db
from duka_billing.models.plan import SubscriptionPlan
from duka_billing.models.shop import Shop, ShopStatus
from duka_billing.models.subscription import Subscription, SubscriptionStatus
from duka_billing.models.user import User, UserRole

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Fixed clock used by lifecycle tests
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and clear all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    """Create a database session for testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def plan(db_session):
    plan = SubscriptionPlan(
        code="pro",
        name="Pro",
        price_cents=250000,
        currency="KES",
        billing_cycle="monthly",
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture
def shop(db_session):
    shop = Shop(
        name="Mama Mboga Stores",
        email="shop@example.com",
        status=ShopStatus.ACTIVE.value,
        stripe_customer_id="cus_test123",
    )
    db_session.add(shop)
    db_session.commit()
    db_session.refresh(shop)
    return shop


@pytest.fixture
def admin(db_session, shop):
    user = User(
        shop_id=shop.id,
        name="Wanjiku",
        email="owner@example.com",
        role=UserRole.ADMIN.value,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


def make_subscription(db, shop, plan=None, **overrides):
    """Insert a subscription for ``shop``; keyword arguments override the defaults."""
    values = {
        "shop_id": shop.id,
        "plan_id": plan.id if plan else None,
        "plan_code": plan.code if plan else "pro",
        "billing_cycle": "monthly",
        "status": SubscriptionStatus.ACTIVE.value,
        "current_price_cents": 250000,
        "currency": "KES",
        "auto_renew": True,
        "current_period_start": NOW - timedelta(days=20),
        "current_period_end": NOW + timedelta(days=10),
    }
    values.update(overrides)
    subscription = Subscription(**values)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


@pytest.fixture
def subscription(db_session, shop, admin, plan):
    return make_subscription(db_session, shop, plan)
