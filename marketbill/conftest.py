# marketbill/conftest.py
import pytest
from datetime import timedelta
from uuid import uuid4
from sqlalchemy import insert

from marketbill.core.config import settings
from marketbill.core.database import (
    init_engine,
    dispose_engine,
    create_all_tables,
    get_db_session,
    users,
    listings,
    subscriptions,
    utc_now,
)
from marketbill.features.billing.service import set_provider
from marketbill.features.directory.service import (
    SqlUserDirectory,
    SqlListingDirectory,
    set_user_directory,
    set_listing_directory,
)
from marketbill.features.notifications.ports import reset_ports, set_notifier, set_analytics
from marketbill.features.plans.service import create_plan
from marketbill.tests.mocks import FakePaymentProvider, RecordingNotifier, RecordingAnalytics, TEST_ADMIN_KEY


@pytest.fixture(scope="function", autouse=True)
def db():
    """Fresh in-memory SQLite database per test."""
    dispose_engine()
    engine = init_engine("sqlite+pysqlite:///:memory:")
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_wiring(monkeypatch):
    """Default directories/ports, no provider, known admin key."""
    monkeypatch.setattr(settings, "ADMIN_KEY", TEST_ADMIN_KEY)
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", None)
    monkeypatch.setattr(settings, "ENV", "test")
    set_provider(None)
    set_user_directory(SqlUserDirectory())
    set_listing_directory(SqlListingDirectory())
    reset_ports()
    yield
    set_provider(None)
    reset_ports()


@pytest.fixture
def provider():
    fake = FakePaymentProvider()
    set_provider(fake)
    return fake


@pytest.fixture
def notifier():
    recorder = RecordingNotifier()
    set_notifier(recorder)
    return recorder


@pytest.fixture
def analytics():
    recorder = RecordingAnalytics()
    set_analytics(recorder)
    return recorder


@pytest.fixture
def make_user():
    """Insert a seller into app_users. Defaults to a verified, active seller of both roles."""

    def _make(
        user_id: str = "seller_1",
        roles=("ecommerceSeller", "realEstateSeller"),
        verification_status: str = "approved",
        account_status: str = "active",
        disabled_roles=(),
    ) -> str:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    display_name=f"Seller {user_id}",
                    email=f"{user_id}@example.com",
                    roles=list(roles),
                    verification_status=verification_status,
                    account_status=account_status,
                    disabled_roles=list(disabled_roles),
                )
            )
        return user_id

    return _make


@pytest.fixture
def make_plan():
    def _make(name: str = "Pro", price: float = 19.99, target_role: str = "both", **kwargs):
        return create_plan(name=name, target_role=target_role, price=price, **kwargs)

    return _make


@pytest.fixture
def make_listing():
    def _make(item_id: str, owner_id: str = "seller_1", item_type: str = "product") -> str:
        with get_db_session() as session:
            session.execute(
                insert(listings).values(item_type=item_type, item_id=item_id, owner_id=owner_id, title=f"Listing {item_id}")
            )
        return item_id

    return _make


@pytest.fixture
def make_subscription():
    """Insert a subscription row directly (bypasses activation)."""

    def _make(
        user_id: str,
        plan_id: str,
        role: str = "ecommerceSeller",
        status: str = "active",
        days_left: float = 30,
        auto_renew: bool = True,
    ) -> str:
        now = utc_now()
        subscription_id = str(uuid4())
        with get_db_session() as session:
            session.execute(
                insert(subscriptions).values(
                    id=subscription_id,
                    user_id=user_id,
                    plan_id=plan_id,
                    role=role,
                    start_date=now - timedelta(days=30),
                    end_date=now + timedelta(days=days_left),
                    status=status,
                    auto_renew=auto_renew,
                    listings_used=0,
                    featured_used=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        return subscription_id

    return _make
