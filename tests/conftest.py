"""
Shared Test Fixtures
====================

In-memory SQLite (aiosqlite) stands in for PostgreSQL. Environment is set
before any ``app`` import so the cached settings pick it up.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("REVENUECAT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("REVENUECAT_API_KEY", "test-api-key")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.products import ProductCatalog
from app.db.base import Base
from app.db.session import create_session_factory
from app.services.entitlement_store import SqlAlchemyEntitlementStore
from app.services.reconciler import EntitlementReconciler

import app.models  # noqa: F401

WEBHOOK_SECRET = "test-webhook-secret"

# Fixed wall clock for reconciler tests (2023-11-14T22:13:20Z)
NOW_MS = 1_700_000_000_000
DAY_MS = 86_400_000

MONTHLY = "monthly_showseek_sub"
YEARLY = "showseek_yearly_sub"
LIFETIME = "premium_unlock"


@pytest.fixture
def catalog() -> ProductCatalog:
    return ProductCatalog(
        monthly_product_id=MONTHLY,
        yearly_product_id=YEARLY,
        lifetime_product_ids=(LIFETIME, "rc_promo_premium_lifetime"),
        monthly_trial_offer_id="monthly-free-trial",
        premium_entitlement_id="premium",
    )


@pytest.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> SqlAlchemyEntitlementStore:
    return SqlAlchemyEntitlementStore(session_factory, max_attempts=3, min_wait=0, max_wait=0)


@pytest.fixture
def reconciler(store, catalog) -> EntitlementReconciler:
    return EntitlementReconciler(store, catalog, clock=lambda: NOW_MS)


@pytest.fixture
async def client(store, catalog):
    """HTTP client against the app with the store bound to the test database."""
    from app.dependencies import get_catalog, get_entitlement_store
    from app.main import app

    app.dependency_overrides[get_entitlement_store] = lambda: store
    app.dependency_overrides[get_catalog] = lambda: catalog

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def make_event(**overrides) -> dict:
    """Raw RevenueCat event body with sensible defaults."""
    event = {
        "id": "evt-1",
        "type": "INITIAL_PURCHASE",
        "app_user_id": "user-1",
        "product_id": MONTHLY,
        "period_type": "NORMAL",
        "event_timestamp_ms": NOW_MS,
        "purchased_at_ms": NOW_MS,
        "expiration_at_ms": NOW_MS + 30 * DAY_MS,
    }
    event.update(overrides)
    return {key: value for key, value in event.items() if value is not None}
