"""
Reconciler & Store Tests
========================

Tests for the transactional reconcile path against an in-memory database:
- idempotent redelivery
- stale events only touch the event log
- out-of-order delivery never regresses state
- bounded retry on transaction conflicts
- repairs from a resolved subscriber state
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import Text, func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from tenacity import RetryCallState

from app.core.errors import TransactionConflictError
from app.db.base import Base
from app.db.session import create_session_factory
from app.models.entitlement import UserPremium, WebhookEvent
from app.schemas.billing import BillingEvent, EntitlementType, SubscriptionState
from app.services.entitlement_store import (
    AtomicWrites,
    EventRecord,
    SqlAlchemyEntitlementStore,
    is_conflict_error,
)
from app.services.reconciler import EntitlementReconciler, ReconcileStatus, RepairStatus
from app.services.subscriber_state import ResolvedPremiumState

from conftest import DAY_MS, LIFETIME, NOW_MS, make_event


def _event(**overrides) -> BillingEvent:
    return BillingEvent.model_validate(make_event(**overrides))


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_same_event_twice_is_processed_then_duplicate(reconciler, store):
    first = await reconciler.reconcile(_event())
    after_first = await store.get_snapshot("user-1")

    second = await reconciler.reconcile(_event())
    after_second = await store.get_snapshot("user-1")

    assert first.status is ReconcileStatus.PROCESSED
    assert second.status is ReconcileStatus.DUPLICATE
    assert after_first == after_second
    assert after_first.is_premium is True


@pytest.mark.asyncio
async def test_stale_event_is_logged_but_not_applied(reconciler, store):
    await reconciler.reconcile(_event(id="evt-new", event_timestamp_ms=1000))
    before = await store.get_snapshot("user-1")

    stale = await reconciler.reconcile(
        _event(id="evt-old", type="EXPIRATION", event_timestamp_ms=999)
    )
    redelivered = await reconciler.reconcile(
        _event(id="evt-old", type="EXPIRATION", event_timestamp_ms=999)
    )

    assert stale.status is ReconcileStatus.STALE
    assert redelivered.status is ReconcileStatus.DUPLICATE
    assert await store.get_snapshot("user-1") == before
    assert await store.event_logged("evt-old") is True


@pytest.mark.asyncio
async def test_equal_timestamp_with_new_id_is_processed(reconciler):
    await reconciler.reconcile(_event(id="evt-a", event_timestamp_ms=1000))
    result = await reconciler.reconcile(
        _event(id="evt-b", type="CANCELLATION", event_timestamp_ms=1000)
    )

    assert result.status is ReconcileStatus.PROCESSED
    assert result.snapshot.subscription_state == SubscriptionState.CANCELLED


@pytest.mark.asyncio
async def test_out_of_order_delivery_does_not_regress(reconciler, store):
    purchase = _event(id="evt-1", event_timestamp_ms=NOW_MS - DAY_MS)
    expiration = _event(
        id="evt-2",
        type="EXPIRATION",
        event_timestamp_ms=NOW_MS,
        expiration_at_ms=NOW_MS - 1,
    )

    await reconciler.reconcile(expiration)
    late = await reconciler.reconcile(purchase)
    snapshot = await store.get_snapshot("user-1")

    assert late.status is ReconcileStatus.STALE
    assert snapshot.is_premium is False
    assert snapshot.last_event_timestamp_ms == NOW_MS


@pytest.mark.asyncio
async def test_users_are_independent(reconciler, store):
    await reconciler.reconcile(_event(id="evt-1", app_user_id="user-a", event_timestamp_ms=2000))
    result = await reconciler.reconcile(_event(id="evt-2", app_user_id="user-b", event_timestamp_ms=1000))

    assert result.status is ReconcileStatus.PROCESSED
    assert (await store.get_snapshot("user-b")).is_premium is True


# ---------------------------------------------------------------------------
# Conflicts and retries
# ---------------------------------------------------------------------------

class _PgError(Exception):
    def __init__(self, sqlstate):
        super().__init__(sqlstate)
        self.sqlstate = sqlstate


def test_conflict_classification():
    assert is_conflict_error(IntegrityError("INSERT", {}, Exception("duplicate key")))
    assert is_conflict_error(OperationalError("COMMIT", {}, _PgError("40001")))
    assert is_conflict_error(DBAPIError("UPDATE", {}, _PgError("40P01")))
    assert not is_conflict_error(OperationalError("SELECT", {}, _PgError("08006")))
    assert not is_conflict_error(ValueError("nope"))


@pytest.mark.asyncio
async def test_conflict_is_retried_from_fresh_read(store):
    with patch.object(
        store,
        "_run_once",
        AsyncMock(side_effect=[TransactionConflictError(), TransactionConflictError(), "done"]),
    ) as run_once:
        outcome = await store.run_atomic("user-1", "evt-1", lambda read: None)

    assert outcome == "done"
    assert run_once.await_count == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_conflict(store):
    with patch.object(
        store,
        "_run_once",
        AsyncMock(side_effect=TransactionConflictError("busy")),
    ) as run_once:
        with pytest.raises(TransactionConflictError):
            await store.run_atomic("user-1", "evt-1", lambda read: None)

    assert run_once.await_count == 3


@pytest.mark.asyncio
async def test_db_conflict_on_commit_becomes_transaction_conflict(store, reconciler):
    await reconciler.reconcile(_event(id="evt-1"))

    # A second insert of the same event id hits the primary key
    def decide(read):
        return AtomicWrites(
            event_record=EventRecord(
                event_id="evt-1",
                app_user_id="user-1",
                event_timestamp_ms=NOW_MS,
                status="processed",
            )
        )

    with pytest.raises(TransactionConflictError):
        await store.run_atomic("user-1", None, decide)


def test_retry_backoff_is_jittered(session_factory):
    store = SqlAlchemyEntitlementStore(session_factory, max_attempts=3, min_wait=1.0, max_wait=10.0)
    wait = store._wait_strategy()
    state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})

    samples = {wait(state) for _ in range(20)}

    assert all(1.0 <= sample <= 2.0 for sample in samples)
    assert len(samples) > 1


@pytest.fixture
async def file_session_factory(tmp_path):
    # One connection per session, so two transactions can interleave
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.mark.asyncio
async def test_simultaneous_deliveries_commit_once(file_session_factory, catalog):
    store = SqlAlchemyEntitlementStore(file_session_factory, max_attempts=3, min_wait=0, max_wait=0)
    reconciler = EntitlementReconciler(store, catalog, clock=lambda: NOW_MS)
    event = _event()
    original_flush = AsyncSession.flush
    rival_results = []

    # The rival delivery commits after the first one has read but before it writes
    async def flush_after_rival_commits(self, objects=None):
        if not rival_results:
            rival_results.append(None)
            rival_results[0] = await reconciler.reconcile(event)
        await original_flush(self, objects)

    with patch.object(store, "_run_once", wraps=store._run_once) as run_once:
        with patch.object(AsyncSession, "flush", flush_after_rival_commits):
            first = await reconciler.reconcile(event)

    assert rival_results[0].status is ReconcileStatus.PROCESSED
    assert first.status is ReconcileStatus.DUPLICATE
    # first attempt, rival, retry from a fresh read
    assert run_once.await_count == 3

    async with file_session_factory() as session:
        logged = await session.scalar(select(func.count()).select_from(WebhookEvent))
        users = await session.scalar(select(func.count()).select_from(UserPremium))
    assert (logged, users) == (1, 1)

    snapshot = await store.get_snapshot("user-1")
    assert snapshot.is_premium is True
    assert snapshot.last_event_id == "evt-1"


@pytest.mark.asyncio
async def test_long_unknown_event_type_is_stored(reconciler, store):
    long_type = "PARTNER_" + "X" * 200

    result = await reconciler.reconcile(_event(type=long_type))

    assert result.status is ReconcileStatus.PROCESSED
    assert (await store.get_snapshot("user-1")).last_event_type == long_type
    assert isinstance(WebhookEvent.__table__.c.event_type.type, Text)
    assert isinstance(UserPremium.__table__.c.last_event_type.type, Text)


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------

def _premium_state(**overrides) -> ResolvedPremiumState:
    values = {
        "is_premium": True,
        "entitlement_type": EntitlementType.SUBSCRIPTION,
        "source": "revenuecat",
        "product_id": "showseek_yearly_sub",
        "expires_at_ms": NOW_MS + 300 * DAY_MS,
        "purchased_at_ms": NOW_MS - DAY_MS,
        "subscription_type": "yearly",
        "subscription_state": SubscriptionState.ACTIVE,
    }
    values.update(overrides)
    return ResolvedPremiumState(**values)


@pytest.mark.asyncio
async def test_repair_writes_resolved_subscription(reconciler, store):
    result = await reconciler.repair_from_subscriber("user-9", _premium_state())
    snapshot = await store.get_snapshot("user-9")

    assert result.status is RepairStatus.REPAIRED
    assert result.before_is_premium is False
    assert result.after_is_premium is True
    assert snapshot.subscription_type == "yearly"
    assert snapshot.reconciliation_source == "repair"
    assert snapshot.last_event_timestamp_ms == 0


@pytest.mark.asyncio
async def test_repair_lifetime_clears_subscription_fields(reconciler, store):
    await reconciler.repair_from_subscriber(
        "user-9",
        _premium_state(
            entitlement_type=EntitlementType.LIFETIME,
            product_id=None,
            subscription_type=None,
            subscription_state=None,
        ),
    )
    snapshot = await store.get_snapshot("user-9")

    assert snapshot.entitlement_type == EntitlementType.LIFETIME
    assert snapshot.product_id == LIFETIME
    assert snapshot.expires_at_ms is None
    assert snapshot.subscription_state is None


@pytest.mark.asyncio
async def test_repair_refuses_downgrade_by_default(reconciler, store):
    await reconciler.reconcile(_event())

    skipped = await reconciler.repair_from_subscriber("user-1", None)
    assert skipped.status is RepairStatus.SKIPPED
    assert (await store.get_snapshot("user-1")).is_premium is True

    applied = await reconciler.repair_from_subscriber("user-1", None, allow_downgrade=True)
    snapshot = await store.get_snapshot("user-1")

    assert applied.status is RepairStatus.REPAIRED
    assert applied.after_is_premium is False
    assert snapshot.is_premium is False
    assert snapshot.product_id == "monthly_showseek_sub"
