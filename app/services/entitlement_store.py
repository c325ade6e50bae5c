"""
Entitlement Store
=================

Durable storage for entitlement snapshots and the webhook event log.

``run_atomic`` is the single write path: it reads the event log row and
the user's snapshot, hands them to a pure ``decide`` callback, and applies
whatever that callback returns in the same transaction. A conflicting
concurrent write aborts the transaction; the whole read/decide/write cycle
is then retried from scratch with bounded, jittered exponential backoff.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from app.config import settings
from app.core.errors import TransactionConflictError
from app.models.entitlement import UserPremium, WebhookEvent
from app.schemas.billing import EntitlementSnapshot

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
CONFLICT_SQLSTATES = frozenset({"40001", "40P01"})


@dataclass(frozen=True)
class EventRecord:
    """Event log row to write (write-once)."""

    event_id: str
    app_user_id: str
    event_timestamp_ms: int
    status: str
    event_type: Optional[str] = None


@dataclass(frozen=True)
class AtomicRead:
    """State visible to ``decide`` inside the transaction."""

    app_user_id: str
    event_id: Optional[str]
    event_logged: bool
    snapshot: Optional[EntitlementSnapshot]


@dataclass(frozen=True)
class AtomicWrites:
    """Writes requested by ``decide``; ``outcome`` is returned to the caller."""

    outcome: Any = None
    snapshot: Optional[EntitlementSnapshot] = None
    event_record: Optional[EventRecord] = None


Decide = Callable[[AtomicRead], AtomicWrites]


class EntitlementStore(ABC):
    """Repository interface for atomic entitlement updates."""

    @abstractmethod
    async def run_atomic(
        self,
        app_user_id: str,
        event_id: Optional[str],
        decide: Decide,
    ) -> Any:
        """Run ``decide`` against a consistent read and apply its writes atomically."""

    @abstractmethod
    async def get_snapshot(self, app_user_id: str) -> Optional[EntitlementSnapshot]:
        """Return the stored snapshot, or None."""

    @abstractmethod
    async def event_logged(self, event_id: str) -> bool:
        """True if the event id is in the event log."""


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_conflict_error(exc: BaseException) -> bool:
    """True for errors caused by a concurrent write to the same rows."""
    if isinstance(exc, IntegrityError):
        # Unique-key race: another transaction inserted the row first
        return True
    if isinstance(exc, DBAPIError):
        return _sqlstate(exc) in CONFLICT_SQLSTATES
    return False


class SqlAlchemyEntitlementStore(EntitlementStore):
    """
    ``EntitlementStore`` on top of an async SQLAlchemy session factory.

    The user row is read ``FOR UPDATE`` and the production engine runs at
    SERIALIZABLE isolation, so two transactions for the same user cannot
    both commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: Optional[int] = None,
        min_wait: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._max_attempts = max_attempts if max_attempts is not None else settings.TXN_MAX_ATTEMPTS
        self._min_wait = min_wait if min_wait is not None else settings.TXN_RETRY_MIN_SECONDS
        self._max_wait = max_wait if max_wait is not None else settings.TXN_RETRY_MAX_SECONDS

    def _wait_strategy(self):
        # Exponential backoff plus up to min_wait of random jitter
        return wait_exponential(
            multiplier=self._min_wait,
            min=self._min_wait,
            max=self._max_wait,
        ) + wait_random(0, self._min_wait)

    async def run_atomic(
        self,
        app_user_id: str,
        event_id: Optional[str],
        decide: Decide,
    ) -> Any:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Entitlement transaction conflict for %s (attempt %d/%d), retrying in %.2fs",
                app_user_id,
                retry_state.attempt_number,
                self._max_attempts,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransactionConflictError),
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait_strategy(),
            reraise=True,
            before_sleep=log_retry,
        )

        outcome = None
        try:
            async for attempt in retrying:
                with attempt:
                    outcome = await self._run_once(app_user_id, event_id, decide)
        except TransactionConflictError:
            logger.error(
                "Entitlement transaction for %s gave up after %d attempts",
                app_user_id,
                self._max_attempts,
            )
            raise

        return outcome

    async def _run_once(
        self,
        app_user_id: str,
        event_id: Optional[str],
        decide: Decide,
    ) -> Any:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    event_logged = False
                    if event_id is not None:
                        event_logged = await session.get(WebhookEvent, event_id) is not None

                    result = await session.execute(
                        select(UserPremium)
                        .where(UserPremium.app_user_id == app_user_id)
                        .with_for_update()
                    )
                    row = result.scalar_one_or_none()

                    writes = decide(
                        AtomicRead(
                            app_user_id=app_user_id,
                            event_id=event_id,
                            event_logged=event_logged,
                            snapshot=row.to_snapshot() if row is not None else None,
                        )
                    )

                    if writes.snapshot is not None:
                        if row is None:
                            row = UserPremium(app_user_id=app_user_id)
                            session.add(row)
                        row.apply_snapshot(writes.snapshot)

                    if writes.event_record is not None:
                        record = writes.event_record
                        session.add(
                            WebhookEvent(
                                event_id=record.event_id,
                                app_user_id=record.app_user_id,
                                event_type=record.event_type,
                                event_timestamp_ms=record.event_timestamp_ms,
                                status=record.status,
                            )
                        )

                    await session.flush()
                # Committed
                return writes.outcome
        except DBAPIError as exc:
            if is_conflict_error(exc):
                raise TransactionConflictError(
                    f"Concurrent update for user {app_user_id}"
                ) from exc
            raise

    async def get_snapshot(self, app_user_id: str) -> Optional[EntitlementSnapshot]:
        async with self._session_factory() as session:
            row = await session.get(UserPremium, app_user_id)
            return row.to_snapshot() if row is not None else None

    async def event_logged(self, event_id: str) -> bool:
        async with self._session_factory() as session:
            return await session.get(WebhookEvent, event_id) is not None
