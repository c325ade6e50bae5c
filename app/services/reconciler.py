"""
Entitlement Reconciler
======================

Applies billing events (and operator repairs) to the stored entitlement
snapshot through the store's atomic read/decide/write path.

Per event:
- already logged          -> ``duplicate``, nothing written
- older than stored state -> ``stale``, only the event log row is written
- otherwise               -> ``processed``, snapshot and event log row are
                             written together
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from app.core.products import ProductCatalog, get_product_catalog
from app.models.entitlement import WebhookEventStatus
from app.schemas.billing import (
    BillingEvent,
    EntitlementSnapshot,
    EntitlementType,
    SubscriptionState,
)
from app.services.entitlement_mapper import map_event
from app.services.entitlement_store import (
    AtomicRead,
    AtomicWrites,
    EntitlementStore,
    EventRecord,
)
from app.services.event_guard import EventDisposition, classify
from app.services.event_timestamps import resolve_event_timestamp
from app.services.subscriber_state import ResolvedPremiumState
from app.utils.helpers import first_present, now_ms

logger = logging.getLogger(__name__)

REPAIR_SOURCE = "repair"


class ReconcileStatus(str, Enum):
    DUPLICATE = "duplicate"
    STALE = "stale"
    PROCESSED = "processed"


@dataclass(frozen=True)
class ReconcileResult:
    status: ReconcileStatus
    app_user_id: str
    event_id: str
    event_timestamp_ms: int
    snapshot: Optional[EntitlementSnapshot] = None


class RepairStatus(str, Enum):
    REPAIRED = "repaired"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RepairResult:
    status: RepairStatus
    app_user_id: str
    before_is_premium: bool
    after_is_premium: bool
    reason: Optional[str] = None
    entitlement_type: Optional[EntitlementType] = None


def build_repair_snapshot(
    current: Optional[EntitlementSnapshot],
    state: Optional[ResolvedPremiumState],
    now: int,
    catalog: ProductCatalog,
) -> EntitlementSnapshot:
    """
    Snapshot written by a repair.

    ``state`` of None (subscriber missing) or a non-premium state clears
    premium while keeping billing history. Event bookkeeping fields are
    never touched: a repair is not an event.
    """
    current = current or EntitlementSnapshot()
    has_used_trial = (
        current.has_used_trial
        or current.trial_consumed_at_ms is not None
        or bool(state and state.has_used_trial)
    )

    if state is None or not state.is_premium:
        expired_at = current.expired_at_ms
        if expired_at is None and current.expires_at_ms is not None and current.expires_at_ms <= now:
            expired_at = current.expires_at_ms
        return current.model_copy(update={
            "is_premium": False,
            "entitlement_type": None,
            "subscription_state": current.subscription_state or SubscriptionState.EXPIRED,
            "purchased_at_ms": first_present(current.purchased_at_ms, now),
            "is_in_trial": False,
            "trial_start_at_ms": None,
            "trial_end_at_ms": None,
            "has_used_trial": current.has_used_trial or current.trial_consumed_at_ms is not None,
            "trial_consumed_at_ms": first_present(current.trial_consumed_at_ms, current.trial_start_at_ms),
            "expired_at_ms": expired_at,
            "reconciliation_source": REPAIR_SOURCE,
        })

    lifetime = state.entitlement_type == EntitlementType.LIFETIME
    default_product = catalog.lifetime_product_ids[0] if lifetime and catalog.lifetime_product_ids else None
    is_in_trial = not lifetime and state.is_in_trial
    trial_consumed_at = first_present(
        current.trial_consumed_at_ms,
        current.trial_start_at_ms,
        state.trial_start_at_ms,
        state.purchased_at_ms,
    )

    return current.model_copy(update={
        "is_premium": True,
        "entitlement_type": EntitlementType.LIFETIME if lifetime else EntitlementType.SUBSCRIPTION,
        "product_id": first_present(state.product_id, current.product_id, default_product),
        "purchased_at_ms": first_present(state.purchased_at_ms, current.purchased_at_ms, now),
        "subscription_state": None if lifetime else (state.subscription_state or SubscriptionState.ACTIVE),
        "subscription_type": None if lifetime else first_present(state.subscription_type, current.subscription_type),
        "expires_at_ms": None if lifetime else state.expires_at_ms,
        "is_in_trial": is_in_trial,
        "trial_start_at_ms": first_present(state.trial_start_at_ms, state.purchased_at_ms) if is_in_trial else None,
        "trial_end_at_ms": first_present(state.trial_end_at_ms, state.expires_at_ms) if is_in_trial else None,
        "has_used_trial": has_used_trial,
        "trial_consumed_at_ms": trial_consumed_at if has_used_trial else None,
        "expired_at_ms": None,
        "original_app_user_id": first_present(state.original_app_user_id, current.original_app_user_id),
        "reconciliation_source": REPAIR_SOURCE,
    })


class EntitlementReconciler:
    """Sole writer of entitlement snapshots."""

    def __init__(
        self,
        store: EntitlementStore,
        catalog: Optional[ProductCatalog] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.catalog = catalog or get_product_catalog()
        self.clock = clock

    async def reconcile(self, event: BillingEvent) -> ReconcileResult:
        """Apply one webhook event atomically and report what happened."""
        now = self.clock()
        event_ts = resolve_event_timestamp(event, now)

        def decide(read: AtomicRead) -> AtomicWrites:
            stored = read.snapshot
            disposition = classify(
                event.id,
                event_ts,
                read.event_logged,
                stored.last_event_timestamp_ms if stored is not None else None,
            )

            if disposition is EventDisposition.DUPLICATE:
                return AtomicWrites(
                    outcome=ReconcileResult(
                        status=ReconcileStatus.DUPLICATE,
                        app_user_id=event.app_user_id,
                        event_id=event.id,
                        event_timestamp_ms=event_ts,
                        snapshot=stored,
                    )
                )

            record = EventRecord(
                event_id=event.id,
                app_user_id=event.app_user_id,
                event_timestamp_ms=event_ts,
                event_type=event.normalized_type or None,
                status=(
                    WebhookEventStatus.STALE
                    if disposition is EventDisposition.STALE
                    else WebhookEventStatus.PROCESSED
                ),
            )

            if disposition is EventDisposition.STALE:
                return AtomicWrites(
                    event_record=record,
                    outcome=ReconcileResult(
                        status=ReconcileStatus.STALE,
                        app_user_id=event.app_user_id,
                        event_id=event.id,
                        event_timestamp_ms=event_ts,
                        snapshot=stored,
                    ),
                )

            snapshot = map_event(event, stored, now, self.catalog)
            return AtomicWrites(
                snapshot=snapshot,
                event_record=record,
                outcome=ReconcileResult(
                    status=ReconcileStatus.PROCESSED,
                    app_user_id=event.app_user_id,
                    event_id=event.id,
                    event_timestamp_ms=event_ts,
                    snapshot=snapshot,
                ),
            )

        result = await self.store.run_atomic(event.app_user_id, event.id, decide)

        logger.info(
            "Billing event %s (%s) for %s: %s",
            event.id,
            event.normalized_type or "UNKNOWN",
            event.app_user_id,
            result.status.value,
        )
        return result

    async def repair_from_subscriber(
        self,
        app_user_id: str,
        state: Optional[ResolvedPremiumState],
        allow_downgrade: bool = False,
    ) -> RepairResult:
        """
        Overwrite the stored snapshot with a state resolved from RevenueCat.

        A missing subscriber (``state`` None) or a non-premium state is
        skipped unless ``allow_downgrade`` is set.
        """
        now = self.clock()

        def decide(read: AtomicRead) -> AtomicWrites:
            before = bool(read.snapshot and read.snapshot.is_premium)

            if (state is None or not state.is_premium) and not allow_downgrade:
                reason = "subscriber missing" if state is None else "resolved non-premium"
                return AtomicWrites(
                    outcome=RepairResult(
                        status=RepairStatus.SKIPPED,
                        app_user_id=app_user_id,
                        before_is_premium=before,
                        after_is_premium=before,
                        reason=reason,
                    )
                )

            snapshot = build_repair_snapshot(read.snapshot, state, now, self.catalog)
            return AtomicWrites(
                snapshot=snapshot,
                outcome=RepairResult(
                    status=RepairStatus.REPAIRED,
                    app_user_id=app_user_id,
                    before_is_premium=before,
                    after_is_premium=snapshot.is_premium,
                    entitlement_type=snapshot.entitlement_type,
                ),
            )

        result = await self.store.run_atomic(app_user_id, None, decide)

        logger.info(
            "Premium repair for %s: %s (premium %s -> %s)",
            app_user_id,
            result.status.value,
            result.before_is_premium,
            result.after_is_premium,
        )
        return result
