"""
Entitlement Mapper
==================

Pure mapping from a RevenueCat event and the user's current snapshot to
the next snapshot. No I/O; the reconciler decides whether the result is
written.

Rules:
- Access follows the paid period: ``expiration_at_ms > now`` means premium.
  A cancellation keeps access until the period ends, only the state label
  changes. An expiration always revokes.
- No expiration in the payload keeps the previous ``is_premium``.
- A premium one-time (lifetime) purchase is never downgraded by
  subscription lifecycle events on the same account.
- Unknown and informational event types only update event bookkeeping.
"""

import logging
from typing import Any, Optional

from app.core.products import ProductCatalog, get_product_catalog
from app.schemas.billing import (
    BillingEvent,
    BillingEventType,
    EntitlementSnapshot,
    EntitlementType,
    SubscriptionState,
)
from app.services.event_timestamps import resolve_event_timestamp
from app.utils.helpers import first_present, parse_millis

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "webhook"
TRIAL_PERIOD_TYPE = "TRIAL"

# State label used while access is still valid; every other
# non-informational type is labelled ACTIVE
PREMIUM_STATE_LABELS = {
    BillingEventType.CANCELLATION: SubscriptionState.CANCELLED,
    BillingEventType.BILLING_ISSUE: SubscriptionState.BILLING_ISSUE,
}

INFORMATIONAL_EVENT_TYPES = frozenset({
    BillingEventType.SUBSCRIPTION_PAUSED,
    BillingEventType.TRANSFER,
    BillingEventType.SUBSCRIBER_ALIAS,
    BillingEventType.TEST,
    BillingEventType.UNKNOWN,
})


def is_protected_lifetime(snapshot: EntitlementSnapshot, catalog: ProductCatalog) -> bool:
    """True when the snapshot is a premium one-time purchase."""
    if not snapshot.is_premium:
        return False
    if catalog.is_subscription_product(snapshot.product_id):
        return False
    return snapshot.is_lifetime or catalog.is_lifetime_product(snapshot.product_id)


def map_event(
    event: BillingEvent,
    current: Optional[EntitlementSnapshot],
    now_ms: int,
    catalog: Optional[ProductCatalog] = None,
) -> EntitlementSnapshot:
    """
    Compute the entitlement snapshot after applying ``event``.

    Args:
        event: Validated webhook event.
        current: Stored snapshot, or None for a user without one.
        now_ms: Wall-clock time used for expiry checks and fallbacks.
        catalog: Product tables; defaults to the process-wide catalog.

    Returns:
        The new snapshot. ``last_event_timestamp_ms`` is the event's
        resolved timestamp.
    """
    catalog = catalog or get_product_catalog()
    current = current or EntitlementSnapshot()

    event_type = event.event_type
    event_ts = resolve_event_timestamp(event, now_ms)

    bookkeeping: dict[str, Any] = {
        "last_event_type": event.normalized_type or event_type.value,
        "last_event_id": event.id,
        "last_event_timestamp_ms": event_ts,
        "original_app_user_id": first_present(event.original_app_user_id, current.original_app_user_id),
        "reconciliation_source": WEBHOOK_SOURCE,
    }

    if event_type in INFORMATIONAL_EVENT_TYPES:
        if event_type is BillingEventType.UNKNOWN:
            logger.warning(
                "Unknown billing event type %r for event %s, entitlement left unchanged",
                event.type,
                event.id,
            )
        return current.model_copy(update=bookkeeping)

    expires_ms = parse_millis(event.expiration_at_ms)
    purchased_ms = parse_millis(event.purchased_at_ms)
    premium_from_expiry = expires_ms > now_ms if expires_ms is not None else current.is_premium

    is_trial_event = str(event.period_type or "").strip().upper() == TRIAL_PERIOD_TYPE
    lifetime_grant = (
        event_type is BillingEventType.NON_RENEWING_PURCHASE
        and catalog.is_lifetime_product(event.product_id)
    )

    # ----- premium flag and state label -----
    if lifetime_grant:
        is_premium = True
        subscription_state = None
    elif event_type is BillingEventType.EXPIRATION:
        is_premium = False
        subscription_state = SubscriptionState.EXPIRED
    else:
        is_premium = premium_from_expiry
        premium_label = PREMIUM_STATE_LABELS.get(event_type, SubscriptionState.ACTIVE)
        subscription_state = premium_label if is_premium else SubscriptionState.EXPIRED

    # ----- trial history (latched once used) -----
    has_used_trial = (
        current.has_used_trial
        or current.trial_consumed_at_ms is not None
        or current.trial_start_at_ms is not None
        or is_trial_event
    )
    is_in_trial = is_trial_event and is_premium and not lifetime_grant
    expires_at_ms = None if lifetime_grant else first_present(expires_ms, current.expires_at_ms)
    trial_start_at_ms = first_present(purchased_ms, event_ts) if is_in_trial else None
    trial_end_at_ms = expires_at_ms if is_in_trial else None
    trial_consumed_at_ms = (
        first_present(
            current.trial_consumed_at_ms,
            current.trial_start_at_ms,
            trial_start_at_ms,
            purchased_ms if is_trial_event else None,
        )
        if has_used_trial
        else None
    )

    trial_fields = {
        "has_used_trial": has_used_trial,
        "trial_consumed_at_ms": trial_consumed_at_ms,
    }

    if is_protected_lifetime(current, catalog):
        if not is_premium:
            logger.info(
                "Lifetime entitlement kept for event %s (%s) on product %s",
                event.id,
                event_type.value,
                current.product_id,
            )
        return current.model_copy(update={
            **bookkeeping,
            **trial_fields,
            "entitlement_type": current.entitlement_type or EntitlementType.LIFETIME,
            "subscription_state": None,
            "subscription_type": None,
            "expires_at_ms": None,
            "expired_at_ms": None,
            "is_in_trial": False,
            "trial_start_at_ms": None,
            "trial_end_at_ms": None,
            "purchased_at_ms": first_present(current.purchased_at_ms, event_ts),
        })

    product_id = first_present(event.product_id, current.product_id)

    if lifetime_grant:
        entitlement_type = EntitlementType.LIFETIME
        subscription_type = None
    else:
        entitlement_type = EntitlementType.SUBSCRIPTION
        subscription_type = first_present(catalog.plan_for_product(product_id), current.subscription_type)

    return current.model_copy(update={
        **bookkeeping,
        **trial_fields,
        "is_premium": is_premium,
        "entitlement_type": entitlement_type,
        "subscription_type": subscription_type,
        "subscription_state": subscription_state,
        "product_id": product_id,
        "expires_at_ms": expires_at_ms,
        "purchased_at_ms": first_present(purchased_ms, current.purchased_at_ms, event_ts),
        "expired_at_ms": (
            None if is_premium else first_present(expires_ms, current.expired_at_ms, now_ms)
        ),
        "order_id": first_present(event.transaction_id, event.store_transaction_id, current.order_id),
        "base_plan_id": first_present(event.product_plan_identifier, current.base_plan_id),
        "is_in_trial": is_in_trial,
        "trial_start_at_ms": trial_start_at_ms,
        "trial_end_at_ms": trial_end_at_ms,
    })
