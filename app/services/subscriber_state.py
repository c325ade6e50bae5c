"""
Subscriber State Resolver
=========================

Derives a premium state from a RevenueCat ``subscriber`` document as
returned by ``GET /v1/subscribers/{app_user_id}``.

Resolution order:
1. Lifetime: the premium entitlement is active on a lifetime product, or
   any lifetime one-time purchase exists in ``non_subscriptions``.
2. Subscription: the premium entitlement or any subscription is still active.
3. Otherwise not premium.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from app.core.products import ProductCatalog, get_product_catalog
from app.schemas.billing import EntitlementType, SubscriptionState
from app.services.purchase_priority import sort_by_priority
from app.utils.helpers import parse_date_millis, parse_millis

SOURCE_REVENUECAT = "revenuecat"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class ResolvedPremiumState:
    is_premium: bool
    entitlement_type: Optional[EntitlementType]
    source: str
    product_id: Optional[str] = None
    expires_at_ms: Optional[int] = None
    purchased_at_ms: Optional[int] = None
    is_in_trial: bool = False
    trial_start_at_ms: Optional[int] = None
    trial_end_at_ms: Optional[int] = None
    has_used_trial: bool = False
    subscription_type: Optional[str] = None
    subscription_state: Optional[SubscriptionState] = None
    original_app_user_id: Optional[str] = None


@dataclass(frozen=True)
class ActiveSubscription:
    product_id: str
    expires_at_ms: int
    subscription: Mapping[str, Any]


def revenuecat_millis(millis_value: Any, date_value: Any) -> Optional[int]:
    """Prefer the ``*_ms`` field, fall back to the ISO date string."""
    millis = parse_millis(millis_value)
    if millis is not None:
        return millis
    return parse_date_millis(date_value)


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def find_premium_entitlement(
    entitlements: Optional[Mapping[str, Any]],
    entitlement_id: str,
) -> Optional[Mapping[str, Any]]:
    """Look up the premium entitlement, ignoring case and whitespace in keys."""
    if not entitlements:
        return None
    if entitlement_id in entitlements:
        return _as_mapping(entitlements[entitlement_id])
    for key, entitlement in entitlements.items():
        if str(key).strip().lower() == entitlement_id:
            return _as_mapping(entitlement)
    return None


def find_active_subscription(
    subscriptions: Optional[Mapping[str, Any]],
    now_ms: int,
    catalog: ProductCatalog,
) -> Optional[ActiveSubscription]:
    """Canonical unexpired subscription: best product first, later expiry on ties."""
    if not subscriptions:
        return None

    active = []
    for product_id, raw in subscriptions.items():
        subscription = _as_mapping(raw)
        expires_at = revenuecat_millis(
            subscription.get("expires_date_ms"),
            subscription.get("expires_date"),
        )
        if expires_at is None or expires_at <= now_ms:
            continue
        active.append(ActiveSubscription(product_id, expires_at, subscription))

    if not active:
        return None

    active.sort(key=lambda entry: entry.expires_at_ms, reverse=True)
    return sort_by_priority(active, catalog)[0]


def find_lifetime_purchase(
    non_subscriptions: Optional[Mapping[str, Any]],
    catalog: ProductCatalog,
) -> Optional[tuple[str, Optional[int]]]:
    """Most recent lifetime purchase as ``(product_id, purchased_at_ms)``."""
    if not non_subscriptions:
        return None

    resolved: Optional[tuple[str, Optional[int]]] = None
    for product_id, purchases in non_subscriptions.items():
        if not catalog.is_lifetime_product(product_id) or not purchases:
            continue

        purchase_times = [
            millis
            for millis in (
                revenuecat_millis(
                    _as_mapping(purchase).get("purchase_date_ms"),
                    _as_mapping(purchase).get("purchase_date"),
                )
                for purchase in purchases
            )
            if millis is not None
        ]
        latest = max(purchase_times) if purchase_times else None

        if resolved is None or (latest or 0) >= (resolved[1] or 0):
            resolved = (product_id, latest)

    return resolved


def has_trial_history(subscriptions: Optional[Mapping[str, Any]]) -> bool:
    if not subscriptions:
        return False
    return any(
        str(_as_mapping(subscription).get("period_type") or "").strip().upper() == "TRIAL"
        for subscription in subscriptions.values()
    )


def resolve_premium_state(
    subscriber: Mapping[str, Any],
    now_ms: int,
    catalog: Optional[ProductCatalog] = None,
) -> ResolvedPremiumState:
    """Resolve the premium state of one RevenueCat subscriber."""
    catalog = catalog or get_product_catalog()

    subscriptions = _as_mapping(subscriber.get("subscriptions"))
    original_app_user_id = str(subscriber.get("original_app_user_id") or "").strip() or None
    used_trial_before = has_trial_history(subscriptions)

    entitlement = find_premium_entitlement(
        _as_mapping(subscriber.get("entitlements")),
        catalog.premium_entitlement_id,
    )
    entitlement = entitlement or {}
    entitlement_expires = revenuecat_millis(
        entitlement.get("expires_date_ms"), entitlement.get("expires_date")
    )
    entitlement_purchased = revenuecat_millis(
        entitlement.get("purchase_date_ms"), entitlement.get("purchase_date")
    )
    # A null expiry on an existing entitlement means it never expires
    entitlement_active = bool(entitlement) and (
        entitlement_expires is None or entitlement_expires > now_ms
    )
    raw_product = entitlement.get("product_identifier")
    entitlement_product = raw_product.strip() if isinstance(raw_product, str) else None

    lifetime_purchase = find_lifetime_purchase(
        _as_mapping(subscriber.get("non_subscriptions")),
        catalog,
    )

    if (entitlement_active and catalog.is_lifetime_product(entitlement_product)) or lifetime_purchase:
        return ResolvedPremiumState(
            is_premium=True,
            entitlement_type=EntitlementType.LIFETIME,
            source=SOURCE_REVENUECAT,
            product_id=entitlement_product or (lifetime_purchase[0] if lifetime_purchase else None),
            purchased_at_ms=(
                entitlement_purchased
                if entitlement_purchased is not None
                else (lifetime_purchase[1] if lifetime_purchase else None)
            ),
            has_used_trial=used_trial_before,
            original_app_user_id=original_app_user_id,
        )

    active = find_active_subscription(subscriptions, now_ms, catalog)
    active_subscription = active.subscription if active else {}

    product_id = entitlement_product or (active.product_id if active else None)
    expires_at = (
        entitlement_expires
        if entitlement_expires is not None
        else (active.expires_at_ms if active else None)
    )
    purchased_at = (
        entitlement_purchased
        if entitlement_purchased is not None
        else revenuecat_millis(
            active_subscription.get("purchase_date_ms"),
            active_subscription.get("purchase_date"),
        )
    )
    period_type = str(
        entitlement.get("period_type") or active_subscription.get("period_type") or ""
    ).strip().upper()

    if entitlement_active or active is not None:
        is_in_trial = period_type == "TRIAL"
        return ResolvedPremiumState(
            is_premium=True,
            entitlement_type=EntitlementType.SUBSCRIPTION,
            source=SOURCE_REVENUECAT,
            product_id=product_id,
            expires_at_ms=expires_at,
            purchased_at_ms=purchased_at,
            is_in_trial=is_in_trial,
            trial_start_at_ms=purchased_at if is_in_trial else None,
            trial_end_at_ms=expires_at if is_in_trial else None,
            has_used_trial=is_in_trial or used_trial_before,
            subscription_type=catalog.plan_for_product(product_id),
            subscription_state=SubscriptionState.ACTIVE,
            original_app_user_id=original_app_user_id,
        )

    return ResolvedPremiumState(
        is_premium=False,
        entitlement_type=None,
        source=SOURCE_NONE,
        product_id=product_id,
        expires_at_ms=expires_at,
        purchased_at_ms=purchased_at,
        has_used_trial=used_trial_before,
        subscription_type=catalog.plan_for_product(product_id),
        subscription_state=SubscriptionState.EXPIRED,
        original_app_user_id=original_app_user_id,
    )
