"""
Entitlement Mapper Tests
========================

Tests for mapping RevenueCat events onto the entitlement snapshot:
- premium from expiry, cancellation keeps access
- lifetime downgrade protection
- conservative handling of unknown event types
- trial tracking
"""

import pytest

from app.schemas.billing import (
    BillingEvent,
    EntitlementSnapshot,
    EntitlementType,
    SubscriptionState,
)
from app.services.entitlement_mapper import is_protected_lifetime, map_event
from app.utils.helpers import first_present

from conftest import DAY_MS, LIFETIME, MONTHLY, NOW_MS, YEARLY, make_event


def _event(**overrides) -> BillingEvent:
    return BillingEvent.model_validate(make_event(**overrides))


def _lifetime_snapshot(**overrides) -> EntitlementSnapshot:
    values = {
        "is_premium": True,
        "entitlement_type": EntitlementType.LIFETIME,
        "product_id": LIFETIME,
        "last_event_timestamp_ms": NOW_MS - DAY_MS,
        "purchased_at_ms": NOW_MS - 10 * DAY_MS,
    }
    values.update(overrides)
    return EntitlementSnapshot(**values)


def test_initial_purchase_grants_subscription(catalog):
    snapshot = map_event(_event(), None, NOW_MS, catalog)

    assert snapshot.is_premium is True
    assert snapshot.entitlement_type == EntitlementType.SUBSCRIPTION
    assert snapshot.subscription_state == SubscriptionState.ACTIVE
    assert snapshot.subscription_type == "monthly"
    assert snapshot.product_id == MONTHLY
    assert snapshot.expires_at_ms == NOW_MS + 30 * DAY_MS
    assert snapshot.expired_at_ms is None
    assert snapshot.last_event_timestamp_ms == NOW_MS
    assert snapshot.last_event_id == "evt-1"
    assert snapshot.last_event_type == "INITIAL_PURCHASE"


def test_yearly_product_maps_to_yearly_plan(catalog):
    snapshot = map_event(_event(product_id=YEARLY), None, NOW_MS, catalog)
    assert snapshot.subscription_type == "yearly"


def test_cancellation_with_future_expiry_stays_premium(catalog):
    current = map_event(_event(), None, NOW_MS, catalog)
    snapshot = map_event(_event(id="evt-2", type="CANCELLATION"), current, NOW_MS, catalog)

    assert snapshot.is_premium is True
    assert snapshot.subscription_state == SubscriptionState.CANCELLED


def test_cancellation_after_period_end_is_expired(catalog):
    current = map_event(_event(), None, NOW_MS, catalog)
    snapshot = map_event(
        _event(id="evt-2", type="CANCELLATION", expiration_at_ms=NOW_MS - 1),
        current,
        NOW_MS,
        catalog,
    )

    assert snapshot.is_premium is False
    assert snapshot.subscription_state == SubscriptionState.EXPIRED
    assert snapshot.expired_at_ms == NOW_MS - 1


def test_expiration_always_revokes(catalog):
    current = map_event(_event(), None, NOW_MS, catalog)
    snapshot = map_event(
        _event(id="evt-2", type="EXPIRATION", expiration_at_ms=NOW_MS + DAY_MS),
        current,
        NOW_MS,
        catalog,
    )

    assert snapshot.is_premium is False
    assert snapshot.subscription_state == SubscriptionState.EXPIRED


def test_billing_issue_in_grace_period(catalog):
    current = map_event(_event(), None, NOW_MS, catalog)
    snapshot = map_event(_event(id="evt-2", type="BILLING_ISSUE"), current, NOW_MS, catalog)

    assert snapshot.is_premium is True
    assert snapshot.subscription_state == SubscriptionState.BILLING_ISSUE


def test_missing_expiration_keeps_previous_premium_flag(catalog):
    current = map_event(_event(), None, NOW_MS, catalog)
    snapshot = map_event(
        _event(id="evt-2", type="RENEWAL", expiration_at_ms=None),
        current,
        NOW_MS,
        catalog,
    )

    assert snapshot.is_premium is True
    assert snapshot.expires_at_ms == current.expires_at_ms


@pytest.mark.parametrize("event_type", ["CANCELLATION", "EXPIRATION", "BILLING_ISSUE", "RENEWAL"])
def test_lifetime_is_never_downgraded(catalog, event_type):
    current = _lifetime_snapshot()
    snapshot = map_event(
        _event(id="evt-2", type=event_type, expiration_at_ms=NOW_MS - DAY_MS),
        current,
        NOW_MS,
        catalog,
    )

    assert snapshot.is_premium is True
    assert snapshot.entitlement_type == EntitlementType.LIFETIME
    assert snapshot.product_id == LIFETIME
    assert snapshot.subscription_state is None
    assert snapshot.expires_at_ms is None
    assert snapshot.last_event_id == "evt-2"


def test_legacy_lifetime_product_without_type_is_protected(catalog):
    current = _lifetime_snapshot(entitlement_type=None)
    assert is_protected_lifetime(current, catalog)

    snapshot = map_event(_event(id="evt-2", type="EXPIRATION"), current, NOW_MS, catalog)
    assert snapshot.is_premium is True
    assert snapshot.entitlement_type == EntitlementType.LIFETIME


def test_lifetime_flag_on_subscription_product_is_not_protected(catalog):
    current = _lifetime_snapshot(product_id=MONTHLY)
    assert not is_protected_lifetime(current, catalog)


def test_non_renewing_lifetime_purchase_grants_lifetime(catalog):
    snapshot = map_event(
        _event(type="NON_RENEWING_PURCHASE", product_id=LIFETIME, expiration_at_ms=None),
        None,
        NOW_MS,
        catalog,
    )

    assert snapshot.is_premium is True
    assert snapshot.entitlement_type == EntitlementType.LIFETIME
    assert snapshot.expires_at_ms is None
    assert snapshot.subscription_type is None


@pytest.mark.parametrize("event_type", ["SOMETHING_NEW", "SUBSCRIBER_ALIAS", "TRANSFER", None])
def test_unknown_and_informational_events_change_only_bookkeeping(catalog, event_type):
    current = map_event(_event(), None, NOW_MS, catalog)
    snapshot = map_event(
        _event(id="evt-2", type=event_type, event_timestamp_ms=NOW_MS + 5, expiration_at_ms=NOW_MS - 1),
        current,
        NOW_MS,
        catalog,
    )

    assert snapshot.is_premium is True
    assert snapshot.subscription_state == current.subscription_state
    assert snapshot.expires_at_ms == current.expires_at_ms
    assert snapshot.last_event_id == "evt-2"
    assert snapshot.last_event_timestamp_ms == NOW_MS + 5


def test_trial_purchase_tracks_trial_window(catalog):
    snapshot = map_event(_event(period_type="TRIAL", expiration_at_ms=NOW_MS + 7 * DAY_MS), None, NOW_MS, catalog)

    assert snapshot.is_in_trial is True
    assert snapshot.has_used_trial is True
    assert snapshot.trial_start_at_ms == NOW_MS
    assert snapshot.trial_end_at_ms == NOW_MS + 7 * DAY_MS
    assert snapshot.trial_consumed_at_ms == NOW_MS


def test_trial_history_is_latched_after_conversion(catalog):
    trial = map_event(_event(period_type="TRIAL"), None, NOW_MS, catalog)
    renewal = map_event(
        _event(id="evt-2", type="RENEWAL", period_type="NORMAL", purchased_at_ms=NOW_MS + 7 * DAY_MS),
        trial,
        NOW_MS,
        catalog,
    )

    assert renewal.is_in_trial is False
    assert renewal.has_used_trial is True
    assert renewal.trial_consumed_at_ms == NOW_MS
    assert renewal.trial_start_at_ms is None


def test_order_and_plan_ids_are_kept_when_absent(catalog):
    first = map_event(
        _event(transaction_id="GPA.1", product_plan_identifier="monthly-base"),
        None,
        NOW_MS,
        catalog,
    )
    second = map_event(_event(id="evt-2", type="RENEWAL"), first, NOW_MS, catalog)

    assert second.order_id == "GPA.1"
    assert second.base_plan_id == "monthly-base"


def test_first_present_keeps_falsy_values():
    assert first_present(None, 0, 5) == 0
    assert first_present(None, "", "x") == ""
    assert first_present(None, None) is None
