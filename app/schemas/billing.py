"""
Billing Schemas
===============

Pydantic schemas for RevenueCat webhook events and the per-user
entitlement snapshot.
"""

from enum import Enum
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


# ─── RevenueCat Webhook Event Types ──────────────────────────────────────────


class BillingEventType(str, Enum):
    """
    Event types RevenueCat can send via webhooks.

    ``UNKNOWN`` stands in for any type added by RevenueCat after this list
    was written; ``parse`` never raises.
    """

    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    UNCANCELLATION = "UNCANCELLATION"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    NON_RENEWING_PURCHASE = "NON_RENEWING_PURCHASE"
    CANCELLATION = "CANCELLATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    EXPIRATION = "EXPIRATION"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    TRANSFER = "TRANSFER"
    SUBSCRIBER_ALIAS = "SUBSCRIBER_ALIAS"
    TEST = "TEST"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "BillingEventType":
        normalized = str(raw or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


def _usable_millis(value: Any) -> Any:
    """Drop values no timestamp can come from; numeric coercion happens later."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    return value


MillisValue = Annotated[Optional[Union[int, float, str]], BeforeValidator(_usable_millis)]


class BillingEvent(BaseModel):
    """
    The ``event`` object inside a RevenueCat webhook body:
    ``{ "api_version": "1.0", "event": { ... } }``

    Timestamps are kept as received; numeric strings are coerced by the
    timestamp resolver, not here.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str = Field(min_length=1, description="Unique event ID for idempotency")
    app_user_id: str = Field(min_length=1)
    type: Optional[str] = None
    product_id: Optional[str] = None
    period_type: Optional[str] = None
    event_timestamp_ms: MillisValue = None
    purchased_at_ms: MillisValue = None
    expiration_at_ms: MillisValue = None
    original_app_user_id: Optional[str] = None
    entitlement_ids: Optional[list[str]] = None
    transaction_id: Optional[str] = None
    store_transaction_id: Optional[str] = None
    product_plan_identifier: Optional[str] = None
    new_product_id: Optional[str] = None
    store: Optional[str] = None
    environment: Optional[str] = None

    @property
    def event_type(self) -> BillingEventType:
        return BillingEventType.parse(self.type)

    @property
    def normalized_type(self) -> str:
        """Raw type as RevenueCat sent it, trimmed and upper-cased."""
        return str(self.type or "").strip().upper()


class WebhookPayload(BaseModel):
    """Top-level webhook body."""

    model_config = ConfigDict(extra="ignore")

    api_version: Optional[str] = None
    event: BillingEvent


# ─── Entitlement Snapshot ────────────────────────────────────────────────────


class EntitlementType(str, Enum):
    SUBSCRIPTION = "subscription"
    LIFETIME = "lifetime"


class SubscriptionState(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    BILLING_ISSUE = "BILLING_ISSUE"


class EntitlementSnapshot(BaseModel):
    """
    Durable premium state for one user.

    Written only by the reconciler. ``last_event_timestamp_ms`` is the
    resolved time of the newest applied event and never moves backwards.
    """

    model_config = ConfigDict(frozen=True)

    is_premium: bool = False
    entitlement_type: Optional[EntitlementType] = None
    subscription_type: Optional[str] = None
    subscription_state: Optional[SubscriptionState] = None
    product_id: Optional[str] = None
    last_event_timestamp_ms: int = 0

    expires_at_ms: Optional[int] = None
    purchased_at_ms: Optional[int] = None
    expired_at_ms: Optional[int] = None
    order_id: Optional[str] = None
    base_plan_id: Optional[str] = None

    is_in_trial: bool = False
    has_used_trial: bool = False
    trial_start_at_ms: Optional[int] = None
    trial_end_at_ms: Optional[int] = None
    trial_consumed_at_ms: Optional[int] = None

    last_event_type: Optional[str] = None
    last_event_id: Optional[str] = None
    original_app_user_id: Optional[str] = None
    reconciliation_source: Optional[str] = None

    @property
    def is_lifetime(self) -> bool:
        return self.entitlement_type == EntitlementType.LIFETIME


# ─── Webhook Response ────────────────────────────────────────────────────────


class WebhookResponse(BaseModel):
    """Body returned to RevenueCat once an event has been handled."""

    ok: bool = True
    status: str
