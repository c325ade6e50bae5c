"""
Pydantic Schemas
================

Billing events, entitlement snapshots and store offer payloads.
"""

from app.schemas.billing import (
    BillingEvent,
    BillingEventType,
    EntitlementSnapshot,
    EntitlementType,
    SubscriptionState,
    WebhookPayload,
    WebhookResponse,
)
from app.schemas.offers import (
    OfferDetail,
    PricingPhase,
    PurchaseItem,
    RecurrenceMode,
)

__all__ = [
    "BillingEvent",
    "BillingEventType",
    "EntitlementSnapshot",
    "EntitlementType",
    "SubscriptionState",
    "WebhookPayload",
    "WebhookResponse",
    "OfferDetail",
    "PricingPhase",
    "PurchaseItem",
    "RecurrenceMode",
]
