"""
Event Timestamp Resolution
==========================

RevenueCat payloads carry up to three candidate times. The first usable
one is the event's authoritative time for ordering.
"""

from collections.abc import Mapping
from typing import Any, Union

from app.schemas.billing import BillingEvent
from app.utils.helpers import parse_millis

# Most to least authoritative
TIMESTAMP_FIELDS = ("event_timestamp_ms", "purchased_at_ms", "expiration_at_ms")


def _field(event: Union[BillingEvent, Mapping[str, Any]], name: str) -> Any:
    if isinstance(event, Mapping):
        return event.get(name)
    return getattr(event, name, None)


def resolve_event_timestamp(
    event: Union[BillingEvent, Mapping[str, Any]],
    fallback_now_ms: int,
) -> int:
    """
    Return the event time in epoch milliseconds.

    Precedence: ``event_timestamp_ms`` → ``purchased_at_ms`` →
    ``expiration_at_ms`` → ``fallback_now_ms``. Numeric strings are
    coerced; non-numeric values count as absent.
    """
    for name in TIMESTAMP_FIELDS:
        millis = parse_millis(_field(event, name))
        if millis is not None:
            return millis
    return int(fallback_now_ms)
