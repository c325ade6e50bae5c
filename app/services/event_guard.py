"""
Idempotency & Ordering Guard
============================

Decides whether a billing event is new, a redelivery, or older than the
state already stored for the user.
"""

from enum import Enum
from typing import Optional


class EventDisposition(str, Enum):
    DUPLICATE = "duplicate"
    STALE = "stale"
    FRESH = "fresh"


def classify(
    event_id: str,
    resolved_timestamp: int,
    event_log_exists: bool,
    stored_last_timestamp: Optional[int],
) -> EventDisposition:
    """
    Classify an incoming event.

    A logged id is always a duplicate, even if it was only judged stale
    the first time. An equal timestamp with a new id is fresh.
    """
    if event_log_exists:
        return EventDisposition.DUPLICATE

    if resolved_timestamp < (stored_last_timestamp or 0):
        return EventDisposition.STALE

    return EventDisposition.FRESH
