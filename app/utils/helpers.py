"""
Helper Functions
================

Common utility functions used across the application.
"""

import math
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(utc_now().timestamp() * 1000)


def parse_millis(value: Any) -> Optional[int]:
    """
    Coerce an epoch-milliseconds value to ``int``.

    Accepts ints, floats and numeric strings. Anything else (including
    booleans, NaN and infinities) is treated as absent and yields None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None

    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None

    if not math.isfinite(numeric):
        return None

    return int(numeric)


def parse_date_millis(value: Optional[str]) -> Optional[int]:
    """Parse an ISO 8601 date string to epoch milliseconds."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def first_present(*values: Any) -> Any:
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None
