"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import first_present, now_ms, parse_date_millis, parse_millis, utc_now

__all__ = ["first_present", "now_ms", "parse_date_millis", "parse_millis", "utc_now"]
