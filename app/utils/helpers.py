"""
Helper utilities
"""
from datetime import date, datetime
from typing import Any, Optional

import pytz
from dateutil import parser as date_parser


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def calculate_percentage_change(current: float, previous: float) -> Optional[float]:
    """Calculate percentage change between two values"""
    if not previous:
        return None
    return ((current - previous) / previous) * 100


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce API money strings, Decimals and None to float"""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any, default: int = 0) -> int:
    """Coerce API count strings and None to int"""
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def to_naive_utc(value: Any) -> Optional[datetime]:
    """
    Parse API timestamps into the naive UTC datetimes stored in the database.

    Plain dates become midnight; malformed values return None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(pytz.UTC).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    return None
