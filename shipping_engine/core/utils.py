"""
Core Utilities

Shared helpers used across the engine.
"""
import re
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser

PINCODE_RE = re.compile(r"^\d{6}$")


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def is_valid_pincode(value: Optional[str]) -> bool:
    """Indian postal codes are exactly six digits."""
    return bool(value) and bool(PINCODE_RE.match(str(value)))


def grams_to_kg(weight_grams: float) -> float:
    """Vendor APIs take kilograms with two decimals."""
    return round(weight_grams / 1000, 2)


def normalize_status(value: Any) -> str:
    """"RTO_Delivered", "rto-delivered" and "RTO  Delivered" all become "RTO DELIVERED"."""
    text = str(value or "").upper().replace("_", " ").replace("-", " ")
    return " ".join(text.split())


def parse_vendor_date(value: Any) -> Optional[datetime]:
    """
    Parse the assorted date strings aggregators send back.

    Returns None for empty or unparseable values instead of raising,
    so one bad timestamp never fails a whole tracking response.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return date_parser.parse(str(value))
    except (ValueError, OverflowError):
        return None


def to_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
