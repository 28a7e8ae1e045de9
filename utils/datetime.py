"""
Date and time helpers for timezone-aware access-control decisions.

Role assignment expiry, time-window conditions and audit trail entries all
compare instants, so every datetime that crosses a module boundary is
normalized to an aware UTC value here.

Key Features:
- UTC "now" for wall-clock decisions (expiry, time windows)
- Normalization of naive database values to aware UTC
- ISO 8601 parsing for configuration and request payloads
- Audit-friendly formatting
"""

import datetime
from typing import Optional, Union

from dateutil import parser as dateutil_parser


class InvalidDateFormatError(ValueError):
    """Raised when a datetime string cannot be parsed."""
    pass


def now_utc() -> datetime.datetime:
    """Get current UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def to_utc(dt: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC, which is how the
    ``user_role_assignments`` table stores them on backends without
    timezone support (SQLite).

    Args:
        dt: Datetime to normalize, or None

    Returns:
        Aware UTC datetime, or None when ``dt`` is None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def parse_datetime(value: Union[str, datetime.datetime]) -> datetime.datetime:
    """
    Parse an ISO 8601 string (or pass through a datetime) into aware UTC.

    Args:
        value: ISO 8601 string or datetime instance

    Returns:
        Aware UTC datetime

    Raises:
        InvalidDateFormatError: If the value cannot be interpreted as a datetime
    """
    if isinstance(value, datetime.datetime):
        return to_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise InvalidDateFormatError(f"Expected an ISO 8601 datetime string, got {value!r}")
    try:
        parsed = dateutil_parser.isoparse(value.strip())
    except (ValueError, OverflowError) as e:
        raise InvalidDateFormatError(f"Invalid datetime format: {value!r}") from e
    return to_utc(parsed)


def format_for_audit(dt: Optional[datetime.datetime]) -> Optional[str]:
    """Format datetime for audit trail entries and API responses."""
    if dt is None:
        return None
    return to_utc(dt).isoformat()
