"""
timestamps.py - updated_at handling.

Timestamps are stored as ISO-8601 strings in UTC. Parsing is lenient:
a trailing "Z", naive values (assumed UTC) and epoch milliseconds are
all accepted, and anything unparseable sorts as the oldest possible
time so that a well-formed copy always wins over a broken one.
"""

from datetime import datetime, timezone
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an updated_at value into an aware datetime.

    Args:
        value: ISO string, epoch milliseconds, datetime or None

    Returns:
        Aware UTC datetime (EPOCH when missing or unparseable)
    """
    if value is None:
        return EPOCH
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return EPOCH
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return EPOCH
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return EPOCH
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return EPOCH


def is_strictly_newer(candidate: Any, baseline: Any) -> bool:
    """True if candidate's timestamp is strictly later than baseline's."""
    return parse_timestamp(candidate) > parse_timestamp(baseline)
