"""Timestamp helpers.

The store keeps naive UTC datetimes; these helpers convert at the edges.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC.

    Naive input is assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso8601(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp (with optional trailing Z) to naive UTC.

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    if value is None or value == "":
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def format_iso8601(value: datetime) -> str:
    """Format a naive UTC datetime as ISO 8601 with a Z suffix."""
    return to_naive_utc(value).isoformat(timespec="milliseconds") + "Z"
