"""Duration parsing utilities.

Payment metadata carries the purchased access period as a short string.
Accepted forms:
- "30d" / "30D" - days
- "720h" - hours
- "4w" - weeks
- "30" - bare number of days
- "P30D", "P1M", "P1Y" - ISO 8601 style, months = 30 days, years = 365 days
"""

import re
from datetime import timedelta
from typing import Optional

DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30  # Standard approximation for billing
DAYS_PER_YEAR = 365  # Standard approximation for billing
MAX_DURATION_DAYS = 3650

_SHORT_PATTERN = re.compile(r"^(\d+)\s*([dhw]?)$", re.IGNORECASE)
_ISO_PATTERN = re.compile(r"^P(\d+)?([DWMY])$", re.IGNORECASE)


def parse_duration(value: str) -> timedelta:
    """Parse a duration string to a timedelta.

    Args:
        value: Duration string (e.g., "30d", "720h", "P1M")

    Returns:
        Positive timedelta

    Raises:
        ValueError: If the string is empty, malformed, not positive or longer
            than MAX_DURATION_DAYS

    Examples:
        >>> parse_duration("30d")
        datetime.timedelta(days=30)

        >>> parse_duration("P1M")
        datetime.timedelta(days=30)
    """
    if not value or not isinstance(value, str):
        raise ValueError("Duration must be a non-empty string")

    text = value.strip()

    match = _SHORT_PATTERN.match(text)
    if match:
        number = int(match.group(1))
        unit = match.group(2).lower() or "d"
        if number <= 0:
            raise ValueError(f"Duration must be positive, got: '{value}'")
        if unit == "h":
            _check_bound(value, hours=number)
            return timedelta(hours=number)
        days = number * DAYS_PER_WEEK if unit == "w" else number
        _check_bound(value, hours=days * 24)
        return timedelta(days=days)

    match = _ISO_PATTERN.match(text)
    if match:
        number = int(match.group(1)) if match.group(1) else 1
        if number <= 0:
            raise ValueError(f"Duration must be positive, got: '{value}'")
        unit = match.group(2).upper()
        days_per_unit = {
            "D": 1,
            "W": DAYS_PER_WEEK,
            "M": DAYS_PER_MONTH,
            "Y": DAYS_PER_YEAR,
        }[unit]
        _check_bound(value, hours=number * days_per_unit * 24)
        return timedelta(days=number * days_per_unit)

    raise ValueError(
        f"Unsupported duration format: '{value}'. "
        "Supported formats: <n>d, <n>h, <n>w, <n>, P<n>D, P<n>W, P<n>M, P<n>Y"
    )


def _check_bound(value: str, hours: int) -> None:
    if hours > MAX_DURATION_DAYS * 24:
        raise ValueError(f"Duration exceeds {MAX_DURATION_DAYS} days: '{value}'")


def resolve_duration(value: Optional[str], default_days: int) -> timedelta:
    """Parse an optional metadata duration, falling back to a default.

    An absent or blank value yields ``default_days``. A present but malformed
    value raises ValueError rather than silently using the default.
    """
    if value is None or not str(value).strip():
        return timedelta(days=default_days)
    return parse_duration(str(value))
