"""Utility functions and helpers for the billing engine."""

from vpn_billing.utils.durations import (
    parse_duration,
    resolve_duration,
)
from vpn_billing.utils.network import is_allowed_ip, parse_networks
from vpn_billing.utils.timestamps import (
    format_iso8601,
    parse_iso8601,
    to_naive_utc,
    utc_now,
)

__all__ = [
    # Durations
    "parse_duration",
    "resolve_duration",
    # Source address checks
    "parse_networks",
    "is_allowed_ip",
    # Timestamps
    "utc_now",
    "to_naive_utc",
    "parse_iso8601",
    "format_iso8601",
]
