"""Tests for timestamp helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from vpn_billing.utils.timestamps import (
    format_iso8601,
    parse_iso8601,
    to_naive_utc,
    utc_now,
)


class TestUtcNow:
    def test_is_naive(self):
        assert utc_now().tzinfo is None

    def test_close_to_real_utc(self):
        real = datetime.now(timezone.utc).replace(tzinfo=None)
        assert abs(utc_now() - real) < timedelta(seconds=5)


class TestToNaiveUtc:
    def test_naive_passes_through(self):
        value = datetime(2025, 1, 1, 12, 0)
        assert to_naive_utc(value) == value

    def test_aware_is_converted(self):
        moscow = timezone(timedelta(hours=3))
        value = datetime(2025, 1, 1, 15, 0, tzinfo=moscow)
        assert to_naive_utc(value) == datetime(2025, 1, 1, 12, 0)


class TestParseIso8601:
    def test_z_suffix(self):
        assert parse_iso8601("2025-01-31T12:00:00.000Z") == datetime(2025, 1, 31, 12, 0)

    def test_offset(self):
        assert parse_iso8601("2025-01-31T15:00:00+03:00") == datetime(2025, 1, 31, 12, 0)

    def test_naive(self):
        assert parse_iso8601("2025-01-31T12:00:00") == datetime(2025, 1, 31, 12, 0)

    def test_none_and_empty(self):
        assert parse_iso8601(None) is None
        assert parse_iso8601("") is None

    def test_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_iso8601("yesterday")


class TestFormatIso8601:
    def test_milliseconds_and_z(self):
        assert format_iso8601(datetime(2025, 1, 31, 12, 0)) == "2025-01-31T12:00:00.000Z"

    def test_parse_accepts_formatted_value(self):
        value = datetime(2025, 3, 4, 5, 6, 7, 891000)
        assert parse_iso8601(format_iso8601(value)) == value
