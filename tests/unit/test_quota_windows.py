"""
tests/unit/test_quota_windows.py

Unit tests for window keys, reset boundaries and limit parsing.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from signgate.services.quota_windows import (
    DEFAULT_TIER_LIMITS,
    UNBOUNDED,
    Tier,
    TierLimits,
    Window,
    is_unbounded,
    parse_limit,
    reset_boundary,
    usage_window,
)

FREE = DEFAULT_TIER_LIMITS[Tier.FREE]


def _at(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestUnbounded:
    def test_unbounded_is_not_zero(self):
        assert UNBOUNDED != 0
        assert is_unbounded(UNBOUNDED)
        assert not is_unbounded(0)

    @pytest.mark.parametrize("raw", ["unlimited", "UNBOUNDED", " none "])
    def test_parse_unlimited_words(self, raw):
        assert parse_limit(raw) is UNBOUNDED

    def test_parse_numbers(self):
        assert parse_limit("100") == 100
        assert parse_limit(0) == 0

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError):
            parse_limit("-1")


class TestPeriodKeys:
    def test_daily_and_hourly_keys(self):
        now = _at(2025, 3, 14, 9, 26, 53)
        assert usage_window(Window.DAILY, now, FREE).period_key == "2025-03-14"
        assert usage_window(Window.HOURLY, now, FREE).period_key == "2025-03-14T09"

    def test_burst_key_is_fixed_bucket(self):
        a = usage_window(Window.BURST, _at(2025, 3, 14, 9, 26, 0), FREE)
        b = usage_window(Window.BURST, _at(2025, 3, 14, 9, 26, 59), FREE)
        c = usage_window(Window.BURST, _at(2025, 3, 14, 9, 27, 0), FREE)
        assert a == b
        assert a != c
        assert a.period_key.startswith("60s:")

    def test_day_rollover_gives_distinct_key(self):
        before = usage_window(Window.DAILY, _at(2025, 3, 14, 23, 59, 59), FREE)
        after = usage_window(Window.DAILY, _at(2025, 3, 15, 0, 0, 1), FREE)
        assert before.period_key == "2025-03-14"
        assert after.period_key == "2025-03-15"

    def test_ttl_outlives_window(self):
        assert usage_window(Window.BURST, _at(2025, 1, 1), FREE).ttl_seconds >= 60
        assert usage_window(Window.DAILY, _at(2025, 1, 1), FREE).ttl_seconds > 86400


class TestResetBoundary:
    def test_daily_resets_at_next_midnight(self):
        assert reset_boundary(Window.DAILY, _at(2025, 3, 14, 23, 59, 59), FREE) == _at(2025, 3, 15)

    def test_hourly_resets_at_top_of_hour(self):
        assert reset_boundary(Window.HOURLY, _at(2025, 3, 14, 9, 26), FREE) == _at(2025, 3, 14, 10)

    def test_burst_resets_at_bucket_end(self):
        assert reset_boundary(Window.BURST, _at(2025, 3, 14, 9, 26, 10), FREE) == _at(2025, 3, 14, 9, 27)


class TestTierLimits:
    def test_burst_window_must_be_positive(self):
        with pytest.raises(ValueError):
            TierLimits(daily_limit=1, hourly_limit=1, burst_limit=1, burst_window_seconds=0)

    def test_fully_unbounded(self):
        limits = TierLimits(UNBOUNDED, UNBOUNDED, UNBOUNDED)
        assert limits.is_fully_unbounded
        assert not FREE.is_fully_unbounded
