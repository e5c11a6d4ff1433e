"""
signgate/services/quota_windows.py

Quota windows, tier limits and calendar math shared by the rate
limiter and the quota accountant.

Design Decisions:
- UNBOUNDED is its own sentinel type. It never compares equal to an
  integer, so "no limit" cannot be confused with 0 (deny all) or a
  negative placeholder.
- Every window is a fixed bucket aligned to UTC: the calendar day,
  the clock hour, and `floor(epoch / W)` for burst. A fixed burst
  bucket lets a caller spend up to twice the burst limit across a
  bucket boundary; that approximation is accepted.
- Period keys are pure functions of (window, instant, limits), so
  the limiter and the accountant always agree on which counter a
  request belongs to.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Final, Union


class _Unbounded:
    """Marker for a limit with no ceiling."""

    _instance: "_Unbounded | None" = None

    def __new__(cls) -> "_Unbounded":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNBOUNDED"

    def __str__(self) -> str:
        return "unlimited"

    def __reduce__(self) -> str:
        return "UNBOUNDED"


UNBOUNDED: Final = _Unbounded()

Limit = Union[int, _Unbounded]


def is_unbounded(limit: Limit) -> bool:
    return limit is UNBOUNDED


def parse_limit(raw: str | int | _Unbounded) -> Limit:
    """Parse a configured limit; 'unlimited' maps to UNBOUNDED."""
    if is_unbounded(raw):  # type: ignore[arg-type]
        return UNBOUNDED
    if isinstance(raw, int):
        value = raw
    else:
        text = raw.strip().lower()
        if text in {"unlimited", "unbounded", "none", "inf"}:
            return UNBOUNDED
        value = int(text)
    if value < 0:
        raise ValueError(f"Limit must be non-negative or 'unlimited', got {raw!r}")
    return value


class Tier(str, enum.Enum):
    FREE = "free"
    UNLIMITED = "unlimited"


class Window(str, enum.Enum):
    DAILY = "daily"
    HOURLY = "hourly"
    BURST = "burst"


# Coarsest first: a daily denial wins over an hourly or burst one.
EVALUATION_ORDER: Final[tuple[Window, ...]] = (Window.DAILY, Window.HOURLY, Window.BURST)


@dataclass(frozen=True)
class TierLimits:
    """Immutable per-tier quota configuration."""

    daily_limit: Limit
    hourly_limit: Limit
    burst_limit: Limit
    burst_window_seconds: int = 60

    def __post_init__(self) -> None:
        if self.burst_window_seconds <= 0:
            raise ValueError("burst_window_seconds must be positive")

    def limit_for(self, window: Window) -> Limit:
        if window is Window.DAILY:
            return self.daily_limit
        if window is Window.HOURLY:
            return self.hourly_limit
        if window is Window.BURST:
            return self.burst_limit
        raise ValueError(f"Unknown window: {window!r}")

    @property
    def is_fully_unbounded(self) -> bool:
        return all(is_unbounded(self.limit_for(w)) for w in EVALUATION_ORDER)


DEFAULT_TIER_LIMITS: Final[dict[Tier, TierLimits]] = {
    Tier.FREE: TierLimits(daily_limit=100, hourly_limit=20, burst_limit=5, burst_window_seconds=60),
    Tier.UNLIMITED: TierLimits(
        daily_limit=UNBOUNDED,
        hourly_limit=UNBOUNDED,
        burst_limit=100,
        burst_window_seconds=60,
    ),
}


@dataclass(frozen=True)
class UsageWindow:
    """A (window, period) pair identifying one counter for a scope."""

    window: Window
    period_key: str
    ttl_seconds: int = field(default=0, compare=False)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def usage_window(window: Window, now: datetime, limits: TierLimits) -> UsageWindow:
    """Return the counter period that `now` falls into for `window`."""
    now = _as_utc(now)
    if window is Window.DAILY:
        return UsageWindow(window, now.strftime("%Y-%m-%d"), window_ttl_seconds(window, limits))
    if window is Window.HOURLY:
        return UsageWindow(window, now.strftime("%Y-%m-%dT%H"), window_ttl_seconds(window, limits))
    if window is Window.BURST:
        size = limits.burst_window_seconds
        bucket = int(now.timestamp()) // size
        return UsageWindow(window, f"{size}s:{bucket}", window_ttl_seconds(window, limits))
    raise ValueError(f"Unknown window: {window!r}")


def reset_boundary(window: Window, now: datetime, limits: TierLimits) -> datetime:
    """Return the instant at which the current period of `window` ends."""
    now = _as_utc(now)
    if window is Window.DAILY:
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight + timedelta(days=1)
    if window is Window.HOURLY:
        top_of_hour = now.replace(minute=0, second=0, microsecond=0)
        return top_of_hour + timedelta(hours=1)
    if window is Window.BURST:
        size = limits.burst_window_seconds
        bucket = int(now.timestamp()) // size
        return datetime.fromtimestamp((bucket + 1) * size, tz=timezone.utc)
    raise ValueError(f"Unknown window: {window!r}")


def window_ttl_seconds(window: Window, limits: TierLimits) -> int:
    """How long a counter is kept after creation; always longer than its period."""
    if window is Window.DAILY:
        return 2 * 24 * 60 * 60
    if window is Window.HOURLY:
        return 2 * 60 * 60
    if window is Window.BURST:
        return 2 * limits.burst_window_seconds
    raise ValueError(f"Unknown window: {window!r}")
