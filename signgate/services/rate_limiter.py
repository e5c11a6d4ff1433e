"""
signgate/services/rate_limiter.py

Rate Limiter Core: tiered multi-window limit decisions.

Algorithm (recomputed per call, nothing persisted):
    1. Look up TierLimits for the identity's tier.
    2. For daily → hourly → burst, skipping UNBOUNDED windows:
         used = store.read(scope, window)
         used >= limit → Denied(window)
    3. Otherwise Allowed, with remaining/reset for every window.

Design Decisions:
- Coarsest window first, stop on the first denial. The denied
  reason is always the longest wait, which matches billing-cycle
  semantics.
- The limiter only reads. Counters are incremented later by the
  quota accountant, after the signer call, so `check_limit` can be
  called any number of times. Requests in flight at decision time
  can overshoot a limit by their number; that is accepted.
- Fail open. A store read that fails or times out leaves that window
  unenforced and marks the decision `degraded`. Turning a store
  incident into a full outage would be worse than brief
  under-enforcement.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Mapping

from signgate.services.identity import Identity
from signgate.services.quota_store import QuotaStore
from signgate.services.quota_windows import (
    DEFAULT_TIER_LIMITS,
    EVALUATION_ORDER,
    UNBOUNDED,
    Limit,
    Tier,
    TierLimits,
    Window,
    is_unbounded,
    reset_boundary,
    usage_window,
    utcnow,
)
from signgate.utils.exceptions import StoreUnavailableError
from signgate.utils.logger import get_logger
from signgate.utils.metrics import rate_limit_check_seconds, record_decision

logger = get_logger(__name__)

# Usage share (percent) at which a finite window starts producing warnings
WARNING_THRESHOLDS: Mapping[Window, float] = MappingProxyType(
    {Window.DAILY: 80.0, Window.HOURLY: 75.0, Window.BURST: 60.0}
)


@dataclass(frozen=True)
class WindowStatus:
    """
    Usage of one window at decision time.

    Attributes:
        limit: Configured limit, or UNBOUNDED.
        used: Counter value read, None if not read (unbounded, failed,
              or short-circuited by an earlier denial).
        remaining: limit - used (floored at 0), UNBOUNDED for unbounded,
                   None when the window was never evaluated because an
                   earlier window already denied.
        reset_at: End of the current fixed period.
        degraded: True if the read for this window failed.
    """

    limit: Limit
    used: int | None
    remaining: Limit | None
    reset_at: datetime
    degraded: bool = False


@dataclass(frozen=True)
class Decision:
    """Outcome of one limiter evaluation."""

    allowed: bool
    tier: Tier
    windows: Mapping[Window, WindowStatus]
    evaluated_at: datetime
    denied_reason: Window | None = None
    degraded: bool = False

    @property
    def remaining(self) -> dict[Window, Limit | None]:
        return {window: status.remaining for window, status in self.windows.items()}

    @property
    def reset_at(self) -> dict[Window, datetime]:
        return {window: status.reset_at for window, status in self.windows.items()}

    @property
    def retry_after_seconds(self) -> int | None:
        if self.denied_reason is None:
            return None
        delta = self.windows[self.denied_reason].reset_at - self.evaluated_at
        return max(1, math.ceil(delta.total_seconds()))

    @property
    def headline_window(self) -> Window | None:
        """The window reported in X-RateLimit-* headers: the denying one,
        else the tightest finite window, else None for fully unbounded tiers."""
        if self.denied_reason is not None:
            return self.denied_reason
        finite = [
            (status.remaining, window)
            for window, status in self.windows.items()
            if status.remaining is not None and not is_unbounded(status.remaining)
        ]
        if not finite:
            return None
        return min(finite, key=lambda item: item[0])[1]


@dataclass(frozen=True)
class QuotaWarning:
    window: Window
    percentage: float
    message: str


@dataclass
class RateLimiter:
    """
    Evaluates burst/hourly/daily quotas for an identity.

    Usage:
        limiter = RateLimiter(store)
        decision = await limiter.check_limit(identity)
        if not decision.allowed:
            raise RateLimitExceededError(decision)
    """

    store: QuotaStore
    tier_limits: Mapping[Tier, TierLimits] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    clock: Callable[[], datetime] = utcnow

    def limits_for(self, tier: Tier) -> TierLimits:
        if tier is Tier.FREE:
            return self.tier_limits[Tier.FREE]
        if tier is Tier.UNLIMITED:
            return self.tier_limits[Tier.UNLIMITED]
        raise ValueError(f"Unhandled tier: {tier!r}")

    async def check_limit(self, identity: Identity, now: datetime | None = None) -> Decision:
        """Return an allow/deny decision without consuming quota."""
        now = now or self.clock()
        limits = self.limits_for(identity.tier)

        with rate_limit_check_seconds.time():
            if limits.is_fully_unbounded:
                decision = self._unbounded_decision(identity.tier, limits, now)
            else:
                decision = await self._evaluate(identity, limits, now)

        record_decision(
            tier=decision.tier.value,
            allowed=decision.allowed,
            window=decision.denied_reason.value if decision.denied_reason else None,
            degraded=decision.degraded,
        )
        if not decision.allowed:
            logger.info(
                "Rate limit denied",
                scope=identity.scope,
                window=decision.denied_reason.value if decision.denied_reason else None,
                retry_after=decision.retry_after_seconds,
            )
        return decision

    def quota_warnings(self, decision: Decision) -> list[QuotaWarning]:
        """Warnings for finite windows whose usage crossed their threshold."""
        warnings: list[QuotaWarning] = []
        for window in EVALUATION_ORDER:
            status = decision.windows.get(window)
            if status is None or status.used is None or is_unbounded(status.limit):
                continue
            if status.limit == 0:
                continue
            percentage = status.used / status.limit * 100
            if percentage >= WARNING_THRESHOLDS[window]:
                warnings.append(
                    QuotaWarning(
                        window=window,
                        percentage=round(percentage, 1),
                        message=(
                            f"You've used {percentage:.1f}% of your {window.value} quota "
                            f"({status.used}/{status.limit} requests)"
                        ),
                    )
                )
        return warnings

    # ── Internal helpers ───────────────────────────────────────

    async def _evaluate(self, identity: Identity, limits: TierLimits, now: datetime) -> Decision:
        statuses: dict[Window, WindowStatus] = {}
        denied: Window | None = None
        degraded = False

        for window in EVALUATION_ORDER:
            limit = limits.limit_for(window)
            reset_at = reset_boundary(window, now, limits)

            if is_unbounded(limit):
                statuses[window] = WindowStatus(limit, None, UNBOUNDED, reset_at)
                continue
            if denied is not None:
                statuses[window] = WindowStatus(limit, None, None, reset_at)
                continue
            if limit == 0:
                statuses[window] = WindowStatus(limit, None, 0, reset_at)
                denied = window
                continue

            try:
                used = await self.store.read(identity.scope, usage_window(window, now, limits))
            except StoreUnavailableError:
                logger.warning(
                    f"Quota read failed for {window.value} window; failing open",
                    scope=identity.scope,
                )
                degraded = True
                statuses[window] = WindowStatus(limit, None, limit, reset_at, degraded=True)
                continue

            statuses[window] = WindowStatus(limit, used, max(0, limit - used), reset_at)
            if used >= limit:
                denied = window

        return Decision(
            allowed=denied is None,
            tier=identity.tier,
            windows=MappingProxyType(statuses),
            evaluated_at=now,
            denied_reason=denied,
            degraded=degraded,
        )

    @staticmethod
    def _unbounded_decision(tier: Tier, limits: TierLimits, now: datetime) -> Decision:
        statuses = {
            window: WindowStatus(UNBOUNDED, None, UNBOUNDED, reset_boundary(window, now, limits))
            for window in EVALUATION_ORDER
        }
        return Decision(
            allowed=True,
            tier=tier,
            windows=MappingProxyType(statuses),
            evaluated_at=now,
        )
