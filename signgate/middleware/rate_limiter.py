"""
signgate/middleware/rate_limiter.py

Tiered rate-limit enforcement for SignGate routes.

Design Decisions:
- Enforcement is a FastAPI dependency, not a decorator: routes that
  spend quota declare `Depends(enforce_rate_limit)` and receive the
  Decision, so they can echo remaining/reset in their headers.
- Limits are keyed on the resolved identity (account for credentialed
  callers, client IP for anonymous ones), never on raw headers.
- A denied request is logged to the outcome log but consumes no quota.
- `rate_limit_headers` is shared by the 200 path and the 429 handler so
  both report the same window.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import Request

from signgate.services.identity import Identity
from signgate.services.quota_accountant import QuotaAccountant
from signgate.services.quota_store import OutcomeRecord
from signgate.services.quota_windows import is_unbounded, utcnow
from signgate.services.rate_limiter import Decision, RateLimiter
from signgate.utils.exceptions import RateLimitExceededError
from signgate.utils.metrics import signature_requests_total


def get_identity(request: Request) -> Identity:
    """FastAPI dependency: the identity resolved by IdentityMiddleware."""
    return request.state.identity  # type: ignore[no-any-return]


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter  # type: ignore[no-any-return]


def get_accountant(request: Request) -> QuotaAccountant:
    return request.app.state.quota_accountant  # type: ignore[no-any-return]


def now(request: Request) -> datetime:
    """Current time from the injected clock."""
    clock = getattr(request.app.state, "clock", utcnow)
    return clock()


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    """X-RateLimit-* headers for the decision's headline window."""
    headers = {"X-RateLimit-Tier": decision.tier.value}
    window = decision.headline_window
    if window is None:
        headers["X-RateLimit-Limit"] = "unlimited"
        headers["X-RateLimit-Remaining"] = "unlimited"
    else:
        status = decision.windows[window]
        headers["X-RateLimit-Limit"] = str(status.limit)
        headers["X-RateLimit-Remaining"] = "unlimited" if is_unbounded(status.remaining) else str(status.remaining)
        headers["X-RateLimit-Reset"] = str(int(status.reset_at.astimezone(timezone.utc).timestamp()))
        headers["X-RateLimit-Window"] = window.value
    if decision.degraded:
        headers["X-RateLimit-Degraded"] = "true"
    if decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


async def enforce_rate_limit(request: Request) -> Decision:
    """
    FastAPI dependency: check the caller's quota before the route runs.

    Raises:
        RateLimitExceededError: The decision denied the request.
    """
    started = time.perf_counter()
    identity = get_identity(request)
    decision = await get_rate_limiter(request).check_limit(identity)
    request.state.decision = decision

    if not decision.allowed:
        signature_requests_total.labels(tier=identity.tier.value, outcome="rate_limited").inc()
        get_accountant(request).record(
            identity,
            OutcomeRecord(
                scope=identity.scope,
                timestamp=now(request),
                success=False,
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
                error_kind=RateLimitExceededError.error_code,
                endpoint=request.url.path,
                tier=identity.tier.value,
            ),
            consume_quota=False,
        )
        raise RateLimitExceededError(decision)

    return decision
