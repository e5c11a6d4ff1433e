"""
signgate/services/quota_store.py

Quota Store Adapter: atomic usage counters and the outcome log.

Design Decisions:
- `increment` is the one operation that must be atomic. It is
  delegated to the store (INCRBY + EXPIRE inside a MULTI/EXEC
  transaction), never to an in-process lock, because many gateway
  processes share the same counters.
- `read` is a plain snapshot. The limiter checks against it and the
  accountant increments later; the gap between the two is accepted.
- Every call runs under `asyncio.wait_for` with a short timeout. A
  timeout and a connection error look identical to callers: both
  raise StoreUnavailableError, and each caller decides whether to
  fail open, drop, or skip.
- Outcomes are written three ways: a capped per-scope list and a
  capped global list (newest first, for consecutive-failure checks),
  plus a sorted set scored by timestamp for trailing-window
  aggregates. The sorted set is trimmed by retention on every append.
- Throttled requests (denied by the limiter, never sent upstream) stay
  out of the global list and out of error-rate totals. A client
  hammering its own burst limit is not an upstream failure.
- InMemoryQuotaStore implements the same contract for tests and
  single-process development.
"""

from __future__ import annotations

import abc
import asyncio
import json
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Iterable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from signgate.services.quota_windows import UsageWindow
from signgate.utils.exceptions import RateLimitExceededError, StoreUnavailableError
from signgate.utils.logger import get_logger
from signgate.utils.metrics import store_errors_total

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 0.25
DEFAULT_OUTCOME_HISTORY = 1000
DEFAULT_OUTCOME_RETENTION_SECONDS = 24 * 60 * 60
GLOBAL_SCOPE = "*"
THROTTLED_ERROR_KIND = RateLimitExceededError.error_code


async def call_with_timeout(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Bound a store call by `timeout` and normalise its failures.

    Raises:
        StoreUnavailableError: On timeout, Redis error or socket error.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        store_errors_total.labels(operation=operation).inc()
        logger.warning(f"Store {operation} timed out after {timeout}s")
        raise StoreUnavailableError("Store timed out.", operation=operation) from exc
    except (RedisError, OSError) as exc:
        store_errors_total.labels(operation=operation).inc()
        logger.warning(f"Store {operation} failed: {exc!r}")
        raise StoreUnavailableError("Store unavailable.", operation=operation) from exc


# ── Records ───────────────────────────────────────────────────

@dataclass(frozen=True)
class OutcomeRecord:
    """
    One completed (or rejected) request. Append-only.

    Attributes:
        scope: Identity-derived counter key ("ip:..." / "account:...").
        timestamp: UTC completion time.
        success: Whether the downstream signer succeeded.
        latency_ms: End-to-end handling time.
        error_kind: Machine-readable error code, None on success.
        endpoint: Route that handled the request.
        tier: Caller tier at decision time.
    """

    scope: str
    timestamp: datetime
    success: bool
    latency_ms: float
    error_kind: str | None = None
    endpoint: str = "/v1/signature"
    tier: str = "free"
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def throttled(self) -> bool:
        return self.error_kind == THROTTLED_ERROR_KIND

    def to_json(self) -> str:
        return json.dumps(
            {
                "record_id": self.record_id,
                "scope": self.scope,
                "timestamp": self.timestamp.isoformat(),
                "success": self.success,
                "latency_ms": self.latency_ms,
                "error_kind": self.error_kind,
                "endpoint": self.endpoint,
                "tier": self.tier,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "OutcomeRecord":
        data: dict[str, Any] = json.loads(raw)
        return cls(
            scope=data["scope"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            success=bool(data["success"]),
            latency_ms=float(data.get("latency_ms") or 0.0),
            error_kind=data.get("error_kind"),
            endpoint=data.get("endpoint", "/v1/signature"),
            tier=data.get("tier", "free"),
            record_id=data.get("record_id") or uuid.uuid4().hex,
        )


@dataclass
class OutcomeStats:
    """
    Aggregate over the outcomes of a trailing time window.

    `total`, `failed` and latency cover requests that reached the signer.
    Throttled requests are only counted in `throttled` and `error_counts`.
    """

    total: int = 0
    failed: int = 0
    throttled: int = 0
    latency_samples: int = 0
    latency_total_ms: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)

    @property
    def mean_latency_ms(self) -> float | None:
        if not self.latency_samples:
            return None
        return self.latency_total_ms / self.latency_samples

    @property
    def error_rate(self) -> float | None:
        if not self.total:
            return None
        return self.failed / self.total

    def errors_of(self, kinds: Iterable[str] | None) -> int:
        """Failures of the given kinds; every upstream failure when kinds is None."""
        if kinds is None:
            return self.failed
        wanted = set(kinds)
        return sum(count for kind, count in self.error_counts.items() if kind in wanted)

    @classmethod
    def from_records(
        cls,
        records: Iterable[OutcomeRecord],
        endpoints: Iterable[str] | None = None,
    ) -> "OutcomeStats":
        wanted = set(endpoints) if endpoints else None
        stats = cls()
        for record in records:
            if wanted is not None and record.endpoint not in wanted:
                continue
            if record.throttled:
                stats.throttled += 1
                stats.error_counts[THROTTLED_ERROR_KIND] = stats.error_counts.get(THROTTLED_ERROR_KIND, 0) + 1
                continue
            stats.total += 1
            if record.latency_ms is not None:
                stats.latency_samples += 1
                stats.latency_total_ms += record.latency_ms
            if not record.success:
                stats.failed += 1
                kind = record.error_kind or "UNKNOWN"
                stats.error_counts[kind] = stats.error_counts.get(kind, 0) + 1
        return stats


# ── Contract ──────────────────────────────────────────────────

class QuotaStore(abc.ABC):
    """Counter and outcome-log operations the gateway core depends on."""

    @abc.abstractmethod
    async def increment(self, scope: str, window: UsageWindow, amount: int = 1) -> int:
        """Atomically add `amount` and return the post-increment value."""

    @abc.abstractmethod
    async def read(self, scope: str, window: UsageWindow) -> int:
        """Snapshot of a counter; 0 when the counter does not exist."""

    @abc.abstractmethod
    async def append_outcome(self, record: OutcomeRecord) -> None:
        """Append an outcome to the scope log and the global log."""

    @abc.abstractmethod
    async def recent_outcomes(self, scope: str | None, limit: int) -> list[bool]:
        """Success flags of the newest `limit` outcomes, newest first.

        `scope=None` reads across all scopes and leaves out throttled requests.
        """

    @abc.abstractmethod
    async def outcome_stats(self, since: datetime, endpoints: list[str] | None = None) -> OutcomeStats:
        """Aggregate outcomes recorded at or after `since`."""

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Return True if the backing store answers."""


# ── Redis implementation ──────────────────────────────────────

class RedisQuotaStore(QuotaStore):
    """
    QuotaStore over a shared `redis.asyncio` client.

    Keys:
        {prefix}quota:{scope}:{window}:{period}   integer counter with TTL
        {prefix}outcomes:{scope}                  capped list, newest first
        {prefix}outcomes:*                        capped global list
        {prefix}outcome-log                       sorted set scored by epoch seconds
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        key_prefix: str = "signgate:",
        outcome_history: int = DEFAULT_OUTCOME_HISTORY,
        outcome_retention_seconds: int = DEFAULT_OUTCOME_RETENTION_SECONDS,
    ) -> None:
        self._redis = redis_client
        self._timeout = timeout_seconds
        self._prefix = key_prefix
        self._history = outcome_history
        self._retention = outcome_retention_seconds

    # ── Counters ───────────────────────────────────────────────

    async def increment(self, scope: str, window: UsageWindow, amount: int = 1) -> int:
        key = self._counter_key(scope, window)

        async def _incr() -> int:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                if window.ttl_seconds:
                    pipe.expire(key, window.ttl_seconds)
                results = await pipe.execute()
            return int(results[0])

        return await self._guard("increment", _incr())

    async def read(self, scope: str, window: UsageWindow) -> int:
        raw = await self._guard("read", self._redis.get(self._counter_key(scope, window)))
        return int(raw) if raw is not None else 0

    # ── Outcome log ────────────────────────────────────────────

    async def append_outcome(self, record: OutcomeRecord) -> None:
        payload = record.to_json()
        score = record.timestamp.timestamp()
        scope_key = self._outcomes_key(record.scope)
        global_key = self._outcomes_key(GLOBAL_SCOPE)
        log_key = f"{self._prefix}outcome-log"

        async def _append() -> None:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.lpush(scope_key, payload)
                pipe.ltrim(scope_key, 0, self._history - 1)
                pipe.expire(scope_key, self._retention)
                if not record.throttled:
                    pipe.lpush(global_key, payload)
                    pipe.ltrim(global_key, 0, self._history - 1)
                pipe.zadd(log_key, {payload: score})
                pipe.zremrangebyscore(log_key, "-inf", f"({score - self._retention}")
                await pipe.execute()

        await self._guard("append_outcome", _append())

    async def recent_outcomes(self, scope: str | None, limit: int) -> list[bool]:
        if limit <= 0:
            return []
        key = self._outcomes_key(scope if scope is not None else GLOBAL_SCOPE)
        raw_items = await self._guard("recent_outcomes", self._redis.lrange(key, 0, limit - 1))
        return [OutcomeRecord.from_json(item).success for item in raw_items]

    async def outcome_stats(self, since: datetime, endpoints: list[str] | None = None) -> OutcomeStats:
        log_key = f"{self._prefix}outcome-log"
        raw_items = await self._guard(
            "outcome_stats",
            self._redis.zrangebyscore(log_key, since.timestamp(), "+inf"),
        )
        return OutcomeStats.from_records(
            (OutcomeRecord.from_json(item) for item in raw_items),
            endpoints=endpoints,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._guard("ping", self._redis.ping()))
        except StoreUnavailableError:
            return False

    # ── Internal helpers ───────────────────────────────────────

    def _counter_key(self, scope: str, window: UsageWindow) -> str:
        return f"{self._prefix}quota:{scope}:{window.window.value}:{window.period_key}"

    def _outcomes_key(self, scope: str) -> str:
        return f"{self._prefix}outcomes:{scope}"

    async def _guard(self, operation: str, awaitable: Awaitable[T]) -> T:
        return await call_with_timeout(operation, awaitable, self._timeout)


async def create_redis_client(redis_url: str, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> aioredis.Redis:
    """
    Create the shared Redis client and ping it once.

    An unreachable Redis at startup is logged, not raised: the limiter
    fails open and the pool reconnects on its own once Redis is back.
    """
    client: aioredis.Redis = aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=max(timeout_seconds * 4, 1.0),
        retry_on_timeout=False,
        health_check_interval=30,
    )
    try:
        await call_with_timeout("ping", client.ping(), 2.0)
        logger.info("Redis connection established")
    except StoreUnavailableError:
        logger.error("Redis unreachable at startup; serving with degraded rate limiting")
    return client


# ── In-memory implementation ──────────────────────────────────

class InMemoryQuotaStore(QuotaStore):
    """
    Single-process QuotaStore for tests and local development.

    Each mutation runs without an await between its read and write,
    so it is atomic with respect to every other task on the loop.
    Every operation yields once first, like a network round-trip would.
    """

    def __init__(
        self,
        outcome_history: int = DEFAULT_OUTCOME_HISTORY,
        outcome_retention_seconds: int = DEFAULT_OUTCOME_RETENTION_SECONDS,
    ) -> None:
        self._counters: dict[tuple[str, UsageWindow], int] = {}
        self._expires_at: dict[tuple[str, UsageWindow], float] = {}
        self._outcomes: dict[str, deque[OutcomeRecord]] = defaultdict(
            lambda: deque(maxlen=outcome_history)
        )
        self._log: deque[OutcomeRecord] = deque()
        self._retention = timedelta(seconds=outcome_retention_seconds)

    async def increment(self, scope: str, window: UsageWindow, amount: int = 1) -> int:
        await asyncio.sleep(0)
        key = (scope, window)
        self._evict_if_expired(key)
        value = self._counters.get(key, 0) + amount
        self._counters[key] = value
        if window.ttl_seconds:
            self._expires_at[key] = time.monotonic() + window.ttl_seconds
        return value

    async def read(self, scope: str, window: UsageWindow) -> int:
        await asyncio.sleep(0)
        key = (scope, window)
        self._evict_if_expired(key)
        return self._counters.get(key, 0)

    async def append_outcome(self, record: OutcomeRecord) -> None:
        await asyncio.sleep(0)
        self._outcomes[record.scope].appendleft(record)
        if not record.throttled:
            self._outcomes[GLOBAL_SCOPE].appendleft(record)
        self._log.append(record)
        cutoff = record.timestamp - self._retention
        while self._log and self._log[0].timestamp < cutoff:
            self._log.popleft()

    async def recent_outcomes(self, scope: str | None, limit: int) -> list[bool]:
        await asyncio.sleep(0)
        if limit <= 0:
            return []
        log = self._outcomes.get(scope if scope is not None else GLOBAL_SCOPE, deque())
        return [record.success for record in list(log)[:limit]]

    async def outcome_stats(self, since: datetime, endpoints: list[str] | None = None) -> OutcomeStats:
        await asyncio.sleep(0)
        since = since if since.tzinfo else since.replace(tzinfo=timezone.utc)
        return OutcomeStats.from_records(
            (record for record in self._log if record.timestamp >= since),
            endpoints=endpoints,
        )

    async def ping(self) -> bool:
        return True

    def _evict_if_expired(self, key: tuple[str, UsageWindow]) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and time.monotonic() >= expires_at:
            self._counters.pop(key, None)
            self._expires_at.pop(key, None)
