"""
signgate/services/alert_repository.py

Alert rules and emitted alerts: models plus persistence.

Design Decisions:
- Rules and alerts are small JSON documents in Redis hashes keyed by
  ID. Alerts also go into a sorted set scored by trigger time so the
  newest-first listing doesn't need a full scan and sort.
- Acknowledgement is guarded by `SET NX` on a per-alert marker key
  that expires as a lease. The stored alert stays the record of who
  acknowledged it, and a claim whose write failed is released.
  Two operators racing to acknowledge the same alert get exactly one
  success and one AlertAlreadyAcknowledgedError.
- `seed_rules` only writes rules that are missing, so an operator's
  edits (disabled rule, raised threshold) survive a restart.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable

import redis.asyncio as aioredis

from signgate.services.quota_store import DEFAULT_TIMEOUT_SECONDS, call_with_timeout
from signgate.utils.exceptions import (
    AlertAlreadyAcknowledgedError,
    AlertNotFoundError,
    StoreUnavailableError,
)
from signgate.utils.logger import get_logger

logger = get_logger(__name__)

ACK_CLAIM_TTL_SECONDS = 300


class AlertType(str, enum.Enum):
    ERROR_RATE = "error_rate"
    ERROR_COUNT = "error_count"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    RESPONSE_TIME = "response_time"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ── Models ────────────────────────────────────────────────────

@dataclass(frozen=True)
class AlertCondition:
    """
    What a rule measures.

    Attributes:
        type: Which aggregate to compare.
        threshold: Ratio for error_rate, count for error_count and
                   consecutive_failures, milliseconds for response_time.
        time_window_minutes: Trailing window the aggregate covers.
        error_kinds: error_count only counts these kinds (all when None).
        endpoints: Restrict aggregates to these routes (all when None).
    """

    type: AlertType
    threshold: float
    time_window_minutes: int
    error_kinds: tuple[str, ...] | None = None
    endpoints: tuple[str, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "threshold": self.threshold,
            "time_window_minutes": self.time_window_minutes,
            "error_kinds": list(self.error_kinds) if self.error_kinds is not None else None,
            "endpoints": list(self.endpoints) if self.endpoints is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlertCondition":
        kinds = data.get("error_kinds")
        endpoints = data.get("endpoints")
        return cls(
            type=AlertType(data["type"]),
            threshold=float(data["threshold"]),
            time_window_minutes=int(data["time_window_minutes"]),
            error_kinds=tuple(kinds) if kinds is not None else None,
            endpoints=tuple(endpoints) if endpoints is not None else None,
        )


@dataclass(frozen=True)
class AlertRule:
    rule_id: str
    name: str
    condition: AlertCondition
    severity: Severity
    enabled: bool = True
    cooldown_minutes: int = 15
    last_triggered: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "condition": self.condition.to_dict(),
            "severity": self.severity.value,
            "enabled": self.enabled,
            "cooldown_minutes": self.cooldown_minutes,
            "last_triggered": self.last_triggered.isoformat() if self.last_triggered else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlertRule":
        last = data.get("last_triggered")
        return cls(
            rule_id=data["rule_id"],
            name=data["name"],
            condition=AlertCondition.from_dict(data["condition"]),
            severity=Severity(data["severity"]),
            enabled=bool(data.get("enabled", True)),
            cooldown_minutes=int(data.get("cooldown_minutes", 15)),
            last_triggered=datetime.fromisoformat(last) if last else None,
        )


@dataclass(frozen=True)
class Alert:
    """One emitted alert. Only the acknowledgement fields ever change."""

    rule_id: str
    rule_name: str
    message: str
    severity: Severity
    triggered_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    alert_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "message": self.message,
            "severity": self.severity.value,
            "triggered_at": self.triggered_at.isoformat(),
            "metadata": self.metadata,
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        acked_at = data.get("acknowledged_at")
        return cls(
            alert_id=data["alert_id"],
            rule_id=data["rule_id"],
            rule_name=data.get("rule_name", data["rule_id"]),
            message=data["message"],
            severity=Severity(data["severity"]),
            triggered_at=datetime.fromisoformat(data["triggered_at"]),
            metadata=data.get("metadata") or {},
            acknowledged=bool(data.get("acknowledged", False)),
            acknowledged_by=data.get("acknowledged_by"),
            acknowledged_at=datetime.fromisoformat(acked_at) if acked_at else None,
        )


DEFAULT_ALERT_RULES: tuple[AlertRule, ...] = (
    AlertRule(
        rule_id="high-error-rate",
        name="High Error Rate",
        condition=AlertCondition(AlertType.ERROR_RATE, 0.1, 15),
        severity=Severity.HIGH,
        cooldown_minutes=30,
    ),
    AlertRule(
        rule_id="critical-errors",
        name="Critical Errors",
        condition=AlertCondition(AlertType.ERROR_COUNT, 1, 5, error_kinds=("INTERNAL_ERROR",)),
        severity=Severity.CRITICAL,
        cooldown_minutes=15,
    ),
    AlertRule(
        rule_id="signature-failures",
        name="Signature Generation Failures",
        condition=AlertCondition(AlertType.ERROR_COUNT, 5, 10, error_kinds=("SIGNER_ERROR",)),
        severity=Severity.HIGH,
        cooldown_minutes=20,
    ),
    AlertRule(
        rule_id="store-errors",
        name="Quota Store Errors",
        condition=AlertCondition(AlertType.ERROR_COUNT, 3, 5, error_kinds=("STORE_UNAVAILABLE",)),
        severity=Severity.CRITICAL,
        cooldown_minutes=10,
    ),
    AlertRule(
        rule_id="consecutive-failures",
        name="Consecutive API Failures",
        condition=AlertCondition(AlertType.CONSECUTIVE_FAILURES, 10, 5),
        severity=Severity.HIGH,
        cooldown_minutes=15,
    ),
    AlertRule(
        rule_id="slow-response-time",
        name="Slow Response Time",
        condition=AlertCondition(AlertType.RESPONSE_TIME, 5000, 10),
        severity=Severity.MEDIUM,
        cooldown_minutes=30,
    ),
)


# ── Contract ──────────────────────────────────────────────────

class AlertRepository(abc.ABC):
    """Persistence for alert rules and emitted alerts."""

    @abc.abstractmethod
    async def list_rules(self) -> list[AlertRule]:
        ...

    @abc.abstractmethod
    async def get_rule(self, rule_id: str) -> AlertRule:
        """Raises AlertNotFoundError for an unknown ID."""

    @abc.abstractmethod
    async def save_rule(self, rule: AlertRule) -> None:
        ...

    @abc.abstractmethod
    async def list_alerts(self, active_only: bool = True, limit: int = 100) -> list[Alert]:
        """Newest first."""

    @abc.abstractmethod
    async def acknowledge(self, alert_id: str, operator: str, at: datetime) -> Alert:
        """
        Raises:
            AlertNotFoundError: Unknown alert ID.
            AlertAlreadyAcknowledgedError: Someone got there first.
        """

    @abc.abstractmethod
    async def record_trigger(self, alert: Alert) -> AlertRule:
        """
        Store the alert and stamp its rule's last_triggered in one write.

        Either both land or neither does, so a failed stamp can never
        leave an alert whose rule fires again on the next cycle.
        """

    async def seed_rules(self, rules: Iterable[AlertRule] = DEFAULT_ALERT_RULES) -> int:
        """Insert rules whose IDs are not stored yet. Returns how many were added."""
        existing = {rule.rule_id for rule in await self.list_rules()}
        added = 0
        for rule in rules:
            if rule.rule_id not in existing:
                await self.save_rule(rule)
                added += 1
        if added:
            logger.info(f"Seeded {added} default alert rule(s)")
        return added


# ── Redis implementation ──────────────────────────────────────

class RedisAlertRepository(AlertRepository):
    """
    Keys:
        {prefix}alert-rules          hash: rule_id → rule JSON
        {prefix}alerts               hash: alert_id → alert JSON
        {prefix}alerts-by-time       sorted set: alert_id scored by trigger time
        {prefix}alert-ack:{id}       acknowledgement claim, expires after ACK_CLAIM_TTL_SECONDS
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        key_prefix: str = "signgate:",
    ) -> None:
        self._redis = redis_client
        self._timeout = timeout_seconds
        self._rules_key = f"{key_prefix}alert-rules"
        self._alerts_key = f"{key_prefix}alerts"
        self._index_key = f"{key_prefix}alerts-by-time"
        self._ack_prefix = f"{key_prefix}alert-ack:"

    async def list_rules(self) -> list[AlertRule]:
        raw = await call_with_timeout("list_rules", self._redis.hgetall(self._rules_key), self._timeout)
        rules = [AlertRule.from_dict(json.loads(value)) for value in raw.values()]
        return sorted(rules, key=lambda rule: rule.rule_id)

    async def get_rule(self, rule_id: str) -> AlertRule:
        raw = await call_with_timeout("get_rule", self._redis.hget(self._rules_key, rule_id), self._timeout)
        if raw is None:
            raise AlertNotFoundError(f"Alert rule '{rule_id}' not found.")
        return AlertRule.from_dict(json.loads(raw))

    async def save_rule(self, rule: AlertRule) -> None:
        await call_with_timeout(
            "save_rule",
            self._redis.hset(self._rules_key, rule.rule_id, json.dumps(rule.to_dict())),
            self._timeout,
        )

    async def record_trigger(self, alert: Alert) -> AlertRule:
        rule = replace(await self.get_rule(alert.rule_id), last_triggered=alert.triggered_at)

        async def _record() -> None:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._rules_key, rule.rule_id, json.dumps(rule.to_dict()))
                pipe.hset(self._alerts_key, alert.alert_id, json.dumps(alert.to_dict()))
                pipe.zadd(self._index_key, {alert.alert_id: alert.triggered_at.timestamp()})
                await pipe.execute()

        await call_with_timeout("record_trigger", _record(), self._timeout)
        return rule

    async def list_alerts(self, active_only: bool = True, limit: int = 100) -> list[Alert]:
        ids = await call_with_timeout(
            "list_alerts",
            self._redis.zrevrange(self._index_key, 0, -1),
            self._timeout,
        )
        if not ids:
            return []
        raw_items = await call_with_timeout("list_alerts", self._redis.hmget(self._alerts_key, ids), self._timeout)

        alerts: list[Alert] = []
        for raw in raw_items:
            if raw is None:
                continue
            alert = Alert.from_dict(json.loads(raw))
            if active_only and alert.acknowledged:
                continue
            alerts.append(alert)
            if len(alerts) >= limit:
                break
        return alerts

    async def acknowledge(self, alert_id: str, operator: str, at: datetime) -> Alert:
        raw = await call_with_timeout("acknowledge", self._redis.hget(self._alerts_key, alert_id), self._timeout)
        if raw is None:
            raise AlertNotFoundError(f"Alert '{alert_id}' not found.")
        stored = Alert.from_dict(json.loads(raw))
        if stored.acknowledged:
            raise AlertAlreadyAcknowledgedError(f"Alert '{alert_id}' is already acknowledged.")

        claimed = await call_with_timeout(
            "acknowledge",
            self._redis.set(f"{self._ack_prefix}{alert_id}", operator, nx=True, ex=ACK_CLAIM_TTL_SECONDS),
            self._timeout,
        )
        if not claimed:
            raise AlertAlreadyAcknowledgedError(f"Alert '{alert_id}' is already acknowledged.")

        alert = replace(stored, acknowledged=True, acknowledged_by=operator, acknowledged_at=at)
        try:
            await call_with_timeout(
                "acknowledge",
                self._redis.hset(self._alerts_key, alert_id, json.dumps(alert.to_dict())),
                self._timeout,
            )
        except StoreUnavailableError:
            await self._release_claim(alert_id)
            raise
        logger.info("Alert acknowledged", alert_id=alert_id, operator=operator)
        return alert

    async def _release_claim(self, alert_id: str) -> None:
        """Drop the marker of an acknowledgement that never got written."""
        try:
            await call_with_timeout(
                "acknowledge", self._redis.delete(f"{self._ack_prefix}{alert_id}"), self._timeout
            )
        except StoreUnavailableError as exc:
            logger.warning(
                f"Could not release acknowledgement claim, it expires in {ACK_CLAIM_TTL_SECONDS}s: {exc.message}",
                alert_id=alert_id,
            )


# ── In-memory implementation ──────────────────────────────────

class InMemoryAlertRepository(AlertRepository):
    """Single-process repository for tests and local development."""

    def __init__(self, rules: Iterable[AlertRule] = ()) -> None:
        self._rules: dict[str, AlertRule] = {rule.rule_id: rule for rule in rules}
        self._alerts: dict[str, Alert] = {}

    async def list_rules(self) -> list[AlertRule]:
        await asyncio.sleep(0)
        return sorted(self._rules.values(), key=lambda rule: rule.rule_id)

    async def get_rule(self, rule_id: str) -> AlertRule:
        await asyncio.sleep(0)
        try:
            return self._rules[rule_id]
        except KeyError:
            raise AlertNotFoundError(f"Alert rule '{rule_id}' not found.") from None

    async def save_rule(self, rule: AlertRule) -> None:
        await asyncio.sleep(0)
        self._rules[rule.rule_id] = rule

    async def record_trigger(self, alert: Alert) -> AlertRule:
        rule = replace(await self.get_rule(alert.rule_id), last_triggered=alert.triggered_at)
        self._rules[rule.rule_id] = rule
        self._alerts[alert.alert_id] = alert
        return rule

    async def list_alerts(self, active_only: bool = True, limit: int = 100) -> list[Alert]:
        await asyncio.sleep(0)
        alerts = sorted(self._alerts.values(), key=lambda alert: alert.triggered_at, reverse=True)
        if active_only:
            alerts = [alert for alert in alerts if not alert.acknowledged]
        return alerts[:limit]

    async def acknowledge(self, alert_id: str, operator: str, at: datetime) -> Alert:
        await asyncio.sleep(0)
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert '{alert_id}' not found.")
        if alert.acknowledged:
            raise AlertAlreadyAcknowledgedError(f"Alert '{alert_id}' is already acknowledged.")
        alert = replace(alert, acknowledged=True, acknowledged_by=operator, acknowledged_at=at)
        self._alerts[alert_id] = alert
        return alert
