"""
signgate/services/alert_evaluator.py

Alert Evaluator: periodic rule checks over the outcome log.

Algorithm (per enabled rule, per cycle):
    1. Skip while `now < last_triggered + cooldown`.
    2. Compute the rule's aggregate over its trailing window.
    3. Threshold crossed → persist Alert and stamp last_triggered in
       one write, then hand the alert to the notification sink in the
       background.

Design Decisions:
- A rule whose read or trigger write fails is skipped for this cycle
  only. One flaky store call must neither raise an alert nor stop the
  other rules. Unreadable rules skip the whole cycle.
- Rates and averages never fire on an empty window. "No traffic" is
  not "100% errors".
- AlertScheduler owns exactly one asyncio task, so two cycles can
  never overlap. Manual runs from the admin API take the same lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from signgate.services.alert_repository import (
    Alert,
    AlertRepository,
    AlertRule,
    AlertType,
    Severity,
)
from signgate.services.background import BackgroundDispatcher
from signgate.services.quota_store import QuotaStore
from signgate.services.quota_windows import utcnow
from signgate.utils.exceptions import StoreUnavailableError
from signgate.utils.logger import get_logger
from signgate.utils.metrics import alert_rule_errors_total, alerts_triggered_total

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 300
UPDATABLE_RULE_FIELDS = frozenset({"enabled", "threshold", "cooldown_minutes", "severity"})


class NotificationSink(Protocol):
    async def notify(self, alert: Alert) -> None:
        ...


class LoggingNotificationSink:
    """Writes alerts to the log. Delivery channels plug in behind the same protocol."""

    async def notify(self, alert: Alert) -> None:
        log = logger.bind(alert_id=alert.alert_id, rule_id=alert.rule_id, severity=alert.severity.value)
        if alert.severity in (Severity.HIGH, Severity.CRITICAL):
            log.error(f"ALERT: {alert.message}")
        else:
            log.warning(f"ALERT: {alert.message}")


def build_alert_message(rule: AlertRule) -> str:
    condition = rule.condition
    if condition.type is AlertType.ERROR_RATE:
        return (
            f"Error rate exceeded {condition.threshold * 100:.1f}% "
            f"in the last {condition.time_window_minutes} minutes"
        )
    if condition.type is AlertType.ERROR_COUNT:
        kinds = ", ".join(condition.error_kinds) if condition.error_kinds else "all types"
        return (
            f"{condition.threshold:g} or more errors of type(s) {kinds} "
            f"occurred in the last {condition.time_window_minutes} minutes"
        )
    if condition.type is AlertType.CONSECUTIVE_FAILURES:
        return f"{condition.threshold:g} consecutive API failures detected"
    if condition.type is AlertType.RESPONSE_TIME:
        return (
            f"Average response time exceeded {condition.threshold:g}ms "
            f"in the last {condition.time_window_minutes} minutes"
        )
    return f"Alert condition met for rule: {rule.name}"


class AlertEvaluator:
    """
    Evaluates alert rules against the outcome log.

    Usage:
        evaluator = AlertEvaluator(store, repository, LoggingNotificationSink(), dispatcher)
        alerts = await evaluator.evaluate_alerts()
    """

    def __init__(
        self,
        store: QuotaStore,
        repository: AlertRepository,
        sink: NotificationSink,
        dispatcher: BackgroundDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._repository = repository
        self._sink = sink
        self._dispatcher = dispatcher
        self._clock = clock

    async def evaluate_alerts(self, now: datetime | None = None) -> list[Alert]:
        """Run one evaluation cycle and return the alerts it emitted."""
        now = now or self._clock()
        triggered: list[Alert] = []

        try:
            rules = await self._repository.list_rules()
        except StoreUnavailableError as exc:
            logger.warning(f"Skipping alert cycle, rules unreadable: {exc.message}")
            return triggered

        for rule in rules:
            if not rule.enabled or self._cooling_down(rule, now):
                continue

            try:
                observed = await self._observe(rule, now)
                if observed is None:
                    continue
                alert = await self._trigger(rule, observed, now)
            except StoreUnavailableError as exc:
                alert_rule_errors_total.labels(rule_id=rule.rule_id).inc()
                logger.warning(f"Skipping alert rule {rule.rule_id}: {exc.message}")
                continue

            triggered.append(alert)

        if triggered:
            logger.info(f"Alert cycle emitted {len(triggered)} alert(s)")
        return triggered

    # ── Rule management ────────────────────────────────────────

    async def list_rules(self) -> list[AlertRule]:
        return await self._repository.list_rules()

    async def update_rule(self, rule_id: str, **changes: Any) -> AlertRule:
        """
        Change a rule's enabled flag, threshold, cooldown or severity.

        Raises:
            ValueError: A field outside the updatable set was passed.
            AlertNotFoundError: Unknown rule.
        """
        unknown = set(changes) - UPDATABLE_RULE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update alert rule field(s): {', '.join(sorted(unknown))}")

        rule = await self._repository.get_rule(rule_id)
        if "threshold" in changes:
            rule = replace(rule, condition=replace(rule.condition, threshold=float(changes.pop("threshold"))))
        if "severity" in changes:
            changes["severity"] = Severity(changes["severity"])
        rule = replace(rule, **changes)

        await self._repository.save_rule(rule)
        logger.info("Alert rule updated", rule_id=rule_id)
        return rule

    async def active_alerts(self) -> list[Alert]:
        return await self._repository.list_alerts(active_only=True)

    async def acknowledge(self, alert_id: str, operator: str) -> Alert:
        return await self._repository.acknowledge(alert_id, operator, self._clock())

    # ── Internal helpers ───────────────────────────────────────

    @staticmethod
    def _cooling_down(rule: AlertRule, now: datetime) -> bool:
        if rule.last_triggered is None:
            return False
        return now < rule.last_triggered + timedelta(minutes=rule.cooldown_minutes)

    async def _observe(self, rule: AlertRule, now: datetime) -> dict[str, Any] | None:
        """Return the measured values when the rule fires, else None."""
        condition = rule.condition
        since = now - timedelta(minutes=condition.time_window_minutes)
        endpoints = list(condition.endpoints) if condition.endpoints else None

        if condition.type is AlertType.CONSECUTIVE_FAILURES:
            needed = int(condition.threshold)
            recent = await self._store.recent_outcomes(None, needed)
            if needed > 0 and len(recent) == needed and not any(recent):
                return {"consecutive_failures": needed}
            return None

        stats = await self._store.outcome_stats(since, endpoints)

        if condition.type is AlertType.ERROR_RATE:
            rate = stats.error_rate
            if rate is not None and rate >= condition.threshold:
                return {"error_rate": round(rate, 4), "total": stats.total, "failed": stats.failed}
            return None

        if condition.type is AlertType.ERROR_COUNT:
            count = stats.errors_of(condition.error_kinds)
            if count >= condition.threshold:
                return {"error_count": count}
            return None

        if condition.type is AlertType.RESPONSE_TIME:
            mean = stats.mean_latency_ms
            if mean is not None and mean >= condition.threshold:
                return {"mean_latency_ms": round(mean, 1), "samples": stats.latency_samples}
            return None

        raise ValueError(f"Unhandled alert type: {condition.type!r}")

    async def _trigger(self, rule: AlertRule, observed: dict[str, Any], now: datetime) -> Alert:
        alert = Alert(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            message=build_alert_message(rule),
            severity=rule.severity,
            triggered_at=now,
            metadata={
                "condition": rule.condition.to_dict(),
                "observed": observed,
            },
        )
        await self._repository.record_trigger(alert)

        alerts_triggered_total.labels(rule_id=rule.rule_id, severity=rule.severity.value).inc()
        self._dispatcher.dispatch("alert_notification", self._sink.notify(alert))
        return alert


class AlertScheduler:
    """
    Runs `evaluate_alerts` on a fixed interval.

    Usage:
        scheduler = AlertScheduler(evaluator, interval_seconds=300)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, evaluator: AlertEvaluator, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._evaluator = evaluator
        self._interval = interval_seconds
        self._lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="signgate:alert-scheduler")
        logger.info(f"Alert scheduler started (every {self._interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=self._interval + 5)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Alert scheduler stopped")

    async def run_cycle(self) -> list[Alert]:
        """One evaluation, serialized against the background loop."""
        async with self._lock:
            return await self._evaluator.evaluate_alerts()

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.error(f"Alert evaluation cycle failed: {exc!r}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
