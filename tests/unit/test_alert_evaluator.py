"""
tests/unit/test_alert_evaluator.py

Unit tests for AlertEvaluator and AlertScheduler.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from signgate.services.alert_evaluator import (
    AlertEvaluator,
    AlertScheduler,
    build_alert_message,
)
from signgate.services.alert_repository import (
    DEFAULT_ALERT_RULES,
    AlertCondition,
    AlertRule,
    AlertType,
    InMemoryAlertRepository,
    Severity,
)
from signgate.services.background import BackgroundDispatcher
from signgate.services.quota_store import InMemoryQuotaStore, OutcomeRecord
from signgate.utils.exceptions import (
    AlertAlreadyAcknowledgedError,
    AlertNotFoundError,
    StoreUnavailableError,
)

T0 = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


def _rule(alert_type: AlertType, threshold: float, **kwargs) -> AlertRule:
    return AlertRule(
        rule_id=kwargs.pop("rule_id", f"test-{alert_type.value}"),
        name=kwargs.pop("name", "Test rule"),
        condition=AlertCondition(alert_type, threshold, kwargs.pop("window", 10), **kwargs),
        severity=Severity.HIGH,
        cooldown_minutes=30,
    )


async def _record(store, *successes: bool, at: datetime = T0, **kwargs) -> None:
    """Append outcomes oldest first."""
    for success in successes:
        await store.append_outcome(
            OutcomeRecord(scope="ip:203.0.113.5", timestamp=at, success=success, latency_ms=100.0, **kwargs)
        )


@pytest.fixture
def store():
    return InMemoryQuotaStore()


@pytest.fixture
def sink():
    s = MagicMock()
    s.notify = AsyncMock()
    return s


def _evaluator(store, rules, sink, clock=lambda: T0):
    repository = InMemoryAlertRepository(rules)
    evaluator = AlertEvaluator(store, repository, sink, BackgroundDispatcher(), clock=clock)
    return evaluator, repository


class TestConsecutiveFailures:
    @pytest.mark.asyncio
    async def test_five_failures_trigger_once(self, store, sink):
        evaluator, repository = _evaluator(store, [_rule(AlertType.CONSECUTIVE_FAILURES, 5)], sink)
        await _record(store, False, False, False, False, False)

        alerts = await evaluator.evaluate_alerts()

        assert len(alerts) == 1
        assert alerts[0].message == "5 consecutive API failures detected"
        assert len(await repository.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_newest_success_breaks_the_run(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.CONSECUTIVE_FAILURES, 5)], sink)
        await _record(store, False, False, False, False, True)
        assert await evaluator.evaluate_alerts() == []

    @pytest.mark.asyncio
    async def test_too_few_outcomes_do_not_trigger(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.CONSECUTIVE_FAILURES, 5)], sink)
        await _record(store, False, False, False, False)
        assert await evaluator.evaluate_alerts() == []


class TestCooldown:
    @pytest.mark.asyncio
    async def test_cooldown_suppresses_then_releases(self, store, sink):
        rule = _rule(AlertType.CONSECUTIVE_FAILURES, 5)
        evaluator, repository = _evaluator(store, [rule], sink)
        await _record(store, *([False] * 5))

        assert len(await evaluator.evaluate_alerts(now=T0)) == 1
        assert (await repository.get_rule(rule.rule_id)).last_triggered == T0

        assert await evaluator.evaluate_alerts(now=T0 + timedelta(minutes=15)) == []
        assert len(await evaluator.evaluate_alerts(now=T0 + timedelta(minutes=31))) == 1


class TestAggregateRules:
    @pytest.mark.asyncio
    async def test_error_rate_needs_traffic(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.ERROR_RATE, 0.1)], sink)
        assert await evaluator.evaluate_alerts() == []

    @pytest.mark.asyncio
    async def test_error_rate_triggers_at_threshold(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.ERROR_RATE, 0.1)], sink)
        await _record(store, *([True] * 9), False, at=T0 - timedelta(minutes=1))
        alerts = await evaluator.evaluate_alerts()
        assert len(alerts) == 1
        assert alerts[0].metadata["observed"]["error_rate"] == 0.1

    @pytest.mark.asyncio
    async def test_error_count_filters_kinds(self, store, sink):
        rule = _rule(AlertType.ERROR_COUNT, 2, error_kinds=("SIGNER_ERROR",))
        evaluator, _ = _evaluator(store, [rule], sink)
        await _record(store, False, at=T0 - timedelta(minutes=1), error_kind="SIGNER_ERROR")
        await _record(store, False, False, at=T0 - timedelta(minutes=1), error_kind="STORE_UNAVAILABLE")
        assert await evaluator.evaluate_alerts() == []

        await _record(store, False, at=T0 - timedelta(minutes=1), error_kind="SIGNER_ERROR")
        assert len(await evaluator.evaluate_alerts()) == 1

    @pytest.mark.asyncio
    async def test_old_outcomes_fall_out_of_window(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.ERROR_COUNT, 1, window=5)], sink)
        await _record(store, False, at=T0 - timedelta(minutes=10))
        assert await evaluator.evaluate_alerts() == []

    @pytest.mark.asyncio
    async def test_response_time_uses_mean_latency(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.RESPONSE_TIME, 100)], sink)
        assert await evaluator.evaluate_alerts() == []
        await _record(store, True, at=T0 - timedelta(minutes=1))
        assert len(await evaluator.evaluate_alerts()) == 1


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_read_error_skips_rule_without_raising(self, sink):
        store = AsyncMock()
        store.outcome_stats = AsyncMock(side_effect=StoreUnavailableError("down"))
        store.recent_outcomes = AsyncMock(return_value=[False] * 5)
        rules = [_rule(AlertType.ERROR_RATE, 0.1), _rule(AlertType.CONSECUTIVE_FAILURES, 5)]
        evaluator, _ = _evaluator(store, rules, sink)

        alerts = await evaluator.evaluate_alerts()
        assert [a.rule_id for a in alerts] == ["test-consecutive_failures"]

    @pytest.mark.asyncio
    async def test_trigger_write_error_skips_only_that_rule(self, store, sink):
        class FlakyRepository(InMemoryAlertRepository):
            async def record_trigger(self, alert):
                if alert.rule_id == "a-first":
                    raise StoreUnavailableError("down", operation="record_trigger")
                return await super().record_trigger(alert)

        rules = [
            _rule(AlertType.CONSECUTIVE_FAILURES, 1, rule_id="a-first"),
            _rule(AlertType.ERROR_RATE, 0.5, rule_id="b-second"),
        ]
        repository = FlakyRepository(rules)
        evaluator = AlertEvaluator(store, repository, sink, BackgroundDispatcher(), clock=lambda: T0)
        await _record(store, False, at=T0 - timedelta(minutes=1))

        alerts = await evaluator.evaluate_alerts()

        assert [a.rule_id for a in alerts] == ["b-second"]
        assert [a.rule_id for a in await repository.list_alerts()] == ["b-second"]
        assert (await repository.get_rule("a-first")).last_triggered is None
        assert (await repository.get_rule("b-second")).last_triggered == T0

    @pytest.mark.asyncio
    async def test_unreadable_rules_end_the_cycle_quietly(self, store, sink):
        repository = MagicMock()
        repository.list_rules = AsyncMock(side_effect=StoreUnavailableError("down", operation="list_rules"))
        evaluator = AlertEvaluator(store, repository, sink, BackgroundDispatcher(), clock=lambda: T0)

        assert await evaluator.evaluate_alerts() == []

    @pytest.mark.asyncio
    async def test_throttled_requests_never_look_like_failures(self, store, sink):
        rules = [
            _rule(AlertType.CONSECUTIVE_FAILURES, 10, rule_id="consecutive"),
            _rule(AlertType.ERROR_RATE, 0.1, rule_id="rate"),
        ]
        evaluator, _ = _evaluator(store, rules, sink)
        await _record(store, True, at=T0 - timedelta(minutes=1))
        await _record(store, *([False] * 10), at=T0 - timedelta(minutes=1), error_kind="RATE_LIMIT_EXCEEDED")

        assert await evaluator.evaluate_alerts() == []

    @pytest.mark.asyncio
    async def test_disabled_rules_are_skipped(self, store, sink):
        rule = _rule(AlertType.CONSECUTIVE_FAILURES, 1)
        evaluator, _ = _evaluator(store, [rule], sink)
        await evaluator.update_rule(rule.rule_id, enabled=False)
        await _record(store, False)
        assert await evaluator.evaluate_alerts() == []

    @pytest.mark.asyncio
    async def test_notification_is_dispatched(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.CONSECUTIVE_FAILURES, 1)], sink)
        await _record(store, False)
        await evaluator.evaluate_alerts()
        await asyncio.sleep(0)
        sink.notify.assert_awaited_once()


class TestRuleManagement:
    @pytest.mark.asyncio
    async def test_update_threshold_and_severity(self, store, sink):
        rule = _rule(AlertType.ERROR_COUNT, 5)
        evaluator, _ = _evaluator(store, [rule], sink)
        updated = await evaluator.update_rule(rule.rule_id, threshold=2, severity="critical")
        assert updated.condition.threshold == 2.0
        assert updated.severity is Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, store, sink):
        rule = _rule(AlertType.ERROR_COUNT, 5)
        evaluator, _ = _evaluator(store, [rule], sink)
        with pytest.raises(ValueError):
            await evaluator.update_rule(rule.rule_id, name="renamed")

    @pytest.mark.asyncio
    async def test_update_unknown_rule(self, store, sink):
        evaluator, _ = _evaluator(store, [], sink)
        with pytest.raises(AlertNotFoundError):
            await evaluator.update_rule("missing", enabled=False)

    @pytest.mark.asyncio
    async def test_acknowledge_once(self, store, sink):
        evaluator, _ = _evaluator(store, [_rule(AlertType.CONSECUTIVE_FAILURES, 1)], sink)
        await _record(store, False)
        [alert] = await evaluator.evaluate_alerts()

        acked = await evaluator.acknowledge(alert.alert_id, "oncall")
        assert acked.acknowledged_by == "oncall"
        assert acked.acknowledged_at == T0
        assert await evaluator.active_alerts() == []

        with pytest.raises(AlertAlreadyAcknowledgedError):
            await evaluator.acknowledge(alert.alert_id, "someone-else")

    def test_default_messages(self):
        messages = {rule.rule_id: build_alert_message(rule) for rule in DEFAULT_ALERT_RULES}
        assert messages["high-error-rate"] == "Error rate exceeded 10.0% in the last 15 minutes"
        assert "SIGNER_ERROR" in messages["signature-failures"]
        assert messages["slow-response-time"] == "Average response time exceeded 5000ms in the last 10 minutes"


class TestScheduler:
    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            AlertScheduler(MagicMock(), interval_seconds=0)

    @pytest.mark.asyncio
    async def test_start_runs_a_cycle_and_stop_ends_loop(self):
        evaluator = MagicMock()
        evaluator.evaluate_alerts = AsyncMock(return_value=[])
        scheduler = AlertScheduler(evaluator, interval_seconds=60)

        scheduler.start()
        await asyncio.sleep(0.01)
        assert scheduler.running
        await scheduler.stop()

        assert not scheduler.running
        evaluator.evaluate_alerts.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cycle_exception_does_not_kill_loop(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

        evaluator = MagicMock()
        evaluator.evaluate_alerts = AsyncMock(side_effect=flaky)
        scheduler = AlertScheduler(evaluator, interval_seconds=0.01)

        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()
        assert evaluator.evaluate_alerts.await_count >= 2

    @pytest.mark.asyncio
    async def test_nothing_runs_until_started(self):
        evaluator = MagicMock()
        evaluator.evaluate_alerts = AsyncMock(return_value=[])
        AlertScheduler(evaluator)
        await asyncio.sleep(0)
        evaluator.evaluate_alerts.assert_not_awaited()
