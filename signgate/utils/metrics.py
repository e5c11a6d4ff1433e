"""
signgate/utils/metrics.py

Prometheus metrics definitions for SignGate.

Design Decisions:
- Metrics are defined at module level (singletons) so they can
  be imported anywhere without double-registration.
- Label cardinality is kept low: tiers, windows and operations only,
  never scopes, IPs or account IDs.
- prometheus-fastapi-instrumentator handles HTTP-level metrics;
  these are limiter, accounting and alerting metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ── Traffic ───────────────────────────────────────────────────

signature_requests_total = Counter(
    name="signgate_signature_requests_total",
    documentation="Signature requests handled, by tier and outcome",
    labelnames=["tier", "outcome"],
)

# ── Rate limiting ─────────────────────────────────────────────

rate_limit_decisions_total = Counter(
    name="signgate_rate_limit_decisions_total",
    documentation="Rate limiter decisions, by tier, result and denying window",
    labelnames=["tier", "result", "window"],
)

degraded_decisions_total = Counter(
    name="signgate_degraded_decisions_total",
    documentation="Decisions that failed open because the quota store was unavailable",
)

rate_limit_check_seconds = Histogram(
    name="signgate_rate_limit_check_seconds",
    documentation="Latency of a full multi-window limit check",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

# ── Store / accounting errors ─────────────────────────────────

store_errors_total = Counter(
    name="signgate_store_errors_total",
    documentation="Quota store operations that failed or timed out",
    labelnames=["operation"],
)

accounting_failures_total = Counter(
    name="signgate_accounting_failures_total",
    documentation="Accounting steps dropped after a store failure",
    labelnames=["step"],
)

background_task_failures_total = Counter(
    name="signgate_background_task_failures_total",
    documentation="Best-effort background tasks that raised",
    labelnames=["task"],
)

# ── Alerting ──────────────────────────────────────────────────

alerts_triggered_total = Counter(
    name="signgate_alerts_triggered_total",
    documentation="Alerts emitted by the alert evaluator",
    labelnames=["rule_id", "severity"],
)

alert_rule_errors_total = Counter(
    name="signgate_alert_rule_errors_total",
    documentation="Alert rule evaluations skipped because of a read error",
    labelnames=["rule_id"],
)

# ── Upstream signer ───────────────────────────────────────────

signer_latency_seconds = Histogram(
    name="signgate_signer_latency_seconds",
    documentation="Latency of upstream signature generation",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, float("inf")),
)


def record_decision(tier: str, allowed: bool, window: str | None, degraded: bool) -> None:
    """Record a limiter decision."""
    rate_limit_decisions_total.labels(
        tier=tier,
        result="allowed" if allowed else "denied",
        window=window or "none",
    ).inc()
    if degraded:
        degraded_decisions_total.inc()
