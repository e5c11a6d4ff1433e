"""
signgate/routes/alerts.py

Admin routes for alert rules and emitted alerts.

Endpoints:
  GET   /v1/admin/alerts                      → Active (unacknowledged) alerts
  POST  /v1/admin/alerts/{alert_id}/acknowledge
  POST  /v1/admin/alerts/evaluate             → Run one evaluation cycle now
  GET   /v1/admin/alert-rules
  PATCH /v1/admin/alert-rules/{rule_id}

All of these sit behind the X-Admin-Key check in IdentityMiddleware.
Not-found and already-acknowledged errors propagate to the
SignGateError handler in main.py (404 / 409).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from signgate.schemas.gateway_schema import (
    AcknowledgeRequest,
    AlertListResponse,
    AlertRuleSchema,
    AlertRuleUpdate,
    AlertSchema,
    ErrorResponse,
    EvaluationResponse,
)
from signgate.services.alert_evaluator import AlertEvaluator, AlertScheduler
from signgate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["Alerting"])


def _get_evaluator(request: Request) -> AlertEvaluator:
    return request.app.state.alert_evaluator  # type: ignore[no-any-return]


def _get_scheduler(request: Request) -> AlertScheduler:
    return request.app.state.alert_scheduler  # type: ignore[no-any-return]


@router.get("/alerts", response_model=AlertListResponse, summary="List active alerts")
async def list_alerts(evaluator: AlertEvaluator = Depends(_get_evaluator)) -> AlertListResponse:
    alerts = [AlertSchema.from_alert(alert) for alert in await evaluator.active_alerts()]
    return AlertListResponse(alerts=alerts, count=len(alerts))


@router.post(
    "/alerts/evaluate",
    response_model=EvaluationResponse,
    summary="Run one alert evaluation cycle",
)
async def evaluate_now(scheduler: AlertScheduler = Depends(_get_scheduler)) -> EvaluationResponse:
    triggered = [AlertSchema.from_alert(alert) for alert in await scheduler.run_cycle()]
    return EvaluationResponse(triggered=triggered, count=len(triggered))


@router.post(
    "/alerts/{alert_id}/acknowledge",
    response_model=AlertSchema,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown alert"},
        409: {"model": ErrorResponse, "description": "Already acknowledged"},
    },
    summary="Acknowledge an alert",
)
async def acknowledge_alert(
    alert_id: str,
    body: AcknowledgeRequest,
    evaluator: AlertEvaluator = Depends(_get_evaluator),
) -> AlertSchema:
    alert = await evaluator.acknowledge(alert_id, body.operator)
    return AlertSchema.from_alert(alert)


@router.get("/alert-rules", response_model=list[AlertRuleSchema], summary="List alert rules")
async def list_rules(evaluator: AlertEvaluator = Depends(_get_evaluator)) -> list[AlertRuleSchema]:
    return [AlertRuleSchema.from_rule(rule) for rule in await evaluator.list_rules()]


@router.patch(
    "/alert-rules/{rule_id}",
    response_model=AlertRuleSchema,
    responses={404: {"model": ErrorResponse, "description": "Unknown rule"}},
    summary="Update an alert rule",
)
async def update_rule(
    rule_id: str,
    body: AlertRuleUpdate,
    evaluator: AlertEvaluator = Depends(_get_evaluator),
) -> AlertRuleSchema:
    changes = body.changes()
    if not changes:
        raise HTTPException(status_code=400, detail="No updatable fields supplied.")
    rule = await evaluator.update_rule(rule_id, **changes)
    return AlertRuleSchema.from_rule(rule)
