"""
signgate/routes/health.py

Health and readiness check endpoints.

GET /health  → Liveness check: is the process running?
GET /ready   → Readiness check: can the quota store be reached?

Design Decisions:
- Health (liveness) is a cheap check that returns 200 as long as
  the process is alive.
- Readiness pings the shared quota store. A dead store does not stop
  the gateway (limits fail open), but the pod reports 503 so operators
  and load balancers can see the degradation.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from signgate.schemas.gateway_schema import HealthResponse, ReadinessResponse
from signgate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness Check",
    description="Returns 200 if the SignGate process is running.",
)
async def health_check() -> HealthResponse:
    """Liveness check endpoint."""
    return HealthResponse(status="ok", service="SignGate")


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness Check",
    description="Returns 200 if the quota store answers a ping, 503 otherwise.",
)
async def readiness_check(request: Request) -> JSONResponse:
    """Readiness check endpoint."""
    checks: dict[str, str] = {}

    store = request.app.state.quota_store
    redis_ok = await store.ping()
    checks["redis"] = "connected" if redis_ok else "unreachable"
    if not redis_ok:
        logger.warning("Readiness: quota store unreachable")

    scheduler = getattr(request.app.state, "alert_scheduler", None)
    scheduler_running = bool(scheduler and scheduler.running)
    checks["alert_scheduler"] = "running" if scheduler_running else "stopped"

    return JSONResponse(
        status_code=200 if redis_ok else 503,
        content=ReadinessResponse(
            status="ready" if redis_ok else "degraded",
            redis_connected=redis_ok,
            alert_scheduler_running=scheduler_running,
            details=checks,
        ).model_dump(mode="json"),
    )
