"""
signgate/main.py

FastAPI application entry point for SignGate.

Startup sequence:
  1. Load environment variables from .env into GatewaySettings
  2. Configure structured logging
  3. Connect to Redis (one shared pool) and the upstream signer
  4. Wire up services (resolver, limiter, accountant, alerting)
  5. Seed default alert rules and start the alert scheduler
  6. Register middleware (logging, identity, CORS)
  7. Mount routers
  8. Expose Prometheus metrics endpoint

Shutdown sequence:
  1. Stop the alert scheduler
  2. Drain pending background accounting
  3. Close the signer client and the Redis connection

Design Decisions:
- asynccontextmanager lifespan is used instead of deprecated
  @app.on_event handlers.
- All service instances are attached to app.state so routes can
  access them via FastAPI's Depends pattern. No global singletons
  in service layers, which keeps them easy to test.
- `create_app(services=...)` accepts pre-built services; the lifespan
  then only starts and stops them. Tests use this with in-memory
  stores.
- The /metrics endpoint is exposed by prometheus-fastapi-instrumentator
  and does NOT require authentication (OPEN_PATHS in auth.py).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import datetime
from typing import AsyncIterator, Callable

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from signgate.middleware.auth import IdentityMiddleware
from signgate.middleware.logging_middleware import RequestLoggingMiddleware
from signgate.middleware.rate_limiter import rate_limit_headers
from signgate.routes.account import router as account_router
from signgate.routes.alerts import router as alerts_router
from signgate.routes.health import router as health_router
from signgate.routes.signature import router as signature_router
from signgate.schemas.gateway_schema import (
    ErrorResponse,
    RateLimitErrorResponse,
    RateLimitInfo,
    UpgradeHint,
)
from signgate.services.alert_evaluator import (
    AlertEvaluator,
    AlertScheduler,
    LoggingNotificationSink,
    NotificationSink,
)
from signgate.services.alert_repository import AlertRepository, RedisAlertRepository
from signgate.services.background import BackgroundDispatcher
from signgate.services.credentials import CredentialStore, RedisCredentialValidator
from signgate.services.identity import IdentityResolver
from signgate.services.quota_accountant import QuotaAccountant
from signgate.services.quota_store import QuotaStore, RedisQuotaStore, create_redis_client
from signgate.services.quota_windows import Tier, utcnow
from signgate.services.rate_limiter import RateLimiter
from signgate.services.signer import HttpSigner, Signer
from signgate.utils.config import GatewaySettings
from signgate.utils.exceptions import RateLimitExceededError, SignGateError, StoreUnavailableError
from signgate.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


# ── Service container ──────────────────────────────────────────

@dataclass
class GatewayServices:
    """Everything a request handler can reach through app.state."""

    quota_store: QuotaStore
    alert_repository: AlertRepository
    identity_resolver: IdentityResolver
    rate_limiter: RateLimiter
    quota_accountant: QuotaAccountant
    alert_evaluator: AlertEvaluator
    alert_scheduler: AlertScheduler
    credential_store: CredentialStore
    signer: Signer
    dispatcher: BackgroundDispatcher
    clock: Callable[[], datetime] = utcnow

    def attach(self, app: FastAPI) -> None:
        for item in fields(self):
            setattr(app.state, item.name, getattr(self, item.name))
        app.state.services = self


def build_services(
    settings: GatewaySettings,
    store: QuotaStore,
    validator: CredentialStore,
    alert_repository: AlertRepository,
    signer: Signer,
    sink: NotificationSink | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> GatewayServices:
    """Wire the gateway core around the given backends."""
    dispatcher = BackgroundDispatcher()
    tier_limits = settings.tier_limits()
    evaluator = AlertEvaluator(
        store=store,
        repository=alert_repository,
        sink=sink or LoggingNotificationSink(),
        dispatcher=dispatcher,
        clock=clock,
    )
    return GatewayServices(
        quota_store=store,
        alert_repository=alert_repository,
        identity_resolver=IdentityResolver(validator, dispatcher, clock=clock),
        rate_limiter=RateLimiter(store, tier_limits=tier_limits, clock=clock),
        quota_accountant=QuotaAccountant(store, dispatcher, tier_limits=tier_limits),
        alert_evaluator=evaluator,
        alert_scheduler=AlertScheduler(evaluator, interval_seconds=settings.alert_interval_seconds),
        credential_store=validator,
        signer=signer,
        dispatcher=dispatcher,
        clock=clock,
    )


# ── Application lifespan ───────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Manage application startup and graceful shutdown.

    Startup:
        - Connect to Redis and build services (unless injected)
        - Seed default alert rules
        - Start the alert scheduler

    Shutdown:
        - Stop the scheduler, drain background work
        - Close the signer client and Redis connection
    """
    settings: GatewaySettings = app.state.settings
    logger.info("SignGate starting up...")

    redis_client = None
    http_client = None
    services: GatewayServices | None = getattr(app.state, "services", None)

    if services is None:
        # ── Redis / signer ─────────────────────────────────────
        redis_client = await create_redis_client(settings.redis_url, settings.store_timeout_seconds)
        http_client = httpx.AsyncClient(timeout=settings.signer_timeout_seconds)

        # ── Services ───────────────────────────────────────────
        services = build_services(
            settings,
            store=RedisQuotaStore(redis_client, timeout_seconds=settings.store_timeout_seconds),
            validator=RedisCredentialValidator(redis_client, timeout_seconds=settings.store_timeout_seconds),
            alert_repository=RedisAlertRepository(redis_client, timeout_seconds=settings.store_timeout_seconds),
            signer=HttpSigner(http=http_client, url=settings.signer_url, timeout_seconds=settings.signer_timeout_seconds),
        )
        services.attach(app)

    try:
        await services.alert_repository.seed_rules()
    except StoreUnavailableError:
        logger.warning("Could not seed alert rules; store unavailable")

    if settings.alerts_enabled:
        services.alert_scheduler.start()

    logger.info("SignGate is ready to serve requests")

    yield  # Application runs here

    # ── Graceful shutdown ──────────────────────────────────────
    logger.info("SignGate shutting down...")
    await services.alert_scheduler.stop()
    await services.dispatcher.drain()
    if http_client is not None:
        await http_client.aclose()
    if redis_client is not None:
        await redis_client.aclose()
    logger.info("Shutdown complete")


# ── FastAPI app factory ────────────────────────────────────────

def create_app(
    settings: GatewaySettings | None = None,
    services: GatewayServices | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory pattern makes the app importable for testing
    without triggering startup side effects.
    """
    settings = settings or GatewaySettings.from_env()
    setup_logging(
        level=settings.log_level,
        json_output=settings.app_env != "development",
        log_file=settings.log_file,
    )

    app = FastAPI(
        title="SignGate API",
        description=(
            "**SignGate**: multi-tenant gateway for TikTok live signatures.\n\n"
            "Anonymous callers are limited per IP. Send an API key as "
            "`Authorization: Bearer <key>` or `X-API-Key` for unlimited-class limits."
        ),
        version="1.0.0",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        services.attach(app)

    # ── Middleware (applied in reverse order: last added runs first) ──

    # 1. Identity resolution / admin key
    app.add_middleware(IdentityMiddleware, admin_api_key=settings.admin_api_key)

    # 2. Request/response logging (wraps identity so 401s are logged too)
    app.add_middleware(RequestLoggingMiddleware)

    # 3. CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Session-Token", "X-Admin-Key"],
        expose_headers=[
            "X-RateLimit-Tier",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-RateLimit-Degraded",
            "Retry-After",
        ],
    )

    # ── Custom exception handlers ──────────────────────────────
    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        decision = exc.decision
        window = exc.window
        body = RateLimitErrorResponse(
            detail=exc.message,
            window=window.value if window else "unknown",
            reset_at=decision.windows[window].reset_at if window else decision.evaluated_at,
            retry_after_seconds=decision.retry_after_seconds or 1,
            rate_limit=RateLimitInfo.from_decision(decision),
            upgrade=UpgradeHint() if decision.tier is Tier.FREE else None,
        )
        return JSONResponse(
            status_code=exc.http_status,
            content=body.model_dump(mode="json", exclude_none=True),
            headers=rate_limit_headers(decision),
        )

    @app.exception_handler(SignGateError)
    async def signgate_error_handler(request: Request, exc: SignGateError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(f"{exc.error_code}: {exc.message}", path=request.url.path)
        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(error=exc.error_code, detail=exc.message).model_dump(mode="json"),
        )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(
                error="NOT_FOUND",
                detail=f"The path '{request.url.path}' was not found.",
            ).model_dump(mode="json"),
        )

    @app.exception_handler(500)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Internal server error: {exc}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_SERVER_ERROR",
                detail="An unexpected error occurred. Please try again.",
            ).model_dump(mode="json"),
        )

    # ── Routers ────────────────────────────────────────────────
    app.include_router(health_router)
    app.include_router(signature_router)
    app.include_router(account_router)
    app.include_router(alerts_router)

    # ── Prometheus metrics ─────────────────────────────────────
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        excluded_handlers=["/health", "/ready"],
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    logger.info("FastAPI application created", env=settings.app_env)
    return app


# ── Application instance ───────────────────────────────────────
# Imported by uvicorn: uvicorn signgate.main:app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings: GatewaySettings = app.state.settings
    uvicorn.run(
        "signgate.main:app",
        host="0.0.0.0",
        port=_settings.port,
        reload=_settings.app_env == "development",
        log_level=_settings.log_level.lower(),
    )
