"""
signgate/middleware/auth.py

Identity resolution and admin-key middleware for SignGate.

Design Decisions:
- Every /v1 request is resolved to exactly one identity before it
  reaches a route; the identity is stored on `request.state.identity`.
- A bad credential gets the same generic 401 whether the key is
  unknown or revoked.
- If the credential store cannot be reached, the request gets 503.
  An unverifiable credential is never trusted and never downgraded
  to an anonymous IP identity.
- Admin routes use a separate shared secret in X-Admin-Key, compared
  with hmac.compare_digest() to prevent timing attacks.
- Routes listed in OPEN_PATHS bypass authentication (health/metrics).
- Account-only routes declare `Depends(require_tier(Tier.UNLIMITED))`.
  An anonymous IP caller reaching one gets 403.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from signgate.middleware.rate_limiter import get_identity
from signgate.services.identity import (
    Identity,
    IdentityResolver,
    RequestMetadata,
    extract_client_ip,
    has_permission,
)
from signgate.services.quota_windows import Tier
from signgate.utils.exceptions import (
    INVALID_CREDENTIAL_MESSAGE,
    AuthError,
    PermissionDeniedError,
    StoreUnavailableError,
)
from signgate.utils.logger import get_logger

logger = get_logger(__name__)

# Paths that do not require authentication
OPEN_PATHS: frozenset[str] = frozenset({
    "/health",
    "/ready",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
})

ADMIN_PREFIX = "/v1/admin"


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "detail": detail,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


class IdentityMiddleware(BaseHTTPMiddleware):
    """
    Resolves the caller identity on /v1 routes and guards /v1/admin.

    The resolver is read from `app.state.identity_resolver` per request,
    so tests can swap it without rebuilding the middleware stack.
    """

    def __init__(self, app: object, admin_api_key: str = "") -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._admin_key = admin_api_key
        if not self._admin_key:
            logger.warning(
                "ADMIN_API_KEY is not set! Admin endpoints will be inaccessible. "
                "Set ADMIN_API_KEY in your .env file."
            )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in OPEN_PATHS or not path.startswith("/v1/"):
            return await call_next(request)

        if path.startswith(ADMIN_PREFIX):
            if not self._admin_authorised(request):
                logger.warning(
                    "Unauthorised admin request",
                    path=path,
                    ip=extract_client_ip(RequestMetadata.from_request(request)) or "unknown",
                )
                return _error(401, "AUTHENTICATION_FAILED", "Missing or invalid X-Admin-Key header.")
            return await call_next(request)

        resolver: IdentityResolver = request.app.state.identity_resolver
        try:
            identity = await resolver.resolve(RequestMetadata.from_request(request))
        except AuthError as exc:
            return _error(401, exc.error_code, INVALID_CREDENTIAL_MESSAGE)
        except StoreUnavailableError:
            logger.error("Credential store unavailable; rejecting request", path=path)
            return _error(503, "STORE_UNAVAILABLE", "Authentication is temporarily unavailable.")

        request.state.identity = identity
        return await call_next(request)

    def _admin_authorised(self, request: Request) -> bool:
        provided = request.headers.get("X-Admin-Key", "")
        # Timing-safe comparison
        return bool(self._admin_key) and hmac.compare_digest(
            provided.encode(), self._admin_key.encode()
        )


def require_tier(tier: Tier) -> Callable[[Request], Identity]:
    """
    FastAPI dependency factory: the caller's identity, if its tier reaches `tier`.

    Raises:
        PermissionDeniedError: Anonymous callers on account-only routes.
    """

    def _dependency(request: Request) -> Identity:
        identity = get_identity(request)
        if not has_permission(identity, tier):
            logger.warning("Permission denied", path=request.url.path, scope=identity.scope, required=tier.value)
            raise PermissionDeniedError(f"This endpoint requires a {tier.value}-tier credential.")
        return identity

    return _dependency
