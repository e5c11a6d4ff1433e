"""
signgate/middleware/logging_middleware.py

One access-log line per request.

Fields: method, path, status, latency_ms, client ip, the identity
scope when one was resolved, and the rate-limit window that denied
the request when it was throttled.

Design Decisions:
- This middleware is the outermost of ours, so 401s written by the
  identity middleware and 429s from the limiter are logged too.
- The request ID comes from an inbound X-Request-ID when the proxy
  set one, otherwise a fresh uuid4. It is echoed back on the response.
- 5xx lines are logged at ERROR and 429s at WARNING. Everything else
  is INFO. Bodies and credential headers are never logged.
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from signgate.services.identity import RequestMetadata, extract_client_ip
from signgate.utils.logger import get_logger, request_id_ctx

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access logging and request-ID propagation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except Exception:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            raise
        finally:
            self._log(request, status, round((time.perf_counter() - started) * 1000, 2))
            request_id_ctx.reset(token)

    @staticmethod
    def _log(request: Request, status: int, latency_ms: float) -> None:
        fields = {
            "method": request.method,
            "path": request.url.path,
            "status": status,
            "latency_ms": latency_ms,
            "ip": extract_client_ip(RequestMetadata.from_request(request)) or "unknown",
        }
        identity = getattr(request.state, "identity", None)
        if identity is not None:
            fields["scope"] = identity.scope
        decision = getattr(request.state, "decision", None)
        if decision is not None and decision.denied_reason is not None:
            fields["denied_window"] = decision.denied_reason.value

        message = f"{request.method} {request.url.path} -> {status}"
        if status >= 500:
            logger.error(message, **fields)
        elif status == 429:
            logger.warning(message, **fields)
        else:
            logger.info(message, **fields)
