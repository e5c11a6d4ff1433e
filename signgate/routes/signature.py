"""
signgate/routes/signature.py

Signature and quota routes for SignGate.

Endpoints:
  POST /v1/signature  → Sign a TikTok live room URL (spends quota)
  GET  /v1/quota      → Current quota state for the caller (free)

Design Decisions:
- The limiter runs as a dependency before the handler, so a denied
  caller never reaches the signer.
- Accounting is fire-and-forget after the signer returns, on success
  and on failure alike: an attempted signature costs one unit.
- All error responses use the ErrorResponse schema for consistency;
  429 uses RateLimitErrorResponse (see main.py handlers).
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from signgate.middleware.rate_limiter import (
    enforce_rate_limit,
    get_accountant,
    get_identity,
    get_rate_limiter,
    now,
    rate_limit_headers,
)
from signgate.schemas.gateway_schema import (
    ErrorResponse,
    QuotaResponse,
    QuotaWarningSchema,
    RateLimitErrorResponse,
    RateLimitInfo,
    SignatureRequest,
    SignatureResponse,
)
from signgate.services.identity import Identity
from signgate.services.quota_store import OutcomeRecord
from signgate.services.rate_limiter import Decision
from signgate.services.signer import Signer
from signgate.utils.exceptions import SignerError
from signgate.utils.logger import get_logger
from signgate.utils.metrics import signature_requests_total

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["Signature"])


def _get_signer(request: Request) -> Signer:
    """FastAPI dependency: retrieve the upstream signer from app state."""
    return request.app.state.signer  # type: ignore[no-any-return]


# ── Signature ──────────────────────────────────────────────────

@router.post(
    "/signature",
    response_model=SignatureResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credential"},
        429: {"model": RateLimitErrorResponse, "description": "Rate limit exceeded"},
        502: {"model": ErrorResponse, "description": "Signer failed"},
        503: {"model": ErrorResponse, "description": "Authentication unavailable"},
    },
    summary="Sign a TikTok live room URL",
    description=(
        "Returns the upstream signature payload for `url`. Anonymous callers are "
        "limited per IP; API key and session callers get unlimited-class limits."
    ),
)
async def create_signature(
    request: Request,
    body: SignatureRequest,
    decision: Decision = Depends(enforce_rate_limit),
    identity: Identity = Depends(get_identity),
    signer: Signer = Depends(_get_signer),
) -> JSONResponse:
    """Sign a room URL and account for the attempt."""
    start = time.perf_counter()
    accountant = get_accountant(request)

    try:
        result = await signer.sign(body.url)
    except SignerError as exc:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        signature_requests_total.labels(tier=identity.tier.value, outcome="signer_error").inc()
        accountant.record(
            identity,
            OutcomeRecord(
                scope=identity.scope,
                timestamp=now(request),
                success=False,
                latency_ms=elapsed_ms,
                error_kind=exc.error_code,
                endpoint=request.url.path,
                tier=identity.tier.value,
            ),
        )
        raise

    elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
    signature_requests_total.labels(tier=identity.tier.value, outcome="success").inc()
    accountant.record(
        identity,
        OutcomeRecord(
            scope=identity.scope,
            timestamp=now(request),
            success=True,
            latency_ms=elapsed_ms,
            endpoint=request.url.path,
            tier=identity.tier.value,
        ),
    )

    response = SignatureResponse(
        data=result.data,
        room_url=body.url,
        tier=identity.tier.value,
        response_time_ms=elapsed_ms,
        rate_limit=RateLimitInfo.from_decision(decision),
    )
    return JSONResponse(
        content=response.model_dump(mode="json"),
        headers=rate_limit_headers(decision),
    )


# ── Quota ──────────────────────────────────────────────────────

@router.get(
    "/quota",
    response_model=QuotaResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid credential"}},
    summary="Current quota for the caller",
    description="Reports remaining quota per window without spending any.",
)
async def get_quota(
    request: Request,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    limiter = get_rate_limiter(request)
    decision = await limiter.check_limit(identity)
    response = QuotaResponse(
        allowed=decision.allowed,
        denied_reason=decision.denied_reason.value if decision.denied_reason else None,
        rate_limit=RateLimitInfo.from_decision(decision),
        warnings=[QuotaWarningSchema.from_warning(w) for w in limiter.quota_warnings(decision)],
    )
    return JSONResponse(
        content=response.model_dump(mode="json"),
        headers=rate_limit_headers(decision),
    )
