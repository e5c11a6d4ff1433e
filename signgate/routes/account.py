"""
signgate/routes/account.py

API key management for account owners.

Endpoints:
  GET    /v1/account/api-keys                   → Active keys of the caller's account
  POST   /v1/account/api-keys                   → Issue a key (shown once)
  DELETE /v1/account/api-keys/{credential_id}   → Revoke one of the caller's keys

Callers authenticate with a session token or an existing API key.
Anonymous callers get 403. These routes spend no quota.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status

from signgate.middleware.auth import require_tier
from signgate.middleware.rate_limiter import now
from signgate.schemas.gateway_schema import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyListResponse,
    ApiKeySchema,
    ErrorResponse,
)
from signgate.services.credentials import CredentialStore
from signgate.services.identity import AccountIdentity
from signgate.services.quota_windows import Tier

router = APIRouter(prefix="/v1/account", tags=["Account"])

require_account = require_tier(Tier.UNLIMITED)


def _get_credentials(request: Request) -> CredentialStore:
    return request.app.state.credential_store  # type: ignore[no-any-return]


@router.get(
    "/api-keys",
    response_model=ApiKeyListResponse,
    responses={403: {"model": ErrorResponse, "description": "No account credential"}},
    summary="List your API keys",
)
async def list_api_keys(
    identity: AccountIdentity = Depends(require_account),
    credentials: CredentialStore = Depends(_get_credentials),
) -> ApiKeyListResponse:
    keys = [ApiKeySchema.from_summary(summary) for summary in await credentials.list_api_keys(identity.account_id)]
    return ApiKeyListResponse(api_keys=keys, count=len(keys))


@router.post(
    "/api-keys",
    response_model=ApiKeyCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse, "description": "No account credential"}},
    summary="Issue a new API key",
)
async def create_api_key(
    request: Request,
    body: ApiKeyCreateRequest,
    identity: AccountIdentity = Depends(require_account),
    credentials: CredentialStore = Depends(_get_credentials),
) -> ApiKeyCreatedResponse:
    raw_key, summary = await credentials.issue_api_key(identity.account_id, name=body.name, at=now(request))
    return ApiKeyCreatedResponse(api_key=raw_key, **ApiKeySchema.from_summary(summary).model_dump())


@router.delete(
    "/api-keys/{credential_id}",
    response_model=ApiKeySchema,
    responses={
        403: {"model": ErrorResponse, "description": "No account credential"},
        404: {"model": ErrorResponse, "description": "Not one of your active keys"},
    },
    summary="Revoke one of your API keys",
)
async def revoke_api_key(
    credential_id: str,
    identity: AccountIdentity = Depends(require_account),
    credentials: CredentialStore = Depends(_get_credentials),
) -> ApiKeySchema:
    summary = await credentials.revoke_api_key(identity.account_id, credential_id)
    return ApiKeySchema.from_summary(summary)
