"""
signgate/schemas/gateway_schema.py

Pydantic v2 request/response schemas for the SignGate API.

Design Decisions:
- URL validation lives on the request schema so the route never sees
  a non-TikTok URL and never spends quota on one.
- `url`, `roomUrl` and `room_url` are all accepted for the room URL;
  older clients send one of the latter two.
- Limits serialize as an integer or the string "unlimited". Clients
  never see the internal sentinel.
- `ErrorResponse` mirrors RFC 7807 Problem Details for alignment
  with standard API error conventions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

from signgate.services.alert_repository import Alert, AlertRule
from signgate.services.credentials import ApiKeySummary
from signgate.services.quota_windows import Limit, is_unbounded
from signgate.services.rate_limiter import Decision, QuotaWarning

LimitValue = Union[int, Literal["unlimited"]]


def limit_value(limit: Limit) -> LimitValue:
    return "unlimited" if is_unbounded(limit) else int(limit)  # type: ignore[arg-type]


def is_tiktok_live_url(url: str) -> bool:
    """http(s) URL on tiktok.com (or a subdomain) with a non-root path."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    host = (parsed.hostname or "").lower()
    if host != "tiktok.com" and not host.endswith(".tiktok.com"):
        return False
    path = parsed.path.lower()
    return "/live" in path or "/@" in path or "live" in parsed.query or len(path) > 1


# ── Request schemas ────────────────────────────────────────────

class SignatureRequest(BaseModel):
    """
    Payload for POST /v1/signature.

    Fields:
        url: TikTok live room URL to sign.
    """

    url: Annotated[
        str,
        Field(
            ...,
            min_length=1,
            max_length=2048,
            description="TikTok live room URL.",
            examples=["https://www.tiktok.com/@username/live"],
        ),
    ]

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        """Map `roomUrl` / `room_url` onto `url`."""
        if isinstance(data, dict) and "url" not in data:
            for legacy in ("roomUrl", "room_url"):
                if legacy in data:
                    return {**data, "url": data[legacy]}
        return data

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return v
        v = v.strip()
        if not is_tiktok_live_url(v):
            raise ValueError("url must be a TikTok live URL.")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [{"url": "https://www.tiktok.com/@username/live"}]
        }
    }


class AlertRuleUpdate(BaseModel):
    """PATCH /v1/admin/alert-rules/{rule_id}. Omitted fields are left alone."""

    enabled: bool | None = None
    threshold: Annotated[float | None, Field(default=None, ge=0)] = None
    cooldown_minutes: Annotated[int | None, Field(default=None, ge=0)] = None
    severity: Literal["low", "medium", "high", "critical"] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AcknowledgeRequest(BaseModel):
    operator: Annotated[
        str,
        Field(..., min_length=1, max_length=200, description="Who is acknowledging the alert."),
    ]


# ── Rate limit schemas ─────────────────────────────────────────

class WindowStatusSchema(BaseModel):
    limit: LimitValue
    used: int | None = None
    remaining: LimitValue | None = None
    reset_at: datetime


class RateLimitInfo(BaseModel):
    """Per-window quota state attached to responses."""

    tier: Literal["free", "unlimited"]
    degraded: bool = False
    daily: WindowStatusSchema
    hourly: WindowStatusSchema
    burst: WindowStatusSchema

    @classmethod
    def from_decision(cls, decision: Decision) -> "RateLimitInfo":
        windows = {
            window.value: WindowStatusSchema(
                limit=limit_value(status.limit),
                used=status.used,
                remaining=limit_value(status.remaining) if status.remaining is not None else None,
                reset_at=status.reset_at,
            )
            for window, status in decision.windows.items()
        }
        return cls(tier=decision.tier.value, degraded=decision.degraded, **windows)


class QuotaWarningSchema(BaseModel):
    window: str
    percentage: float
    message: str

    @classmethod
    def from_warning(cls, warning: QuotaWarning) -> "QuotaWarningSchema":
        return cls(window=warning.window.value, percentage=warning.percentage, message=warning.message)


class UpgradeHint(BaseModel):
    message: str = "API key users get unlimited daily requests and 100 requests/minute vs 5 for free tier."
    action: str = "Create an API key to lift the free-tier limits."


# ── Response schemas ───────────────────────────────────────────

class SignatureResponse(BaseModel):
    """
    Successful response from POST /v1/signature.

    Fields:
        success: Always true on 200.
        data: Signer payload, passed through unchanged.
        room_url: The URL that was signed.
        response_time_ms: End-to-end request processing time.
        rate_limit: Caller's quota state at decision time.
    """

    success: bool = True
    data: dict[str, Any]
    room_url: str
    tier: Literal["free", "unlimited"]
    response_time_ms: Annotated[float, Field(ge=0.0)]
    rate_limit: RateLimitInfo
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QuotaResponse(BaseModel):
    """Response for GET /v1/quota."""

    allowed: bool
    denied_reason: str | None = None
    rate_limit: RateLimitInfo
    warnings: list[QuotaWarningSchema] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RateLimitErrorResponse(BaseModel):
    """429 body. `upgrade` is only present for the free tier."""

    error: str = "RATE_LIMIT_EXCEEDED"
    detail: str
    window: str
    reset_at: datetime
    retry_after_seconds: int
    rate_limit: RateLimitInfo
    upgrade: UpgradeHint | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Alert schemas ──────────────────────────────────────────────

class AlertConditionSchema(BaseModel):
    type: str
    threshold: float
    time_window_minutes: int
    error_kinds: list[str] | None = None
    endpoints: list[str] | None = None


class AlertRuleSchema(BaseModel):
    rule_id: str
    name: str
    condition: AlertConditionSchema
    severity: str
    enabled: bool
    cooldown_minutes: int
    last_triggered: datetime | None = None

    @classmethod
    def from_rule(cls, rule: AlertRule) -> "AlertRuleSchema":
        return cls.model_validate(rule.to_dict())


class AlertSchema(BaseModel):
    alert_id: str
    rule_id: str
    rule_name: str
    message: str
    severity: str
    triggered_at: datetime
    acknowledged: bool
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertSchema":
        return cls.model_validate(alert.to_dict())


class AlertListResponse(BaseModel):
    alerts: list[AlertSchema]
    count: int


class EvaluationResponse(BaseModel):
    triggered: list[AlertSchema]
    count: int


# ── Account schemas ────────────────────────────────────────────

class ApiKeyCreateRequest(BaseModel):
    name: Annotated[
        str,
        Field(min_length=1, max_length=64, description="Label shown in key listings."),
    ] = "Default"


class ApiKeySchema(BaseModel):
    credential_id: str
    name: str
    created_at: datetime
    last_used: datetime | None = None
    active: bool

    @classmethod
    def from_summary(cls, summary: ApiKeySummary) -> "ApiKeySchema":
        return cls(
            credential_id=summary.credential_id,
            name=summary.name,
            created_at=summary.created_at,
            last_used=summary.last_used,
            active=summary.active,
        )


class ApiKeyCreatedResponse(ApiKeySchema):
    """The raw key appears here once and is never retrievable again."""

    api_key: str


class ApiKeyListResponse(BaseModel):
    api_keys: list[ApiKeySchema]
    count: int


# ── Health schemas ─────────────────────────────────────────────

class HealthResponse(BaseModel):
    """Response for GET /health (liveness check)."""

    status: str = "ok"
    service: str = "SignGate"
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ReadinessResponse(BaseModel):
    """Response for GET /ready (readiness check)."""

    status: str          # "ready" | "degraded"
    redis_connected: bool
    alert_scheduler_running: bool
    details: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


# ── Error schema ───────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """
    RFC 7807-aligned error response for all 4xx/5xx responses.

    Fields:
        error: Machine-readable error code (e.g. 'INVALID_CREDENTIAL').
        detail: Human-readable explanation safe to surface to the client.
        timestamp: UTC timestamp of the error.
    """

    error: Annotated[
        str,
        Field(description="Machine-readable error code."),
    ]

    detail: Annotated[
        str,
        Field(description="Human-readable error explanation."),
    ]

    timestamp: Annotated[
        datetime,
        Field(
            default_factory=lambda: datetime.now(timezone.utc),
        ),
    ]

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "error": "INVALID_CREDENTIAL",
                    "detail": "Invalid credential.",
                    "timestamp": "2025-01-01T12:00:00Z",
                }
            ]
        }
    }
