"""
signgate/utils/exceptions.py

Custom exception hierarchy for SignGate.

Design Decisions:
- All custom exceptions inherit from SignGateError so callers
  can catch the broad class or specific subclasses.
- Each exception carries a machine-readable `error_code` that the
  HTTP layer maps to an appropriate status code, and that the quota
  accountant stores as the outcome's error kind.
- Authentication failures share one generic message so a caller
  cannot distinguish "unknown key" from "inactive key".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from signgate.services.quota_windows import Window
    from signgate.services.rate_limiter import Decision


class SignGateError(Exception):
    """Root exception for all SignGate errors."""

    error_code: str = "SIGNGATE_ERROR"
    http_status: int = 500

    def __init__(self, message: str, detail: str = "", **kwargs: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.extra = kwargs


# ── Auth Errors ───────────────────────────────────────────────

INVALID_CREDENTIAL_MESSAGE = "Invalid credential."


class AuthError(SignGateError):
    """Base class for identity resolution failures."""

    error_code = "AUTHENTICATION_FAILED"
    http_status = 401


class InvalidCredentialError(AuthError):
    """Raised when a credential is present but unknown or inactive."""

    error_code = "INVALID_CREDENTIAL"

    def __init__(self, message: str = INVALID_CREDENTIAL_MESSAGE, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class UnauthenticatedError(AuthError):
    """Raised when there is no credential and no client address either."""

    error_code = "UNAUTHENTICATED"


class CredentialNotFoundError(SignGateError):
    """Raised by a credential validator on a hash miss."""

    error_code = "CREDENTIAL_NOT_FOUND"
    http_status = 401


class PermissionDeniedError(SignGateError):
    """Raised when a resolved identity's tier does not reach the endpoint."""

    error_code = "PERMISSION_DENIED"
    http_status = 403


class ApiKeyNotFoundError(SignGateError):
    """Raised when an API key is unknown, revoked, or owned by someone else."""

    error_code = "API_KEY_NOT_FOUND"
    http_status = 404


# ── Rate-limit Errors ─────────────────────────────────────────

class RateLimitExceededError(SignGateError):
    """Raised when a decision denies the request."""

    error_code = "RATE_LIMIT_EXCEEDED"
    http_status = 429

    def __init__(self, decision: "Decision") -> None:
        window = decision.denied_reason
        super().__init__(
            f"{window.value.capitalize()} rate limit exceeded." if window else "Rate limit exceeded.",
        )
        self.decision = decision
        self.window: "Window | None" = window


# ── Store Errors ──────────────────────────────────────────────

class StoreUnavailableError(SignGateError):
    """Raised on Redis connectivity failures or store-call timeouts."""

    error_code = "STORE_UNAVAILABLE"
    http_status = 503

    def __init__(self, message: str, operation: str = "unknown", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.operation = operation


# ── Upstream Signer Errors ────────────────────────────────────

class SignerError(SignGateError):
    """Raised when the upstream signer fails or times out."""

    error_code = "SIGNER_ERROR"
    http_status = 502


# ── Alerting Errors ───────────────────────────────────────────

class AlertNotFoundError(SignGateError):
    """Raised when an alert or alert rule ID is unknown."""

    error_code = "ALERT_NOT_FOUND"
    http_status = 404


class AlertAlreadyAcknowledgedError(SignGateError):
    """Raised on a second acknowledgement of the same alert."""

    error_code = "ALERT_ALREADY_ACKNOWLEDGED"
    http_status = 409


# ── Configuration Errors ──────────────────────────────────────

class ConfigurationError(SignGateError):
    """Raised when required configuration or environment variables are invalid."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500
