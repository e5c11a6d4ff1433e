"""
signgate/utils/config.py

Typed gateway settings, read once from the environment.

Design Decisions:
- `.env` is loaded by python-dotenv before anything reads os.environ,
  so local runs and containers configure the gateway the same way.
- Limits accept "unlimited" (or "unbounded") and are parsed into the
  UNBOUNDED sentinel here. Nothing downstream ever sees -1 or 0 as
  "no limit".
- Any malformed value fails startup with ConfigurationError instead
  of running with a silently wrong quota.
"""

from __future__ import annotations

import os
from typing import Any, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from signgate.services.quota_windows import (
    DEFAULT_TIER_LIMITS,
    Limit,
    Tier,
    TierLimits,
    parse_limit,
)
from signgate.utils.exceptions import ConfigurationError

_FREE = DEFAULT_TIER_LIMITS[Tier.FREE]
_UNLIMITED = DEFAULT_TIER_LIMITS[Tier.UNLIMITED]

# env var → settings field
_ENV_FIELDS: dict[str, str] = {
    "APP_ENV": "app_env",
    "LOG_LEVEL": "log_level",
    "LOG_FILE": "log_file",
    "REDIS_URL": "redis_url",
    "STORE_TIMEOUT_MS": "store_timeout_ms",
    "FREE_DAILY_LIMIT": "free_daily_limit",
    "FREE_HOURLY_LIMIT": "free_hourly_limit",
    "FREE_BURST_LIMIT": "free_burst_limit",
    "FREE_BURST_WINDOW_SECONDS": "free_burst_window_seconds",
    "UNLIMITED_DAILY_LIMIT": "unlimited_daily_limit",
    "UNLIMITED_HOURLY_LIMIT": "unlimited_hourly_limit",
    "UNLIMITED_BURST_LIMIT": "unlimited_burst_limit",
    "UNLIMITED_BURST_WINDOW_SECONDS": "unlimited_burst_window_seconds",
    "ALERT_INTERVAL_SECONDS": "alert_interval_seconds",
    "ALERTS_ENABLED": "alerts_enabled",
    "SIGNER_URL": "signer_url",
    "SIGNER_TIMEOUT_SECONDS": "signer_timeout_seconds",
    "ADMIN_API_KEY": "admin_api_key",
    "CORS_ORIGINS": "cors_origins",
    "PORT": "port",
}


class GatewaySettings(BaseModel):
    """All runtime configuration for one gateway process."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    app_env: str = "development"
    log_level: str = "INFO"
    log_file: str | None = None
    redis_url: str = "redis://localhost:6379"
    store_timeout_ms: int = Field(default=250, gt=0)

    free_daily_limit: Any = _FREE.daily_limit
    free_hourly_limit: Any = _FREE.hourly_limit
    free_burst_limit: Any = _FREE.burst_limit
    free_burst_window_seconds: int = Field(default=_FREE.burst_window_seconds, gt=0)
    unlimited_daily_limit: Any = _UNLIMITED.daily_limit
    unlimited_hourly_limit: Any = _UNLIMITED.hourly_limit
    unlimited_burst_limit: Any = _UNLIMITED.burst_limit
    unlimited_burst_window_seconds: int = Field(default=_UNLIMITED.burst_window_seconds, gt=0)

    alert_interval_seconds: int = Field(default=300, gt=0)
    alerts_enabled: bool = True

    signer_url: str = "http://localhost:8080/sign"
    signer_timeout_seconds: float = Field(default=10.0, gt=0)

    admin_api_key: str = ""
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )
    port: int = 8000

    @field_validator(
        "free_daily_limit",
        "free_hourly_limit",
        "free_burst_limit",
        "unlimited_daily_limit",
        "unlimited_hourly_limit",
        "unlimited_burst_limit",
        mode="before",
    )
    @classmethod
    def _parse_limit(cls, value: Any) -> Limit:
        return parse_limit(value)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def store_timeout_seconds(self) -> float:
        return self.store_timeout_ms / 1000

    def tier_limits(self) -> dict[Tier, TierLimits]:
        return {
            Tier.FREE: TierLimits(
                daily_limit=self.free_daily_limit,
                hourly_limit=self.free_hourly_limit,
                burst_limit=self.free_burst_limit,
                burst_window_seconds=self.free_burst_window_seconds,
            ),
            Tier.UNLIMITED: TierLimits(
                daily_limit=self.unlimited_daily_limit,
                hourly_limit=self.unlimited_hourly_limit,
                burst_limit=self.unlimited_burst_limit,
                burst_window_seconds=self.unlimited_burst_window_seconds,
            ),
        }

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewaySettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ (tests).

        Raises:
            ConfigurationError: A variable is present but invalid.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        values = {
            field_name: environ[env_key]
            for env_key, field_name in _ENV_FIELDS.items()
            if environ.get(env_key, "").strip() != ""
        }
        try:
            return cls(**values)
        except (ValidationError, ValueError) as exc:
            raise ConfigurationError("Invalid gateway configuration.", detail=str(exc)) from exc
