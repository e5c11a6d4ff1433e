"""
tests/unit/test_config.py

Unit tests for GatewaySettings.
"""

import pytest

from signgate.services.quota_windows import UNBOUNDED, Tier
from signgate.utils.config import GatewaySettings
from signgate.utils.exceptions import ConfigurationError


class TestFromEnv:
    def test_defaults_when_nothing_is_set(self):
        settings = GatewaySettings.from_env({})
        limits = settings.tier_limits()

        assert limits[Tier.FREE].daily_limit == 100
        assert limits[Tier.FREE].burst_limit == 5
        assert limits[Tier.UNLIMITED].daily_limit is UNBOUNDED
        assert settings.store_timeout_seconds == 0.25

    def test_unlimited_keyword_and_integers(self):
        settings = GatewaySettings.from_env({
            "FREE_DAILY_LIMIT": "500",
            "UNLIMITED_BURST_LIMIT": "unlimited",
            "ALERTS_ENABLED": "false",
        })
        limits = settings.tier_limits()

        assert limits[Tier.FREE].daily_limit == 500
        assert limits[Tier.UNLIMITED].burst_limit is UNBOUNDED
        assert limits[Tier.UNLIMITED].is_fully_unbounded
        assert settings.alerts_enabled is False

    def test_blank_values_fall_back_to_defaults(self):
        assert GatewaySettings.from_env({"FREE_HOURLY_LIMIT": "  "}).free_hourly_limit == 20

    def test_zero_is_a_real_limit(self):
        assert GatewaySettings.from_env({"FREE_BURST_LIMIT": "0"}).free_burst_limit == 0

    @pytest.mark.parametrize("env", [
        {"FREE_DAILY_LIMIT": "-1"},
        {"FREE_DAILY_LIMIT": "lots"},
        {"STORE_TIMEOUT_MS": "0"},
        {"ALERT_INTERVAL_SECONDS": "-5"},
    ])
    def test_invalid_values_fail_startup(self, env):
        with pytest.raises(ConfigurationError):
            GatewaySettings.from_env(env)

    def test_cors_origins_split_on_commas(self):
        settings = GatewaySettings.from_env({"CORS_ORIGINS": "https://a.example, https://b.example"})
        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_production_flag(self):
        assert GatewaySettings.from_env({"APP_ENV": "production"}).is_production
        assert not GatewaySettings().is_production
