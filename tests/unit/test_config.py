"""
Tests for configuration loading and validation.

Validates environment variable handling, defaults, list parsing and the
production checks.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from upload_resilience.config import Settings, get_settings, parse_int_list, reset_settings


class TestConfiguration:
    """Test suite for configuration management."""

    def test_settings_loads_with_defaults(self):
        """Settings should load with the product-tuned defaults."""
        with patch.dict(os.environ, {"APP_ENV": "test"}, clear=True):
            settings = Settings(_env_file=None)

            assert settings.app_env == "test"
            assert settings.app_name == "Upload Drive-in Resilience"
            assert settings.token_proactive_refresh_minutes == 15
            assert settings.token_immediate_refresh_minutes == 30
            assert settings.token_maintenance_window_hours == 24
            assert settings.token_failure_ceiling == 5
            assert settings.upload_max_retry_count == 3
            assert settings.upload_max_recovery_attempts == 5
            assert settings.upload_retry_backoff_seconds == [30, 60, 120]
            assert settings.maintenance_cron_minutes == [0, 15, 30, 45]
            # A Fernet key is generated when none is configured
            assert settings.fernet_key

    def test_environment_overrides(self):
        with patch.dict(
            os.environ,
            {
                "APP_ENV": "test",
                "TOKEN_FAILURE_CEILING": "7",
                "UPLOAD_RETRY_BACKOFF_SECONDS": "10,20",
                "MAINTENANCE_CRON_MINUTES": "[5, 35]",
                "LOG_LEVEL": "warning",
            },
            clear=True,
        ):
            settings = Settings(_env_file=None)

            assert settings.token_failure_ceiling == 7
            assert settings.upload_retry_backoff_seconds == [10, 20]
            assert settings.maintenance_cron_minutes == [5, 35]
            assert settings.log_level == "WARNING"

    @pytest.mark.parametrize(
        "env",
        [
            {"LOG_LEVEL": "LOUD"},
            {"APP_ENV": "qa"},
            {"UPLOAD_RETRY_BACKOFF_SECONDS": ""},
            {"UPLOAD_RETRY_BACKOFF_SECONDS": "30,-1"},
            {"MAINTENANCE_CRON_MINUTES": "0,75"},
            {"HEALTH_DEGRADED_THRESHOLD": "4", "HEALTH_UNHEALTHY_THRESHOLD": "3"},
        ],
    )
    def test_invalid_values_are_rejected(self, env):
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_production_requires_real_infrastructure(self):
        with patch.dict(os.environ, {"APP_ENV": "production"}, clear=True):
            settings = Settings(_env_file=None)
            with pytest.raises(ValueError) as exc_info:
                settings.validate_required_for_production()

        message = str(exc_info.value)
        assert "DATABASE_URL" in message
        assert "OAuth" in message
        assert "REDIS_URL" in message

    def test_production_passes_with_full_configuration(self):
        with patch.dict(
            os.environ,
            {
                "APP_ENV": "production",
                "DATABASE_URL": "postgresql+asyncpg://u:p@db/uploads",
                "REDIS_URL": "redis://queue:6379/0",
                "GOOGLE_DRIVE_CLIENT_ID": "client",
                "GOOGLE_DRIVE_CLIENT_SECRET": "secret",
            },
            clear=True,
        ):
            Settings(_env_file=None).validate_required_for_production()

    def test_get_settings_is_cached(self):
        reset_settings()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings()


class TestParseIntList:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ([1, 2], [1, 2]),
            ("[30, 60]", [30, 60]),
            ("30, 60 ,120", [30, 60, 120]),
            ("", []),
            (None, []),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_int_list(raw) == expected
