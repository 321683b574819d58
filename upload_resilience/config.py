"""
Environment configuration loader using Pydantic BaseSettings.

This module centralizes all environment configuration for the upload resilience
engine: database and queue connectivity, Google Drive OAuth credentials, and the
product-tuned windows, thresholds and backoff values used by the token refresh,
health tracking, upload recovery and notification services. All settings are
validated at startup to fail fast with clear errors.
"""

import json
from typing import Annotated, Any, List, Optional

import structlog
from pydantic import AliasChoices, BeforeValidator, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = structlog.get_logger(__name__)


def parse_int_list(v: Any) -> List[int]:
    """
    Parse integer lists (backoff schedules) from various input formats.

    Supports:
    - Native Python list (from code/tests)
    - JSON array string: '[30, 60, 120]'
    - Comma-separated string: '30,60,120'
    - Empty string or None: returns empty list
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [int(item) for item in v]
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        if s.startswith("["):
            return [int(item) for item in json.loads(s)]
        return [int(item.strip()) for item in s.split(",") if item.strip()]
    return v


IntList = Annotated[List[int], NoDecode, BeforeValidator(parse_int_list)]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Priority order for loading values:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values defined here
    """

    # ===== Application Settings =====
    app_env: str = Field(
        default="development",
        description="Application environment (development/staging/production/test)",
    )

    app_name: str = Field(
        default="Upload Drive-in Resilience",
        description="Application name for logging and identification",
    )

    app_version: str = Field(default="0.1.0", description="Application version")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    log_json: Optional[bool] = Field(
        default=None,
        description="Force JSON log output (None = JSON in staging/production only)",
    )

    # ===== Database Configuration =====
    database_url: str = Field(
        default="sqlite+aiosqlite:///./upload_resilience.db",
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
        description="Async SQLAlchemy URL (postgresql+asyncpg://... or sqlite+aiosqlite://...)",
    )

    database_pool_size: int = Field(
        default=10, description="Database connection pool size", ge=1, le=100
    )

    database_pool_timeout: int = Field(
        default=30, description="Database connection pool timeout in seconds", ge=1
    )

    # ===== Job Queue (arq) =====
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis DSN used by the arq job queue",
    )

    queue_high_name: str = Field(
        default="high",
        description="Queue lane for immediate refreshes and upload dispatch",
    )

    queue_maintenance_name: str = Field(
        default="maintenance",
        description="Queue lane for proactive refreshes and refresh retries",
    )

    queue_default_name: str = Field(
        default="default", description="Queue lane for pending upload retry jobs"
    )

    maintenance_cron_minutes: IntList = Field(
        default=[0, 15, 30, 45],
        description="Minutes of each hour at which the maintenance sweep runs",
    )

    maintenance_sweep_interval_seconds: int = Field(
        default=900,
        description="Base interval for the in-process maintenance loop",
        ge=30,
        le=86400,
    )

    maintenance_sweep_jitter_seconds: int = Field(
        default=60,
        description="Maximum jitter applied to the in-process maintenance loop",
        ge=0,
        le=600,
    )

    # ===== Google Drive OAuth =====
    google_drive_client_id: Optional[str] = Field(
        default=None, description="Google OAuth client ID"
    )

    google_drive_client_secret: Optional[str] = Field(
        default=None, description="Google OAuth client secret"
    )

    google_token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Google OAuth token endpoint used for refresh_token grants",
    )

    google_drive_upload_url: str = Field(
        default="https://www.googleapis.com/upload/drive/v3/files",
        description="Google Drive multipart upload endpoint",
    )

    google_drive_api_url: str = Field(
        default="https://www.googleapis.com/drive/v3",
        description="Google Drive REST API base URL",
    )

    google_drive_root_folder_id: str = Field(
        default="root",
        description="Folder under which per-recipient folders are created",
    )

    provider_http_timeout_seconds: float = Field(
        default=30.0,
        description="Read/write timeout for provider HTTP calls",
        ge=1.0,
        le=600.0,
    )

    oauth_refresh_max_retries: int = Field(
        default=3,
        description="In-call retry attempts for network errors during token refresh",
        ge=1,
        le=10,
    )

    # ===== Security & Encryption =====
    fernet_key: Optional[str] = Field(
        default=None,
        description="Fernet encryption key for token storage (auto-generated if not provided)",
    )

    fernet_keys: Optional[str] = Field(
        default=None,
        description="Comma-separated older Fernet keys accepted for decryption",
    )

    # ===== Token Refresh Timing =====
    token_proactive_refresh_minutes: int = Field(
        default=15,
        description="Tokens expiring within this many minutes are refreshed on demand",
        ge=1,
        le=120,
    )

    token_immediate_refresh_minutes: int = Field(
        default=30,
        description="Sweep window for immediate (high lane) refresh scheduling",
        ge=1,
        le=240,
    )

    token_maintenance_window_hours: int = Field(
        default=24,
        description="Farthest sweep window for maintenance lane refresh scheduling",
        ge=1,
        le=168,
    )

    token_failure_ceiling: int = Field(
        default=5,
        description="Consecutive refresh failures before user intervention is required",
        ge=1,
        le=20,
    )

    token_notify_failure_count: int = Field(
        default=3,
        description="Consecutive refresh failures at which the user is notified",
        ge=1,
        le=20,
    )

    refresh_lock_ttl_seconds: int = Field(
        default=30,
        description="Lifetime of the cross-process refresh lease",
        ge=1,
        le=600,
    )

    refresh_lock_wait_seconds: float = Field(
        default=5.0,
        description="How long a caller waits for a lease held elsewhere",
        ge=0.0,
        le=60.0,
    )

    refresh_lock_poll_seconds: float = Field(
        default=0.25,
        description="Polling interval while waiting for a refresh lease",
        ge=0.01,
        le=5.0,
    )

    refresh_job_max_tries: int = Field(
        default=3, description="arq tries for token refresh jobs", ge=1, le=20
    )

    refresh_job_timeout_seconds: int = Field(
        default=120, description="Per-attempt timeout for refresh jobs", ge=5, le=3600
    )

    refresh_job_deadline_minutes: int = Field(
        default=60,
        description="Wall-clock deadline after which refresh jobs are abandoned",
        ge=1,
        le=1440,
    )

    # ===== Health Tracking =====
    health_degraded_threshold: int = Field(
        default=2,
        description="Consecutive failures at which a connection becomes degraded",
        ge=1,
        le=20,
    )

    health_unhealthy_threshold: int = Field(
        default=5,
        description="Consecutive failures at which a connection becomes unhealthy",
        ge=2,
        le=50,
    )

    health_token_expiring_hours: int = Field(
        default=24,
        description="Window used by the health summary to flag expiring tokens",
        ge=1,
        le=168,
    )

    # ===== Maintenance & Garbage Collection =====
    failure_reset_days: int = Field(
        default=7,
        description="Failure counters older than this are reset by the sweep",
        ge=1,
        le=365,
    )

    stale_schedule_lock_hours: int = Field(
        default=2,
        description="Age after which a proactive-refresh schedule stamp is stale",
        ge=1,
        le=72,
    )

    health_record_retention_days: int = Field(
        default=90,
        description="Inactive health records older than this are purged",
        ge=1,
        le=3650,
    )

    active_user_days: int = Field(
        default=7,
        description="A user with a successful operation in this window is active",
        ge=1,
        le=365,
    )

    # ===== Upload Recovery =====
    upload_max_retry_count: int = Field(
        default=3, description="Ceiling for an upload's retry_count", ge=1, le=50
    )

    upload_max_recovery_attempts: int = Field(
        default=5, description="Ceiling for an upload's recovery_attempts", ge=1, le=50
    )

    upload_retry_job_max_tries: int = Field(
        default=3, description="arq tries for pending upload retry jobs", ge=1, le=20
    )

    upload_retry_backoff_seconds: IntList = Field(
        default=[30, 60, 120],
        description="Backoff between upload retry job attempts",
    )

    upload_retry_deadline_minutes: int = Field(
        default=30,
        description="Wall-clock deadline after which upload retry jobs are abandoned",
        ge=1,
        le=1440,
    )

    upload_unhealthy_defer_seconds: int = Field(
        default=300,
        description="Deferral applied when the target connection is unhealthy",
        ge=1,
        le=86400,
    )

    upload_dispatch_delay_seconds: int = Field(
        default=5,
        description="Delay before a recovered upload is re-dispatched",
        ge=0,
        le=3600,
    )

    upload_retry_batch_size: int = Field(
        default=50,
        description="Maximum pending uploads scheduled per sweep",
        ge=1,
        le=1000,
    )

    local_storage_root: str = Field(
        default="./storage/uploads",
        description="Directory holding locally staged upload files",
    )

    # ===== Notifications =====
    notifications_enabled: bool = Field(
        default=True, description="Enable user notifications for token issues"
    )

    notification_throttle_hours: int = Field(
        default=24,
        description="At most one notification per type per user/provider in this window",
        ge=0,
        le=720,
    )

    expiring_notification_throttle_hours: int = Field(
        default=6,
        description="Throttle window for expiring-token notifications",
        ge=0,
        le=720,
    )

    unhealthy_notification_throttle_hours: int = Field(
        default=12,
        description="Throttle window for unhealthy-connection notifications",
        ge=0,
        le=720,
    )

    unhealthy_notification_min_failures: int = Field(
        default=3,
        description="Consecutive failures before an unhealthy-connection notification",
        ge=1,
        le=50,
    )

    escalate_to_admin: bool = Field(
        default=True,
        description="Escalate to admins when user notifications keep failing",
    )

    max_notification_failures: int = Field(
        default=3,
        description="Delivery failures per notification type before escalation",
        ge=1,
        le=50,
    )

    alert_rate_limit_per_key: int = Field(
        default=3,
        description="Non-critical operator alerts per key within the alert window",
        ge=1,
        le=100,
    )

    alert_rate_limit_window_minutes: int = Field(
        default=60,
        description="Window after which suppressed operator alerts are sent again",
        ge=1,
        le=1440,
    )

    # ===== Validators =====

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Ensure app environment is valid."""
        valid_envs = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid app_env: {v}. Must be one of {valid_envs}")
        return v_lower

    @field_validator("fernet_key", mode="before")
    @classmethod
    def generate_fernet_key_if_needed(cls, v: Optional[str]) -> str:
        """Generate Fernet key if not provided."""
        if v is None or v == "":
            from cryptography.fernet import Fernet

            key = Fernet.generate_key().decode()
            logger.warning(
                "Generated new Fernet key - save this in .env for persistence"
            )
            return key
        return v

    @field_validator("upload_retry_backoff_seconds")
    @classmethod
    def validate_backoff(cls, v: List[int]) -> List[int]:
        """Backoff schedules must be non-empty and non-negative."""
        if not v:
            raise ValueError("Backoff schedule must contain at least one entry")
        if any(delay < 0 for delay in v):
            raise ValueError(f"Backoff delays must be non-negative: {v}")
        return v

    @field_validator("maintenance_cron_minutes")
    @classmethod
    def validate_cron_minutes(cls, v: List[int]) -> List[int]:
        """Cron minutes must be within an hour."""
        if not v or any(minute < 0 or minute > 59 for minute in v):
            raise ValueError(f"Invalid maintenance cron minutes: {v}")
        return v

    @field_validator("health_unhealthy_threshold")
    @classmethod
    def validate_health_thresholds(cls, v: int, info) -> int:
        """The unhealthy threshold must sit above the degraded threshold."""
        degraded = info.data.get("health_degraded_threshold", 2)
        if v <= degraded:
            raise ValueError(
                f"health_unhealthy_threshold ({v}) must exceed "
                f"health_degraded_threshold ({degraded})"
            )
        return v

    # ===== Pydantic Config =====

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.database_url.startswith("sqlite")

    def log_config(self) -> None:
        """Log configuration (with secrets masked)."""
        config_dict = self.model_dump()

        sensitive_fields = [
            "google_drive_client_secret",
            "fernet_key",
            "fernet_keys",
            "database_url",
            "redis_url",
        ]

        for field in sensitive_fields:
            if field in config_dict and config_dict[field]:
                # Show first 4 chars for debugging, mask the rest
                value = str(config_dict[field])
                if len(value) > 8:
                    config_dict[field] = f"{value[:4]}...{value[-4:]}"
                else:
                    config_dict[field] = "***"

        logger.info("Configuration loaded", **config_dict)

    def validate_required_for_production(self) -> None:
        """Additional validation for production environment."""
        if self.app_env == "production":
            errors = []

            if self.is_sqlite:
                errors.append("DATABASE_URL must point at PostgreSQL in production")

            if not self.google_drive_client_id or not self.google_drive_client_secret:
                errors.append("Google Drive OAuth credentials required in production")

            if self.redis_url.startswith("redis://localhost"):
                errors.append("REDIS_URL must not point at localhost in production")

            if self.log_level == "DEBUG":
                logger.warning(
                    "DEBUG log level in production - consider using INFO or higher"
                )

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )


# ===== Global Settings Instance =====

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    Only entry points (worker settings, CLI wiring) call this; services receive
    the settings object through their constructors.
    """
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
            _settings.log_config()
            _settings.validate_required_for_production()
            logger.info(
                "Settings loaded successfully",
                app_env=_settings.app_env,
                app_version=_settings.app_version,
            )
        except ValidationError as e:
            logger.error("Failed to load settings", errors=e.errors())
            raise
        except Exception as e:
            logger.error("Unexpected error loading settings", error=str(e))
            raise

    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
