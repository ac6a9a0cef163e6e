"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with ADR_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="ADR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False
    tenant_id: str = "default"

    # Database
    database_url: str = "sqlite+aiosqlite:///.adr/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Scraping provider
    provider_base_url: str = "http://localhost:8080/api/adr/"
    provider_timeout_seconds: float = 60.0
    provider_api_key: SecretStr | None = None
    source_application_name: str = "ADR Orchestrator"
    recipient_email: str | None = None

    # Account source of truth
    account_source_url: str | None = None
    account_source_timeout_seconds: float = 300.0

    # Scheduling
    credential_check_lead_days: int = Field(default=7, ge=0)
    max_retries: int = Field(default=5, ge=0)
    status_check_delay_days: int = Field(default=1, ge=0)
    stale_job_lookback_days: int = Field(default=90, ge=1)
    default_window_days_before: int = Field(default=5, ge=0)
    default_window_days_after: int = Field(default=5, ge=0)
    drift_threshold_days: int = Field(default=3, ge=0)

    # Concurrency and progress
    max_parallel_requests: int = Field(default=8, ge=1)
    batch_size: int = Field(default=1000, ge=1)
    progress_flush_every: int = Field(default=25, ge=1)
    progress_flush_seconds: float = 5.0

    # Durable retry backoff for failed credential/scrape attempts (seconds)
    retry_backoff_base: float = 3600.0
    retry_max_delay: float = 86400.0

    # Run limits
    max_run_duration_minutes: int = Field(default=240, ge=1)

    # Test mode caps the number of billable calls per run
    test_mode_enabled: bool = False
    test_mode_max_credential_checks: int = 50
    test_mode_max_scraping_jobs: int = 50

    # Idempotency ledger
    credential_check_freshness_days: int = 7
    in_flight_grace_hours: int = 24

    # Retention
    job_retention_months: int = Field(default=12, ge=1)
    execution_retention_months: int = Field(default=12, ge=1)

    # Notifications
    notifications_enabled: bool = True
    notification_recipients: str = ""
    notification_webhook_url: str | None = None

    # Logging
    structured_logging: bool = False

    # Optional JSON file extending/overriding the provider status code table
    status_codes_path: Path | None = None

    @field_validator("provider_api_key", mode="before")
    @classmethod
    def mask_key_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None or v == "":
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @property
    def recipients(self) -> list[str]:
        """Notification recipients split from the semicolon-separated setting."""
        return [r.strip() for r in self.notification_recipients.split(";") if r.strip()]


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
