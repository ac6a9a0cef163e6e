"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from adr_api.services.orchestration_scheduler import compute_next_run


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_PORT=9000``) or through a ``.env`` file in the
    working directory.  Engine settings (database, provider, scheduling)
    use the ``ADR_`` prefix and live in :mod:`adr_engine.config`.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Create tables at startup (local SQLite / dev); production uses Alembic.
    auto_create_tables: bool = True

    # Mark runs left Queued/Running by a previous process as Interrupted.
    recover_on_startup: bool = True

    # Background trigger for full runs.
    scheduler_enabled: bool = False
    scheduler_cron: str = "0 6 * * *"
    scheduler_poll_seconds: float = 60.0

    # Grace period for in-flight runs on shutdown before they are cancelled.
    shutdown_grace_seconds: float = 30.0

    @field_validator("scheduler_cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        compute_next_run(value, datetime.now(UTC))
        return value


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
