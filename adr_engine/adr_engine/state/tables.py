"""SQLAlchemy 2.0 ORM table definitions for the ADR state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.  Every table carries ``tenant_id``.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Partial-index predicates for rows that are live (not soft-deleted).
_LIVE_SQLITE = text("is_deleted = 0")
_LIVE_PG = text("is_deleted = false")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC on every backend.

    SQLite has no timezone support and hands back naive values; they are
    re-tagged as UTC on the way out so comparisons with aware datetimes work
    the same as on PostgreSQL.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ADR tables."""


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountTable(Base):
    """Vendor accounts mirrored from the account source of truth."""

    __tablename__ = "adr_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    vm_account_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    vm_account_number: Mapped[str] = mapped_column(String(128), nullable=False)
    interface_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    client_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    credential_id: Mapped[int] = mapped_column(Integer, nullable=False)
    vendor_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Billing cadence (override-protected)
    period_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    period_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    median_days: Mapped[float | None] = mapped_column(Float, nullable=True)
    invoice_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expected_next_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expected_range_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    expected_range_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_run_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_range_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_range_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    days_until_next_run: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_run_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    historical_billing_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    last_successful_download_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_manually_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    overridden_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    overridden_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "vm_account_id", "vm_account_number", name="uq_adr_accounts_sync_key"),
        Index("ix_adr_accounts_tenant_next_run", "tenant_id", "next_run_date"),
        Index("ix_adr_accounts_credential", "credential_id"),
    )


# ---------------------------------------------------------------------------
# Account rules
# ---------------------------------------------------------------------------


class AccountRuleTable(Base):
    """Per-account, per-job-type schedule driving job creation."""

    __tablename__ = "adr_account_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("adr_accounts.id"), nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    period_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    period_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_run_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_range_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_range_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    window_days_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    window_days_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_manually_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    overridden_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    overridden_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index(
            "uq_adr_account_rules_active",
            "tenant_id",
            "account_id",
            "job_type",
            unique=True,
            sqlite_where=text("is_enabled = 1 AND is_deleted = 0"),
            postgresql_where=text("is_enabled = true AND is_deleted = false"),
        ),
        Index("ix_adr_account_rules_due", "tenant_id", "job_type", "next_run_date"),
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobTable(Base):
    """One account x billing period unit of work."""

    __tablename__ = "adr_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("adr_accounts.id"), nullable=False)
    rule_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("adr_account_rules.id"), nullable=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="DOWNLOAD_INVOICE")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Pending")
    vendor_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    credential_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_missing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    provider_status_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_status_description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    provider_index_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    credential_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    scrape_completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_manual_request: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manual_request_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_status_check_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_status_check_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ledger_epoch: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("period_end >= period_start", name="ck_adr_jobs_period"),
        CheckConstraint("retry_count >= 0", name="ck_adr_jobs_retry_count"),
        Index(
            "uq_adr_jobs_account_period",
            "tenant_id",
            "account_id",
            "period_start",
            "period_end",
            unique=True,
            sqlite_where=_LIVE_SQLITE,
            postgresql_where=_LIVE_PG,
        ),
        Index("ix_adr_jobs_tenant_status", "tenant_id", "status"),
        Index("ix_adr_jobs_account", "account_id"),
        Index("ix_adr_jobs_next_run", "tenant_id", "next_run_date"),
    )


# ---------------------------------------------------------------------------
# Job executions (append-only ledger)
# ---------------------------------------------------------------------------


class JobExecutionTable(Base):
    """One externally visible provider call, or its result.  Never updated."""

    __tablename__ = "adr_job_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("adr_jobs.id"), nullable=False)
    run_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    request_type: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_status_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_status_description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    index_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    raw_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("request_type IN (1, 2, 3)", name="ck_adr_job_executions_request_type"),
        CheckConstraint(
            "outcome IN ('DISPATCHED','SUCCEEDED','FAILED')",
            name="ck_adr_job_executions_outcome",
        ),
        Index("ix_adr_job_executions_job_type", "job_id", "request_type", "recorded_at"),
        Index("ix_adr_job_executions_tenant_recorded", "tenant_id", "recorded_at"),
    )


# ---------------------------------------------------------------------------
# Orchestration runs
# ---------------------------------------------------------------------------


class OrchestrationRunTable(Base):
    """One orchestration run with progress and per-phase tallies."""

    __tablename__ = "adr_orchestration_runs"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    requested_by: Mapped[str] = mapped_column(String(256), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Queued")
    phase_flags: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    current_step: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    results: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(
            "status IN ('Queued','Running','Completed','Failed','Cancelled','Interrupted')",
            name="ck_adr_orchestration_runs_status",
        ),
        Index("ix_adr_orchestration_runs_tenant_requested", "tenant_id", "requested_at"),
        Index("ix_adr_orchestration_runs_tenant_status", "tenant_id", "status"),
    )


class RunSlotTable(Base):
    """Single-row-per-tenant guard holding the active run id, if any."""

    __tablename__ = "adr_run_slot"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    active_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


# ---------------------------------------------------------------------------
# Blacklist
# ---------------------------------------------------------------------------


class AccountBlacklistTable(Base):
    """Exclusions suppressing job creation and/or credential checks."""

    __tablename__ = "adr_account_blacklist"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    vendor_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vm_account_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    vm_account_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    credential_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exclusion_type: Mapped[str] = mapped_column(String(32), nullable=False, default="All")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    effective_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    blacklisted_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "exclusion_type IN ('All','CredentialCheck','Download')",
            name="ck_adr_account_blacklist_type",
        ),
        Index("ix_adr_account_blacklist_tenant_active", "tenant_id", "is_active"),
    )


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


class JobArchiveTable(Base):
    """Finalized jobs moved out of ``adr_jobs`` after the retention period."""

    __tablename__ = "adr_jobs_archive"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    archived_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_adr_jobs_archive_account", "tenant_id", "account_id"),)


class JobExecutionArchiveTable(Base):
    """Executions of archived jobs."""

    __tablename__ = "adr_job_executions_archive"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    job_id: Mapped[int] = mapped_column(Integer, nullable=False)
    request_type: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    archived_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_adr_job_executions_archive_job", "job_id"),)
