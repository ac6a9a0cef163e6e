"""Initial schema for the ADR state store.

Creates accounts, account rules, jobs, the append-only job execution
ledger, orchestration runs, the run slot, the account blacklist and the two
archive tables.  Every table carries ``tenant_id``.

Revision ID: 001
Revises: None
Create Date: 2025-06-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _tenant() -> sa.Column:
    return sa.Column("tenant_id", sa.String(64), nullable=False, server_default="default")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ------------------------------------------------------------------
    # adr_accounts
    # ------------------------------------------------------------------
    op.create_table(
        "adr_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant(),
        sa.Column("vm_account_id", sa.BigInteger(), nullable=False),
        sa.Column("vm_account_number", sa.String(128), nullable=False),
        sa.Column("interface_account_id", sa.String(128), nullable=True),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("client_name", sa.String(256), nullable=True),
        sa.Column("credential_id", sa.Integer(), nullable=False),
        sa.Column("vendor_code", sa.String(64), nullable=True),
        sa.Column("period_type", sa.String(32), nullable=True),
        sa.Column("period_days", sa.Integer(), nullable=True),
        sa.Column("median_days", sa.Float(), nullable=True),
        sa.Column("invoice_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_invoice_date", sa.Date(), nullable=True),
        sa.Column("expected_next_date", sa.Date(), nullable=True),
        sa.Column("expected_range_start", sa.Date(), nullable=True),
        sa.Column("expected_range_end", sa.Date(), nullable=True),
        sa.Column("next_run_date", sa.Date(), nullable=True),
        sa.Column("next_range_start", sa.Date(), nullable=True),
        sa.Column("next_range_end", sa.Date(), nullable=True),
        sa.Column("days_until_next_run", sa.Integer(), nullable=True),
        sa.Column("next_run_status", sa.String(32), nullable=True),
        sa.Column("historical_billing_status", sa.String(32), nullable=True),
        sa.Column("last_successful_download_date", sa.Date(), nullable=True),
        sa.Column("is_manually_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("overridden_by", sa.String(256), nullable=True),
        _ts("overridden_at", nullable=True),
        _ts("last_synced_at", nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("tenant_id", "vm_account_id", "vm_account_number", name="uq_adr_accounts_sync_key"),
    )
    op.create_index("ix_adr_accounts_tenant_next_run", "adr_accounts", ["tenant_id", "next_run_date"])
    op.create_index("ix_adr_accounts_credential", "adr_accounts", ["credential_id"])

    # ------------------------------------------------------------------
    # adr_account_rules
    # ------------------------------------------------------------------
    op.create_table(
        "adr_account_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant(),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("adr_accounts.id"), nullable=False),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("period_type", sa.String(32), nullable=True),
        sa.Column("period_days", sa.Integer(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("next_run_date", sa.Date(), nullable=True),
        sa.Column("next_range_start", sa.Date(), nullable=True),
        sa.Column("next_range_end", sa.Date(), nullable=True),
        sa.Column("window_days_before", sa.Integer(), nullable=True),
        sa.Column("window_days_after", sa.Integer(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_manually_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("overridden_by", sa.String(256), nullable=True),
        _ts("overridden_at", nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "uq_adr_account_rules_active",
        "adr_account_rules",
        ["tenant_id", "account_id", "job_type"],
        unique=True,
        sqlite_where=sa.text("is_enabled = 1 AND is_deleted = 0"),
        postgresql_where=sa.text("is_enabled = true AND is_deleted = false"),
    )
    op.create_index("ix_adr_account_rules_due", "adr_account_rules", ["tenant_id", "job_type", "next_run_date"])

    # ------------------------------------------------------------------
    # adr_jobs
    # ------------------------------------------------------------------
    op.create_table(
        "adr_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant(),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("adr_accounts.id"), nullable=False),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("adr_account_rules.id"), nullable=True),
        sa.Column("job_type", sa.String(32), nullable=False, server_default="DOWNLOAD_INVOICE"),
        sa.Column("status", sa.String(32), nullable=False, server_default="Pending"),
        sa.Column("vendor_code", sa.String(64), nullable=True),
        sa.Column("credential_id", sa.Integer(), nullable=False),
        sa.Column("period_type", sa.String(32), nullable=True),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("next_run_date", sa.Date(), nullable=False),
        sa.Column("is_missing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provider_status_id", sa.Integer(), nullable=True),
        sa.Column("provider_status_description", sa.String(512), nullable=True),
        sa.Column("provider_index_id", sa.BigInteger(), nullable=True),
        _ts("credential_verified_at", nullable=True),
        _ts("scrape_completed_at", nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_attempt_at", nullable=True),
        sa.Column("is_manual_request", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("manual_request_reason", sa.Text(), nullable=True),
        sa.Column("last_status_check_response", sa.Text(), nullable=True),
        _ts("last_status_check_at", nullable=True),
        _ts("ledger_epoch", nullable=True),
        _ts("finalized_at", nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("period_end >= period_start", name="ck_adr_jobs_period"),
        sa.CheckConstraint("retry_count >= 0", name="ck_adr_jobs_retry_count"),
    )
    op.create_index(
        "uq_adr_jobs_account_period",
        "adr_jobs",
        ["tenant_id", "account_id", "period_start", "period_end"],
        unique=True,
        sqlite_where=sa.text("is_deleted = 0"),
        postgresql_where=sa.text("is_deleted = false"),
    )
    op.create_index("ix_adr_jobs_tenant_status", "adr_jobs", ["tenant_id", "status"])
    op.create_index("ix_adr_jobs_account", "adr_jobs", ["account_id"])
    op.create_index("ix_adr_jobs_next_run", "adr_jobs", ["tenant_id", "next_run_date"])

    # ------------------------------------------------------------------
    # adr_job_executions
    # ------------------------------------------------------------------
    op.create_table(
        "adr_job_executions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant(),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("adr_jobs.id"), nullable=False),
        sa.Column("run_request_id", sa.String(64), nullable=True),
        sa.Column("request_type", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("provider_status_id", sa.Integer(), nullable=True),
        sa.Column("provider_status_description", sa.String(512), nullable=True),
        sa.Column("is_error", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("index_id", sa.BigInteger(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("request_payload", _JSON, nullable=True),
        sa.Column("raw_response", sa.Text(), nullable=True),
        _ts("recorded_at"),
        sa.CheckConstraint("request_type IN (1, 2, 3)", name="ck_adr_job_executions_request_type"),
        sa.CheckConstraint(
            "outcome IN ('DISPATCHED','SUCCEEDED','FAILED')",
            name="ck_adr_job_executions_outcome",
        ),
    )
    op.create_index(
        "ix_adr_job_executions_job_type",
        "adr_job_executions",
        ["job_id", "request_type", "recorded_at"],
    )
    op.create_index(
        "ix_adr_job_executions_tenant_recorded",
        "adr_job_executions",
        ["tenant_id", "recorded_at"],
    )

    # ------------------------------------------------------------------
    # adr_orchestration_runs + adr_run_slot
    # ------------------------------------------------------------------
    op.create_table(
        "adr_orchestration_runs",
        sa.Column("request_id", sa.String(64), primary_key=True),
        _tenant(),
        sa.Column("requested_by", sa.String(256), nullable=False),
        _ts("requested_at"),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="Queued"),
        sa.Column("phase_flags", _JSON, nullable=False),
        sa.Column("current_step", sa.String(128), nullable=True),
        sa.Column("current_progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("results", _JSON, nullable=False),
        sa.CheckConstraint(
            "status IN ('Queued','Running','Completed','Failed','Cancelled','Interrupted')",
            name="ck_adr_orchestration_runs_status",
        ),
    )
    op.create_index(
        "ix_adr_orchestration_runs_tenant_requested",
        "adr_orchestration_runs",
        ["tenant_id", "requested_at"],
    )
    op.create_index(
        "ix_adr_orchestration_runs_tenant_status",
        "adr_orchestration_runs",
        ["tenant_id", "status"],
    )

    op.create_table(
        "adr_run_slot",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("active_request_id", sa.String(64), nullable=True),
        _ts("claimed_at", nullable=True),
    )

    # ------------------------------------------------------------------
    # adr_account_blacklist
    # ------------------------------------------------------------------
    op.create_table(
        "adr_account_blacklist",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant(),
        sa.Column("vendor_code", sa.String(64), nullable=True),
        sa.Column("vm_account_id", sa.BigInteger(), nullable=True),
        sa.Column("vm_account_number", sa.String(128), nullable=True),
        sa.Column("credential_id", sa.Integer(), nullable=True),
        sa.Column("exclusion_type", sa.String(32), nullable=False, server_default="All"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("effective_start_date", sa.Date(), nullable=True),
        sa.Column("effective_end_date", sa.Date(), nullable=True),
        sa.Column("blacklisted_by", sa.String(256), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint(
            "exclusion_type IN ('All','CredentialCheck','Download')",
            name="ck_adr_account_blacklist_type",
        ),
    )
    op.create_index(
        "ix_adr_account_blacklist_tenant_active",
        "adr_account_blacklist",
        ["tenant_id", "is_active"],
    )

    # ------------------------------------------------------------------
    # Archive tables
    # ------------------------------------------------------------------
    op.create_table(
        "adr_jobs_archive",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        _ts("finalized_at", nullable=True),
        sa.Column("payload", _JSON, nullable=False),
        _ts("archived_at"),
    )
    op.create_index("ix_adr_jobs_archive_account", "adr_jobs_archive", ["tenant_id", "account_id"])

    op.create_table(
        "adr_job_executions_archive",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("request_type", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        _ts("recorded_at"),
        sa.Column("payload", _JSON, nullable=False),
        _ts("archived_at"),
    )
    op.create_index("ix_adr_job_executions_archive_job", "adr_job_executions_archive", ["job_id"])


def downgrade() -> None:
    op.drop_table("adr_job_executions_archive")
    op.drop_table("adr_jobs_archive")
    op.drop_table("adr_account_blacklist")
    op.drop_table("adr_run_slot")
    op.drop_table("adr_orchestration_runs")
    op.drop_table("adr_job_executions")
    op.drop_table("adr_jobs")
    op.drop_table("adr_account_rules")
    op.drop_table("adr_accounts")
