"""Orchestration run models: phase selection, per-phase tallies, summaries.

Per-phase result objects are accumulated by the coordinator while a run
executes and are persisted (as JSON) on the run record after every phase so
that a watcher can see partial results of an unfinished run.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

# Upper bound on how many per-item error messages a phase keeps.
MAX_ERROR_MESSAGES = 200


class RunStatus(str, Enum):
    """Lifecycle state of an orchestration run."""

    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    INTERRUPTED = "Interrupted"


ACTIVE_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.QUEUED, RunStatus.RUNNING})


class Phase(str, Enum):
    SYNC = "Syncing accounts"
    CREATE_JOBS = "Creating jobs"
    VERIFY_CREDENTIALS = "Verifying credentials"
    SCRAPE = "Processing scraping"
    STATUS_CHECK = "Checking statuses"
    STALE_SWEEP = "Finalizing stale jobs"


class PhaseFlags(BaseModel):
    """Which phases a run executes.  All phases run by default."""

    run_sync: bool = True
    run_create_jobs: bool = True
    run_credential_verification: bool = True
    run_scraping: bool = True
    run_status_check: bool = True

    @classmethod
    def status_check_only(cls) -> PhaseFlags:
        return cls(
            run_sync=False,
            run_create_jobs=False,
            run_credential_verification=False,
            run_scraping=False,
            run_status_check=True,
        )


# ---------------------------------------------------------------------------
# Phase results
# ---------------------------------------------------------------------------


class PhaseResult(BaseModel):
    """Common error accounting shared by every phase."""

    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors += 1
        if len(self.error_messages) < MAX_ERROR_MESSAGES:
            self.error_messages.append(message)

    @property
    def failure_count(self) -> int:
        return self.errors


class SyncResult(PhaseResult):
    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    marked_deleted: int = 0


class JobCreationResult(PhaseResult):
    created: int = 0
    skipped: int = 0
    blacklisted: int = 0
    rules_backfilled: int = 0


class CredentialVerificationResult(PhaseResult):
    processed: int = 0
    verified: int = 0
    failed: int = 0
    reused: int = 0
    deferred: int = 0
    blacklisted: int = 0

    @property
    def failure_count(self) -> int:
        return self.errors + self.failed


class ScrapeResult(PhaseResult):
    processed: int = 0
    requested: int = 0
    completed: int = 0
    needs_review: int = 0
    failed: int = 0
    reused: int = 0
    awaiting: int = 0

    @property
    def failure_count(self) -> int:
        return self.errors + self.failed


class StatusCheckResult(PhaseResult):
    checked: int = 0
    completed: int = 0
    needs_review: int = 0
    failed: int = 0
    no_invoice: int = 0
    still_pending: int = 0
    credential_verified: int = 0
    credential_failed: int = 0
    check_errors: int = 0

    @property
    def failure_count(self) -> int:
        return self.errors + self.failed + self.check_errors


class StaleJobResult(PhaseResult):
    cancelled: int = 0
    rules_advanced: int = 0


class RunResults(BaseModel):
    """All phase tallies of one run; absent phases were disabled or not reached."""

    sync: SyncResult | None = None
    job_creation: JobCreationResult | None = None
    credentials: CredentialVerificationResult | None = None
    scraping: ScrapeResult | None = None
    status_check: StatusCheckResult | None = None
    stale_sweep: StaleJobResult | None = None

    def phases(self) -> dict[str, PhaseResult]:
        """Return the populated phase results keyed by phase name."""
        out: dict[str, PhaseResult] = {}
        for name in ("sync", "job_creation", "credentials", "scraping", "status_check", "stale_sweep"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out

    @property
    def total_failures(self) -> int:
        return sum(result.failure_count for result in self.phases().values())

    def error_messages(self) -> list[str]:
        messages: list[str] = []
        for name, result in self.phases().items():
            messages.extend(f"[{name}] {msg}" for msg in result.error_messages)
        return messages


class RunSummary(BaseModel):
    """Externally visible view of a run."""

    request_id: str = Field(..., description="Unique identifier of the run.")
    requested_by: str
    status: RunStatus
    requested_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    current_step: str | None = None
    current_progress: int = 0
    total_items: int = 0
    error_message: str | None = None
    phase_flags: PhaseFlags = Field(default_factory=PhaseFlags)
    results: RunResults = Field(default_factory=RunResults)
