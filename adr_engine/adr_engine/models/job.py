"""Job lifecycle models.

A job is one account x one billing period.  :class:`JobState` is the plain,
immutable view of a job that the state machine reasons about; it can be
built straight from an ORM row with ``JobState.model_validate(row)``.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Lifecycle state of a scraping job."""

    PENDING = "Pending"
    CREDENTIAL_CHECK_IN_PROGRESS = "CredentialCheckInProgress"
    CREDENTIAL_VERIFIED = "CredentialVerified"
    CREDENTIAL_FAILED = "CredentialFailed"
    SCRAPE_IN_PROGRESS = "ScrapeInProgress"
    SCRAPE_REQUESTED = "ScrapeRequested"
    SCRAPE_FAILED = "ScrapeFailed"
    STATUS_CHECK_IN_PROGRESS = "StatusCheckInProgress"
    COMPLETED = "Completed"
    NEEDS_REVIEW = "NeedsReview"
    FAILED = "Failed"
    NO_INVOICE_FOUND = "NoInvoiceFound"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.NEEDS_REVIEW,
        JobStatus.FAILED,
        JobStatus.NO_INVOICE_FOUND,
        JobStatus.CANCELLED,
    }
)


class JobType(str, Enum):
    CREDENTIAL_CHECK = "CREDENTIAL_CHECK"
    DOWNLOAD_INVOICE = "DOWNLOAD_INVOICE"


class RequestType(IntEnum):
    """Kind of externally visible call, as sent in ``ADRRequestTypeId``."""

    ATTEMPT_LOGIN = 1
    DOWNLOAD_INVOICE = 2
    STATUS_CHECK = 3


class ExecutionOutcome(str, Enum):
    DISPATCHED = "DISPATCHED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class JobState(BaseModel):
    """Immutable snapshot of the job fields that drive transitions."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    status: JobStatus
    job_type: JobType = JobType.DOWNLOAD_INVOICE
    account_id: int
    rule_id: int | None = None
    next_run_date: date
    period_start: date
    period_end: date
    is_missing: bool = False
    is_manual_request: bool = False
    credential_verified_at: datetime | None = None
    scrape_completed_at: datetime | None = None
    provider_status_id: int | None = None
    provider_index_id: int | None = None
    retry_count: int = Field(default=0, ge=0)
    next_attempt_at: datetime | None = None
    ledger_epoch: datetime | None = None
    updated_at: datetime | None = None
