"""Per-job state machine.

Pure functions over :class:`~adr_engine.models.job.JobState`: a static
transition table, eligibility guards used by the orchestration phases, and
outcome functions that turn a provider result into a :class:`JobTransition`.
Nothing here touches storage or the clock; callers persist the transition.

Lifecycle::

    Pending -> CredentialCheckInProgress -> CredentialVerified | CredentialFailed
            -> ScrapeInProgress -> ScrapeRequested | ScrapeFailed
            -> StatusCheckInProgress -> Completed | NeedsReview | Failed | NoInvoiceFound

``CredentialFailed`` and ``ScrapeFailed`` are retry states, not terminal.
``Cancelled`` is reached from any non-terminal state via the stale sweep.
``*InProgress`` states are written before the provider call so a crashed
run leaves a marker that the next run re-selects.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from adr_engine.config import Settings
from adr_engine.errors import InvalidTransitionError
from adr_engine.executor.retry import RetryConfig, durable_retry_at
from adr_engine.models.job import TERMINAL_STATUSES, JobState, JobStatus, JobType
from adr_engine.provider import status_codes
from adr_engine.provider.responses import ProviderResult

logger = logging.getLogger(__name__)

S = JobStatus

# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    S.PENDING: frozenset({S.CREDENTIAL_CHECK_IN_PROGRESS, S.SCRAPE_IN_PROGRESS, S.CANCELLED}),
    S.CREDENTIAL_CHECK_IN_PROGRESS: frozenset(
        {S.CREDENTIAL_VERIFIED, S.CREDENTIAL_FAILED, S.SCRAPE_IN_PROGRESS, S.CANCELLED}
    ),
    S.CREDENTIAL_VERIFIED: frozenset({S.SCRAPE_IN_PROGRESS, S.CANCELLED}),
    S.CREDENTIAL_FAILED: frozenset(
        {S.CREDENTIAL_CHECK_IN_PROGRESS, S.CREDENTIAL_VERIFIED, S.SCRAPE_IN_PROGRESS, S.CANCELLED}
    ),
    S.SCRAPE_IN_PROGRESS: frozenset(
        {S.SCRAPE_REQUESTED, S.SCRAPE_FAILED, S.COMPLETED, S.NEEDS_REVIEW, S.FAILED, S.CANCELLED}
    ),
    S.SCRAPE_REQUESTED: frozenset({S.STATUS_CHECK_IN_PROGRESS, S.CANCELLED}),
    S.SCRAPE_FAILED: frozenset({S.SCRAPE_IN_PROGRESS, S.CANCELLED}),
    S.STATUS_CHECK_IN_PROGRESS: frozenset(
        {
            S.SCRAPE_REQUESTED,
            S.COMPLETED,
            S.NEEDS_REVIEW,
            S.FAILED,
            S.NO_INVOICE_FOUND,
            S.CANCELLED,
        }
    ),
    S.COMPLETED: frozenset(),
    S.NEEDS_REVIEW: frozenset(),
    S.FAILED: frozenset(),
    S.NO_INVOICE_FOUND: frozenset(),
    S.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Staying in the same state is always allowed (crash-recovery re-marks)."""
    return current == target or target in TRANSITIONS[current]


def assert_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise :class:`InvalidTransitionError` unless ``current -> target`` is legal."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class JobPolicy(BaseModel):
    """Scheduling knobs the guards and outcome functions depend on."""

    credential_check_lead_days: int = 7
    max_retries: int = 5
    status_check_delay_days: int = 1
    stale_job_lookback_days: int = 90
    backoff: RetryConfig = Field(
        default_factory=lambda: RetryConfig(base_delay=3600.0, max_delay=86400.0, jitter=False)
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> JobPolicy:
        return cls(
            credential_check_lead_days=settings.credential_check_lead_days,
            max_retries=settings.max_retries,
            status_check_delay_days=settings.status_check_delay_days,
            stale_job_lookback_days=settings.stale_job_lookback_days,
            backoff=RetryConfig(
                base_delay=settings.retry_backoff_base,
                max_delay=settings.retry_max_delay,
                jitter=False,
            ),
        )


class JobTransition(BaseModel):
    """Result of an outcome function: where the job goes and what changes."""

    status: JobStatus
    updates: dict[str, Any] = Field(default_factory=dict)
    advance_rule: bool = False
    label: str = Field(..., description="Tally bucket for phase results, e.g. 'verified'.")

    def values(self, now: datetime) -> dict[str, Any]:
        """Column values to persist, including ``status`` and ``finalized_at``."""
        out = {"status": self.status.value, **self.updates}
        if is_terminal(self.status):
            out.setdefault("finalized_at", now)
        return out


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def _retry_due(job: JobState, now: datetime, policy: JobPolicy) -> bool:
    if job.retry_count >= policy.max_retries:
        return False
    return job.next_attempt_at is None or job.next_attempt_at <= now


def stale_cutoff(job: JobState, policy: JobPolicy) -> date:
    """Last day a job may still be worked; after it the stale sweep cancels it."""
    return job.next_run_date + timedelta(days=policy.stale_job_lookback_days)


def is_credential_check_eligible(job: JobState, today: date, now: datetime, policy: JobPolicy) -> bool:
    """Whether a credential check may be sent for *job* today.

    Download jobs are checked in the lead window strictly before their run
    date.  Missing-invoice jobs and credential-check jobs have no upper bound
    since they are never scraped without a verified login.
    """
    if job.status not in (S.PENDING, S.CREDENTIAL_CHECK_IN_PROGRESS, S.CREDENTIAL_FAILED):
        return False
    if job.credential_verified_at is not None:
        return False
    if today < job.next_run_date - timedelta(days=policy.credential_check_lead_days):
        return False
    unbounded = job.job_type is JobType.CREDENTIAL_CHECK or job.is_missing
    if unbounded:
        if today > stale_cutoff(job, policy):
            return False
    elif today >= job.next_run_date:
        return False
    if job.status is S.CREDENTIAL_FAILED:
        return _retry_due(job, now, policy)
    return True


def is_scrape_eligible(job: JobState, today: date, now: datetime, policy: JobPolicy) -> bool:
    """Whether an invoice download may be requested for *job* today."""
    if job.job_type is not JobType.DOWNLOAD_INVOICE:
        return False
    if job.next_run_date > today or today > stale_cutoff(job, policy):
        return False
    if job.status in (
        S.CREDENTIAL_VERIFIED,
        S.SCRAPE_IN_PROGRESS,
        S.CREDENTIAL_FAILED,
        S.CREDENTIAL_CHECK_IN_PROGRESS,
    ):
        return True
    if job.status is S.PENDING:
        return not job.is_missing
    if job.status is S.SCRAPE_FAILED:
        return _retry_due(job, now, policy)
    return False


def _status_activity_aged(job: JobState, now: datetime, policy: JobPolicy) -> bool:
    if job.updated_at is None:
        return True
    return job.updated_at <= now - timedelta(days=policy.status_check_delay_days)


def is_status_check_eligible(job: JobState, now: datetime, policy: JobPolicy) -> bool:
    """Whether a requested scrape is due for a status poll."""
    if job.status not in (S.SCRAPE_REQUESTED, S.STATUS_CHECK_IN_PROGRESS):
        return False
    if job.provider_status_id is None or job.scrape_completed_at is not None:
        return False
    if job.status is S.STATUS_CHECK_IN_PROGRESS:
        # Interrupted poll from a crashed run; re-check immediately.
        return True
    return _status_activity_aged(job, now, policy)


def is_credential_followup_eligible(job: JobState, today: date, now: datetime, policy: JobPolicy) -> bool:
    """Whether a failed login the provider is still working on should be re-polled."""
    if job.status is not S.CREDENTIAL_FAILED or job.credential_verified_at is not None:
        return False
    if job.provider_index_id is None or today >= job.next_run_date:
        return False
    return _status_activity_aged(job, now, policy)


def is_stale(job: JobState, today: date, policy: JobPolicy) -> bool:
    if is_terminal(job.status):
        return False
    if job.job_type is JobType.CREDENTIAL_CHECK and job.status is S.CREDENTIAL_VERIFIED:
        return False
    return today > stale_cutoff(job, policy)


# ---------------------------------------------------------------------------
# Outcome functions
# ---------------------------------------------------------------------------


def _provider_fields(result: ProviderResult) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "provider_status_id": result.status_id,
        "provider_status_description": result.status_description,
    }
    # Keep a previously issued index id when the provider sends none.
    if result.index_id is not None:
        fields["provider_index_id"] = result.index_id
    return fields


def _failure(job: JobState, result: ProviderResult, now: datetime, policy: JobPolicy) -> dict[str, Any]:
    retry_count = job.retry_count + 1
    return {
        **_provider_fields(result),
        "error_message": result.error_message or result.status_description or "Provider call failed",
        "retry_count": retry_count,
        "next_attempt_at": durable_retry_at(now, retry_count, policy.backoff),
    }


def on_credential_result(job: JobState, result: ProviderResult, now: datetime, policy: JobPolicy) -> JobTransition:
    """Outcome of a login attempt (request type 1).

    A verified ``CREDENTIAL_CHECK`` job is done with its cycle, so its rule
    advances.
    """
    if result.is_accepted:
        return JobTransition(
            status=S.CREDENTIAL_VERIFIED,
            updates={
                **_provider_fields(result),
                "credential_verified_at": now,
                "error_message": None,
                "next_attempt_at": None,
            },
            advance_rule=job.job_type is JobType.CREDENTIAL_CHECK,
            label="verified",
        )
    return JobTransition(
        status=S.CREDENTIAL_FAILED,
        updates=_failure(job, result, now, policy),
        label="failed",
    )


def _final_outcome(result: ProviderResult, fields: dict[str, Any], now: datetime) -> JobTransition:
    """Terminal transition for a final provider code; every one advances the rule."""
    if result.status_id == status_codes.COMPLETE:
        return JobTransition(
            status=S.COMPLETED,
            updates={**fields, "scrape_completed_at": now, "error_message": None},
            advance_rule=True,
            label="completed",
        )
    if result.status_id == status_codes.NEEDS_HUMAN_REVIEW:
        return JobTransition(status=S.NEEDS_REVIEW, updates=fields, advance_rule=True, label="needs_review")
    return JobTransition(
        status=S.FAILED,
        updates={**fields, "error_message": result.status_description or result.error_message},
        advance_rule=True,
        label="failed",
    )


def on_scrape_result(job: JobState, result: ProviderResult, now: datetime, policy: JobPolicy) -> JobTransition:
    """Outcome of an invoice download request (request type 2).

    A final code in the answer settles the job at once: a final error is a
    permanent failure, so re-sending the billable request would not help.
    Timeouts arrive as failed results with ``transient`` set; they take the
    same durable-retry path as any other failed call.
    """
    if result.is_success:
        fields = {**_provider_fields(result), "next_attempt_at": None}
        if result.is_final:
            return _final_outcome(result, fields, now)
        # An index-only or empty acknowledgement still needs a status to be polled.
        if fields["provider_status_id"] is None:
            fields["provider_status_id"] = status_codes.INSERTED
        return JobTransition(
            status=S.SCRAPE_REQUESTED, updates={**fields, "error_message": None}, label="requested"
        )
    if result.transient:
        logger.info("Job %d scrape failed transiently: %s", job.id, result.error_message)
    return JobTransition(
        status=S.SCRAPE_FAILED,
        updates=_failure(job, result, now, policy),
        label="failed",
    )


def on_awaiting_scrape(job: JobState, now: datetime) -> JobTransition:
    """An earlier scrape request for *job* is unanswered; poll instead of re-sending."""
    return JobTransition(
        status=S.SCRAPE_REQUESTED,
        updates={
            "provider_status_id": job.provider_status_id or status_codes.INSERTED,
            "provider_status_description": "Awaiting result of an earlier request",
        },
        label="awaiting",
    )


def on_status_result(
    job: JobState,
    result: ProviderResult,
    today: date,
    now: datetime,
    previous_status: JobStatus | None = None,
) -> JobTransition:
    """Outcome of a status poll.

    Parameters
    ----------
    job:
        The job as it was before polling.
    result:
        Parsed provider status.
    today:
        Business date; a non-final status after ``period_end`` means no
        invoice was found.
    now:
        Wall-clock time for timestamps.
    previous_status:
        Status to revert to when nothing is final.  Defaults to
        ``ScrapeRequested`` (or ``job.status`` for credential follow-ups).
    """
    prior = previous_status or job.status
    if prior is S.STATUS_CHECK_IN_PROGRESS:
        prior = S.SCRAPE_REQUESTED
    credential_job = prior in (S.CREDENTIAL_CHECK_IN_PROGRESS, S.CREDENTIAL_FAILED)
    checked = {
        "last_status_check_at": now,
        "last_status_check_response": result.raw_response,
    }

    if not result.is_success:
        return JobTransition(
            status=prior,
            updates={**checked, "error_message": result.error_message},
            label="check_error",
        )

    fields = {**checked, **_provider_fields(result)}

    if credential_job:
        if result.status_id == status_codes.LOGIN_ATTEMPT_SUCCEEDED:
            return JobTransition(
                status=S.CREDENTIAL_VERIFIED,
                updates={**fields, "credential_verified_at": now, "error_message": None},
                advance_rule=job.job_type is JobType.CREDENTIAL_CHECK,
                label="credential_verified",
            )
        if result.is_error or result.status_id in status_codes.CREDENTIAL_ERROR_CODES:
            return JobTransition(
                status=S.CREDENTIAL_FAILED,
                updates={**fields, "error_message": result.status_description},
                label="credential_failed",
            )
        return JobTransition(status=prior, updates=fields, label="still_pending")

    if result.is_final:
        return _final_outcome(result, fields, now)

    if today > job.period_end:
        return JobTransition(
            status=S.NO_INVOICE_FOUND,
            updates={**fields, "scrape_completed_at": now},
            advance_rule=True,
            label="no_invoice",
        )
    return JobTransition(status=S.SCRAPE_REQUESTED, updates=fields, label="still_pending")


def on_stale(job: JobState, today: date) -> JobTransition:
    """Force-finalize a job that missed its processing window."""
    message = (
        f"Job missed processing window. Billing period ended {job.period_end.isoformat()}. "
        f"Finalized on {today.isoformat()}."
    )
    return JobTransition(
        status=S.CANCELLED,
        updates={"error_message": message},
        advance_rule=True,
        label="cancelled",
    )


def refire(job: JobState, now: datetime, *, force: bool = False) -> JobTransition:
    """Reset *job* to ``Pending`` for a manual re-run.

    With *force*, the ledger epoch moves to *now* so earlier provider
    results are no longer reused.
    """
    updates: dict[str, Any] = {
        "provider_status_id": None,
        "provider_status_description": None,
        "provider_index_id": None,
        "error_message": None,
        "credential_verified_at": None,
        "scrape_completed_at": None,
        "finalized_at": None,
        "retry_count": 0,
        "next_attempt_at": None,
    }
    if force:
        updates["ledger_epoch"] = now
    return JobTransition(status=S.PENDING, updates=updates, label="refired")
