"""Idempotency ledger gating billable provider calls.

Every externally visible call is bracketed by two append-only rows in
``adr_job_executions``: a ``DISPATCHED`` row written *before* the request
leaves the process and a ``SUCCEEDED`` / ``FAILED`` row written after the
response is parsed.  Before a worker calls the provider it asks the ledger
what to do:

* ``PROCEED`` -- no usable history; make the call.
* ``REUSE``   -- a successful result is already on record (and, for login
  checks, still fresh); apply it without calling again.
* ``AWAIT``   -- a dispatch has no result yet and is inside the in-flight
  grace window.  The earlier call may already have billed, so do not repeat
  it.

Only rows recorded at or after the job's ``ledger_epoch`` count; a forced
refire moves the epoch forward instead of deleting history.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from adr_engine.models.job import ExecutionOutcome, JobState, RequestType
from adr_engine.provider.responses import ProviderResult, ResponseKind
from adr_engine.state.repository import JobExecutionRepository
from adr_engine.state.tables import JobExecutionTable

logger = logging.getLogger(__name__)


class LedgerAction(str, Enum):
    PROCEED = "proceed"
    REUSE = "reuse"
    AWAIT = "await"


class LedgerDecision(BaseModel):
    """What a worker should do about one billable request."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    action: LedgerAction
    execution_id: int | None = None
    reused_result: ProviderResult | None = None
    reason: str = ""


def result_from_execution(row: JobExecutionTable) -> ProviderResult:
    """Rebuild the provider result stored on a ``SUCCEEDED`` / ``FAILED`` row."""
    if row.outcome == ExecutionOutcome.FAILED.value:
        kind = ResponseKind.ERROR
    elif row.provider_status_id is not None:
        kind = ResponseKind.STRUCTURED
    elif row.index_id is not None:
        kind = ResponseKind.INDEX_ONLY
    else:
        kind = ResponseKind.EMPTY
    return ProviderResult(
        kind=kind,
        http_status=row.http_status,
        status_id=row.provider_status_id,
        status_description=row.provider_status_description,
        index_id=row.index_id,
        is_error=row.is_error,
        is_final=row.is_final,
        error_message=row.error_message,
        raw_response=row.raw_response,
        request_payload=row.request_payload,
    )


class IdempotencyLedger:
    """Reads and appends execution rows for one tenant.

    Parameters
    ----------
    session:
        Session the rows are read from and written to.  The caller commits.
    tenant_id:
        Tenant scope.
    credential_freshness_days:
        A successful login result older than this is not reused.
    in_flight_grace_hours:
        How long an unanswered dispatch blocks a repeat call.  After this
        the dispatch is presumed lost and the call is made again.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str = "default",
        *,
        credential_freshness_days: int = 7,
        in_flight_grace_hours: int = 24,
    ) -> None:
        self._executions = JobExecutionRepository(session, tenant_id)
        self._credential_freshness = timedelta(days=credential_freshness_days)
        self._grace = timedelta(hours=in_flight_grace_hours)

    async def check(self, job: JobState, request_type: RequestType, now: datetime) -> LedgerDecision:
        """Decide whether a type-1 or type-2 request for *job* may be sent.

        Only the newest row since the job's epoch matters: executions are
        written in dispatch/result pairs, so the newest row is either an
        unanswered dispatch or the result of the last call.
        """
        rows = await self._executions.list_for_job(
            job.id,
            request_type=int(request_type),
            since=job.ledger_epoch,
        )
        if not rows:
            return LedgerDecision(action=LedgerAction.PROCEED, reason="no prior execution")

        latest = rows[0]
        if latest.outcome == ExecutionOutcome.DISPATCHED.value:
            if latest.recorded_at >= now - self._grace:
                logger.info(
                    "Job %d has an unanswered %s dispatch from %s; not repeating it",
                    job.id,
                    request_type.name,
                    latest.recorded_at.isoformat(),
                )
                return LedgerDecision(
                    action=LedgerAction.AWAIT,
                    execution_id=latest.id,
                    reason="dispatch in flight",
                )
            logger.warning(
                "Job %d dispatch %d is past the in-flight grace window; presuming it lost",
                job.id,
                latest.id,
            )
            return LedgerDecision(action=LedgerAction.PROCEED, execution_id=latest.id, reason="dispatch expired")

        if latest.outcome == ExecutionOutcome.SUCCEEDED.value:
            if request_type is RequestType.ATTEMPT_LOGIN and latest.recorded_at < now - self._credential_freshness:
                return LedgerDecision(action=LedgerAction.PROCEED, execution_id=latest.id, reason="result stale")
            return LedgerDecision(
                action=LedgerAction.REUSE,
                execution_id=latest.id,
                reused_result=result_from_execution(latest),
                reason="prior success",
            )

        return LedgerDecision(action=LedgerAction.PROCEED, execution_id=latest.id, reason="prior failure")

    async def record_dispatch(
        self,
        job_id: int,
        request_type: RequestType,
        payload: dict[str, Any] | None,
        run_request_id: str | None = None,
        now: datetime | None = None,
    ) -> JobExecutionTable:
        """Append the ``DISPATCHED`` row.  Must be committed before the call is made."""
        values: dict[str, Any] = {
            "job_id": job_id,
            "run_request_id": run_request_id,
            "request_type": int(request_type),
            "outcome": ExecutionOutcome.DISPATCHED.value,
            "request_payload": payload,
        }
        if now is not None:
            values["recorded_at"] = now
        return await self._executions.append(values)

    async def record_result(
        self,
        job_id: int,
        request_type: RequestType,
        result: ProviderResult,
        run_request_id: str | None = None,
        now: datetime | None = None,
    ) -> JobExecutionTable:
        """Append the outcome row for a completed call (or status poll)."""
        outcome = ExecutionOutcome.SUCCEEDED if result.is_accepted else ExecutionOutcome.FAILED
        values: dict[str, Any] = {
            "job_id": job_id,
            "run_request_id": run_request_id,
            "request_type": int(request_type),
            "outcome": outcome.value,
            "http_status": result.http_status,
            "provider_status_id": result.status_id,
            "provider_status_description": result.status_description,
            "is_error": result.is_error,
            "is_final": result.is_final,
            "index_id": result.index_id,
            "error_message": result.error_message,
            "request_payload": result.request_payload,
            "raw_response": result.raw_response,
        }
        if now is not None:
            values["recorded_at"] = now
        return await self._executions.append(values)
