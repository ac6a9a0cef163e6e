"""Job inspection and operator actions (manual jobs, refire)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, status

from adr_api.dependencies import CoordinatorDep, SessionDep, TenantDep
from adr_api.schemas import (
    ExecutionResponse,
    JobCountsResponse,
    JobDetailResponse,
    JobResponse,
    ManualJobRequest,
    RefireRequest,
)
from adr_engine.models.job import JobStatus
from adr_engine.state.repository import JobExecutionRepository, JobRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("")
async def list_jobs(
    session: SessionDep,
    tenant_id: TenantDep,
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    account_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[JobResponse]:
    """Most recent jobs first, optionally filtered."""
    rows = await JobRepository(session, tenant_id).list_jobs(status=status_filter, account_id=account_id, limit=limit)
    return [JobResponse.model_validate(row) for row in rows]


@router.get("/counts")
async def job_counts(session: SessionDep, tenant_id: TenantDep) -> JobCountsResponse:
    counts = await JobRepository(session, tenant_id).count_by_status()
    return JobCountsResponse(counts=counts, total=sum(counts.values()))


@router.get("/{job_id}")
async def get_job(job_id: int, session: SessionDep, tenant_id: TenantDep) -> JobDetailResponse:
    """A job with its execution history, newest first."""
    row = await JobRepository(session, tenant_id).get(job_id)
    if row is None or row.is_deleted:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    executions = await JobExecutionRepository(session, tenant_id).list_for_job(job_id)
    return JobDetailResponse(
        **JobResponse.model_validate(row).model_dump(),
        executions=[ExecutionResponse.model_validate(e) for e in executions],
    )


@router.post("/manual", status_code=status.HTTP_201_CREATED)
async def create_manual_job(body: ManualJobRequest, coordinator: CoordinatorDep) -> dict[str, int]:
    """Create an operator-requested job; 409 when the period already has one."""
    job_id = await coordinator.create_manual_job(
        body.account_id,
        body.period_start,
        body.period_end,
        reason=body.reason,
        job_type=body.job_type,
        next_run_date=body.next_run_date,
    )
    if job_id is None:
        raise HTTPException(status_code=409, detail="A job for this account and period already exists")
    return {"job_id": job_id}


@router.post("/{job_id}/refire")
async def refire_job(job_id: int, coordinator: CoordinatorDep, body: RefireRequest | None = None) -> dict[str, object]:
    """Reset a job to Pending; ``force`` also discards earlier provider results."""
    force = body.force if body is not None else False
    state = await coordinator.refire_job(job_id, force=force)
    return {"job_id": state.id, "status": state.status.value, "force": force}
