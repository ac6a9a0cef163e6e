"""Request and response bodies of the ADR API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from adr_engine.models.job import JobStatus, JobType
from adr_engine.models.run import PhaseFlags, RunStatus


class StartRunRequest(BaseModel):
    """Body of ``POST /orchestration/runs``; every phase runs unless disabled."""

    requested_by: str = Field(default="api", max_length=256)
    only_status_check: bool = False
    run_sync: bool = True
    run_create_jobs: bool = True
    run_credential_verification: bool = True
    run_scraping: bool = True
    run_status_check: bool = True

    def phase_flags(self) -> PhaseFlags:
        if self.only_status_check:
            return PhaseFlags.status_check_only()
        return PhaseFlags(
            run_sync=self.run_sync,
            run_create_jobs=self.run_create_jobs,
            run_credential_verification=self.run_credential_verification,
            run_scraping=self.run_scraping,
            run_status_check=self.run_status_check,
        )


class StartRunResponse(BaseModel):
    request_id: str
    status: RunStatus = RunStatus.QUEUED
    phase_flags: PhaseFlags


class CancelRunResponse(BaseModel):
    request_id: str
    cancel_requested: bool


class ManualJobRequest(BaseModel):
    account_id: int
    period_start: date
    period_end: date
    reason: str = Field(..., min_length=1, max_length=2000)
    job_type: JobType = JobType.DOWNLOAD_INVOICE
    next_run_date: date | None = None

    @model_validator(mode="after")
    def _check_period(self) -> ManualJobRequest:
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class RefireRequest(BaseModel):
    force: bool = False


class JobResponse(BaseModel):
    """A job as exposed over the API."""

    model_config = {"from_attributes": True}

    id: int
    account_id: int
    rule_id: int | None = None
    job_type: JobType
    status: JobStatus
    vendor_code: str | None = None
    credential_id: int
    period_start: date
    period_end: date
    next_run_date: date
    is_missing: bool = False
    is_manual_request: bool = False
    manual_request_reason: str | None = None
    provider_status_id: int | None = None
    provider_status_description: str | None = None
    provider_index_id: int | None = None
    credential_verified_at: datetime | None = None
    scrape_completed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0
    next_attempt_at: datetime | None = None
    finalized_at: datetime | None = None
    updated_at: datetime | None = None


class ExecutionResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    run_request_id: str | None = None
    request_type: int
    outcome: str
    http_status: int | None = None
    provider_status_id: int | None = None
    provider_status_description: str | None = None
    is_error: bool = False
    is_final: bool = False
    index_id: int | None = None
    error_message: str | None = None
    recorded_at: datetime


class JobDetailResponse(JobResponse):
    executions: list[ExecutionResponse] = Field(default_factory=list)


class JobCountsResponse(BaseModel):
    counts: dict[str, Any]
    total: int
