"""Retention of finalized jobs and their executions.

- **Executions**: rows of finalized jobs older than
  ``execution_retention_months`` move to ``adr_job_executions_archive``.
- **Jobs**: jobs finalized more than ``job_retention_months`` ago move to
  ``adr_jobs_archive`` together with any executions they still have.
- **Runs**: kept indefinitely for audit.

Archived rows keep their primary keys and a full JSON copy of the live row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from adr_engine.billing.calculator import add_months
from adr_engine.config import Settings
from adr_engine.state.repository import ArchiveRepository, JobExecutionRepository, JobRepository

logger = logging.getLogger(__name__)

_DEFAULT_BATCH = 500


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention windows in calendar months."""

    job_retention_months: int = 12
    execution_retention_months: int = 12

    @classmethod
    def from_settings(cls, settings: Settings) -> RetentionPolicy:
        return cls(
            job_retention_months=settings.job_retention_months,
            execution_retention_months=settings.execution_retention_months,
        )


@dataclass
class ArchiveResult:
    jobs_archived: int = 0
    executions_archived: int = 0


def months_before(now: datetime, months: int) -> datetime:
    shifted = add_months(now.date(), -months)
    return now.replace(year=shifted.year, month=shifted.month, day=shifted.day)


def _row_to_dict(row: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for attr in inspect(row).mapper.column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        out[attr.key] = value
    return out


class ArchiveManager:
    """Moves expired rows from the live tables to the archive tables.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    tenant_id:
        Tenant to scope operations to.
    policy:
        Retention windows to apply.
    batch_size:
        Rows handled per query.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str = "default",
        policy: RetentionPolicy | None = None,
        *,
        batch_size: int = _DEFAULT_BATCH,
    ) -> None:
        self._jobs = JobRepository(session, tenant_id)
        self._executions = JobExecutionRepository(session, tenant_id)
        self._archive = ArchiveRepository(session, tenant_id)
        self._policy = policy or RetentionPolicy()
        self._batch_size = batch_size

    async def archive_executions(self, now: datetime) -> int:
        """Archive executions of finalized jobs past the execution window."""
        cutoff = months_before(now, self._policy.execution_retention_months)
        total = 0
        while True:
            rows = await self._executions.recorded_before_for_terminal_jobs(cutoff, self._batch_size)
            if not rows:
                break
            await self._archive.add_executions(_row_to_dict(row) for row in rows)
            total += await self._executions.delete_many([row.id for row in rows])
        if total:
            logger.info("Archived %d job executions (cutoff: %s)", total, cutoff.isoformat())
        return total

    async def archive_jobs(self, now: datetime) -> tuple[int, int]:
        """Archive jobs finalized before the job window, with their executions.

        Returns ``(jobs, executions)`` archived.
        """
        cutoff = months_before(now, self._policy.job_retention_months)
        jobs_total = executions_total = 0
        while True:
            jobs = await self._jobs.finalized_before(cutoff, self._batch_size)
            if not jobs:
                break
            job_ids = [job.id for job in jobs]
            executions = await self._executions.list_for_jobs(job_ids)
            await self._archive.add_executions(_row_to_dict(row) for row in executions)
            await self._archive.add_jobs(_row_to_dict(job) for job in jobs)
            executions_total += await self._executions.delete_many([row.id for row in executions])
            jobs_total += await self._jobs.delete_many(job_ids)
        if jobs_total:
            logger.info(
                "Archived %d jobs and %d executions (cutoff: %s)",
                jobs_total,
                executions_total,
                cutoff.isoformat(),
            )
        return jobs_total, executions_total

    async def run(self, now: datetime) -> ArchiveResult:
        executions = await self.archive_executions(now)
        jobs, job_executions = await self.archive_jobs(now)
        return ArchiveResult(jobs_archived=jobs, executions_archived=executions + job_executions)
