"""Unit tests for adr_engine.archival."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from adr_engine.archival import ArchiveManager, RetentionPolicy, months_before
from adr_engine.config import load_settings
from adr_engine.models.job import ExecutionOutcome, JobStatus
from adr_engine.state.repository import ArchiveRepository, JobExecutionRepository, JobRepository

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


class TestMonthsBefore:
    def test_keeps_time_of_day(self):
        assert months_before(NOW, 12) == datetime(2024, 3, 15, 12, 0, tzinfo=UTC)

    def test_clamps_to_month_end(self):
        assert months_before(datetime(2025, 3, 31, tzinfo=UTC), 1) == datetime(2025, 2, 28, tzinfo=UTC)


class TestRetentionPolicy:
    def test_from_settings(self):
        policy = RetentionPolicy.from_settings(load_settings(job_retention_months=6, execution_retention_months=3))
        assert policy == RetentionPolicy(job_retention_months=6, execution_retention_months=3)


class TestArchiveManager:
    @pytest.mark.asyncio
    async def test_moves_expired_rows_only(self, session, seed):
        account_id = await seed.account()
        old_job = await seed.job(
            account_id,
            status=JobStatus.COMPLETED.value,
            period_start=date(2023, 12, 10),
            period_end=date(2023, 12, 20),
            next_run_date=date(2023, 12, 15),
            finalized_at=NOW - timedelta(days=420),
        )
        recent_job = await seed.job(
            account_id,
            status=JobStatus.COMPLETED.value,
            period_start=date(2025, 1, 10),
            period_end=date(2025, 1, 20),
            next_run_date=date(2025, 1, 15),
            finalized_at=NOW - timedelta(days=60),
        )
        open_job = await seed.job(account_id)

        await seed.execution(old_job, recorded_at=NOW - timedelta(days=425))
        await seed.execution(
            old_job,
            outcome=ExecutionOutcome.SUCCEEDED.value,
            request_payload={"JobId": old_job},
            recorded_at=NOW - timedelta(days=425),
        )
        await seed.execution(recent_job, recorded_at=NOW - timedelta(days=400))
        kept_recent = await seed.execution(recent_job, recorded_at=NOW - timedelta(days=61))
        kept_open = await seed.execution(open_job, recorded_at=NOW - timedelta(days=500))

        manager = ArchiveManager(session, policy=RetentionPolicy(12, 12), batch_size=1)
        result = await manager.run(NOW)

        assert result.jobs_archived == 1
        assert result.executions_archived == 3

        jobs = JobRepository(session)
        assert await jobs.get(old_job) is None
        assert await jobs.get(recent_job) is not None

        executions = JobExecutionRepository(session)
        assert [row.id for row in await executions.list_for_job(recent_job)] == [kept_recent]
        assert [row.id for row in await executions.list_for_job(open_job)] == [kept_open]

        archive = ArchiveRepository(session)
        assert await archive.count_jobs() == 1
        assert await archive.count_executions() == 3

    @pytest.mark.asyncio
    async def test_nothing_to_archive(self, session, seed):
        await seed.job(await seed.account())
        result = await ArchiveManager(session).run(NOW)
        assert (result.jobs_archived, result.executions_archived) == (0, 0)
