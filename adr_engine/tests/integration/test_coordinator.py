"""Integration tests for adr_engine.orchestration.coordinator.

Full runs against a SQLite file database with the provider behind an
``httpx.MockTransport``.  A fixed clock makes eligibility windows
deterministic; tests move it forward explicitly.

Covers:
- A job's path from creation through scrape request to completion
- Run exclusivity, cancellation and orphan recovery
- Crash recovery through the idempotency ledger (no repeated billable call)
- Durable retry after a failed scrape
- Credential checks in the lead window
- Stale-job finalization
- Manual jobs and refires
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from adr_engine.config import load_settings
from adr_engine.errors import RunConflictError
from adr_engine.executor.retry import RetryConfig
from adr_engine.models.job import ExecutionOutcome, JobStatus
from adr_engine.models.run import Phase, PhaseFlags, RunStatus
from adr_engine.orchestration.coordinator import (
    CANCELLED_MESSAGE,
    INTERRUPTED_MESSAGE,
    OrchestrationCoordinator,
    RunHandle,
    StopSignal,
)
from adr_engine.provider.client import ProviderClient
from adr_engine.reporting.summary import RunNotification, RunReporter
from adr_engine.state.database import session_scope
from adr_engine.state.repository import AccountRuleRepository, JobExecutionRepository, JobRepository
from adr_engine.state.tables import AccountRuleTable, JobTable

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)
TODAY = NOW.date()


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider:
    """Records provider traffic and answers with configurable bodies."""

    def __init__(self) -> None:
        self.ingests: list[dict[str, Any]] = []
        self.polls: list[int] = []
        self.ingest_status = 200
        self.ingest_body: Any = {"StatusId": 1, "IndexId": 5000}
        self.status_body: Any = {"StatusId": 6}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/IngestAdrRequest"):
            self.ingests.append(json.loads(request.content))
            return httpx.Response(self.ingest_status, json=self.ingest_body)
        if "/GetRequestStatusByJobId/" in path:
            self.polls.append(int(path.rsplit("/", 1)[-1]))
            return httpx.Response(200, json=self.status_body)
        return httpx.Response(404)


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[RunNotification] = []

    async def send(self, notification: RunNotification) -> None:
        self.sent.append(notification)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def coordinator(session_factory, clock, fake_provider, sink) -> AsyncGenerator[OrchestrationCoordinator, None]:
    provider = ProviderClient(
        "http://provider.test/api/adr/",
        transport=httpx.MockTransport(fake_provider.handler),
        status_retry=RetryConfig(max_retries=0, base_delay=0.01, jitter=False),
    )
    coordinator = OrchestrationCoordinator(
        load_settings(max_parallel_requests=2, progress_flush_every=1),
        session_factory,
        provider,
        reporter=RunReporter(sink),
        clock=clock,
    )
    yield coordinator
    await coordinator.close()


async def _jobs(session_factory) -> list[JobTable]:
    async with session_scope(session_factory) as session:
        return await JobRepository(session).list_jobs()


async def _active_rule(session_factory, account_id: int) -> AccountRuleTable:
    async with session_scope(session_factory) as session:
        rule = await AccountRuleRepository(session).get_active(account_id)
    assert rule is not None
    return rule


# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------


class TestJobLifecycle:
    @pytest.mark.asyncio
    async def test_due_account_is_scraped_then_completed(
        self, coordinator, session_factory, seed, clock, fake_provider, sink
    ):
        account_id = await seed.account()

        summary = await coordinator.run(requested_by="test")
        assert summary.status is RunStatus.COMPLETED
        assert summary.results.sync is not None
        assert summary.results.job_creation is not None
        assert summary.results.job_creation.rules_backfilled == 1
        assert summary.results.job_creation.created == 1
        assert summary.results.scraping is not None
        assert summary.results.scraping.requested == 1
        assert summary.current_step == Phase.STALE_SWEEP.value

        (job,) = await _jobs(session_factory)
        assert job.status == JobStatus.SCRAPE_REQUESTED.value
        assert job.provider_status_id == 1
        assert job.provider_index_id == 5000
        assert len(fake_provider.ingests) == 1
        assert fake_provider.ingests[0]["ADRRequestTypeId"] == 2
        assert fake_provider.ingests[0]["JobId"] == job.id
        assert fake_provider.polls == []

        clock.advance(days=2)
        fake_provider.status_body = {"StatusId": 11, "IsFinal": True}
        summary = await coordinator.run(PhaseFlags.status_check_only(), requested_by="test")
        assert summary.results.job_creation is None
        assert summary.results.status_check is not None
        assert summary.results.status_check.completed == 1

        job = await seed.get_job(job.id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.scrape_completed_at == clock()
        assert job.finalized_at == clock()
        assert fake_provider.polls == [job.id]
        assert len(fake_provider.ingests) == 1

        rule = await _active_rule(session_factory, account_id)
        assert rule.next_run_date == date(2025, 4, 15)
        account = await seed.get_account(account_id)
        assert account.last_successful_download_date == TODAY
        assert sink.sent == []

    @pytest.mark.asyncio
    async def test_status_poll_waits_a_day(self, coordinator, session_factory, seed, clock, fake_provider):
        await seed.account()
        await coordinator.run()
        clock.advance(hours=6)
        await coordinator.run(PhaseFlags.status_check_only())
        assert fake_provider.polls == []

    @pytest.mark.asyncio
    async def test_credential_check_in_lead_window(self, coordinator, session_factory, seed, fake_provider):
        await seed.account(
            next_run_date=TODAY + timedelta(days=3),
            next_range_start=date(2025, 3, 13),
            next_range_end=date(2025, 3, 23),
        )
        summary = await coordinator.run()
        assert summary.results.credentials is not None
        assert summary.results.credentials.verified == 1

        (job,) = await _jobs(session_factory)
        assert job.status == JobStatus.CREDENTIAL_VERIFIED.value
        assert job.credential_verified_at == NOW
        assert [body["ADRRequestTypeId"] for body in fake_provider.ingests] == [1]
        assert fake_provider.ingests[0]["StartDate"] == "2025-03-13"

    @pytest.mark.asyncio
    async def test_failed_scrape_is_retried_durably(self, coordinator, session_factory, seed, clock, fake_provider, sink):
        await seed.account()
        fake_provider.ingest_status = 500
        fake_provider.ingest_body = {"Message": "provider down"}

        summary = await coordinator.run()
        assert summary.status is RunStatus.COMPLETED
        assert summary.results.scraping is not None
        assert summary.results.scraping.failed == 1

        (job,) = await _jobs(session_factory)
        assert job.status == JobStatus.SCRAPE_FAILED.value
        assert job.retry_count == 1
        assert job.next_attempt_at == NOW + timedelta(hours=1)
        assert len(sink.sent) == 1
        assert sink.sent[0].total_failures == 1

        await coordinator.run()
        assert len(fake_provider.ingests) == 1

        clock.advance(hours=1)
        fake_provider.ingest_status = 200
        fake_provider.ingest_body = {"StatusId": 1, "IndexId": 77}
        await coordinator.run()
        assert len(fake_provider.ingests) == 2
        job = await seed.get_job(job.id)
        assert job.status == JobStatus.SCRAPE_REQUESTED.value
        assert job.retry_count == 1

    @pytest.mark.asyncio
    async def test_final_error_answer_is_not_rescraped(
        self, coordinator, session_factory, seed, clock, fake_provider
    ):
        account_id = await seed.account()
        fake_provider.ingest_body = {"StatusId": 3, "IsError": True, "IsFinal": True}

        summary = await coordinator.run()
        assert summary.results.scraping is not None
        assert summary.results.scraping.failed == 1

        (job,) = await _jobs(session_factory)
        assert job.status == JobStatus.FAILED.value
        assert job.finalized_at == NOW
        assert job.retry_count == 0
        rule = await _active_rule(session_factory, account_id)
        assert rule.next_run_date == date(2025, 4, 15)

        for _ in range(3):
            clock.advance(days=2)
            await coordinator.run()
        assert len(fake_provider.ingests) == 1
        assert fake_provider.polls == []

    @pytest.mark.asyncio
    async def test_stale_job_cancelled_and_rule_advanced(self, coordinator, seed, fake_provider):
        account_id = await seed.account()
        old_run = TODAY - timedelta(days=91)
        rule_id = await seed.rule(
            account_id,
            next_run_date=old_run,
            next_range_start=old_run - timedelta(days=5),
            next_range_end=old_run + timedelta(days=5),
        )
        job_id = await seed.job(
            account_id,
            rule_id,
            next_run_date=old_run,
            period_start=old_run - timedelta(days=5),
            period_end=old_run + timedelta(days=5),
        )

        summary = await coordinator.run()
        assert summary.results.stale_sweep is not None
        assert summary.results.stale_sweep.cancelled == 1
        assert summary.results.stale_sweep.rules_advanced == 1

        job = await seed.get_job(job_id)
        assert job.status == JobStatus.CANCELLED.value
        assert job.error_message is not None
        assert job.error_message.startswith("Job missed processing window.")
        rule = await seed.get_rule(rule_id)
        assert rule.next_run_date == date(2025, 4, 14)
        assert fake_provider.ingests == []


# ---------------------------------------------------------------------------
# Idempotency across crashes
# ---------------------------------------------------------------------------


class TestCrashRecovery:
    @pytest.mark.asyncio
    async def test_unanswered_dispatch_is_not_repeated(self, coordinator, seed, fake_provider):
        account_id = await seed.account()
        rule_id = await seed.rule(account_id)
        job_id = await seed.job(account_id, rule_id, status=JobStatus.SCRAPE_IN_PROGRESS.value)
        await seed.execution(job_id, recorded_at=NOW - timedelta(hours=1))

        summary = await coordinator.run()
        assert summary.results.scraping is not None
        assert summary.results.scraping.awaiting == 1
        assert fake_provider.ingests == []

        job = await seed.get_job(job_id)
        assert job.status == JobStatus.SCRAPE_REQUESTED.value
        assert job.provider_status_id == 1

    @pytest.mark.asyncio
    async def test_expired_dispatch_is_resent(self, coordinator, seed, fake_provider):
        account_id = await seed.account()
        rule_id = await seed.rule(account_id)
        job_id = await seed.job(account_id, rule_id, status=JobStatus.SCRAPE_IN_PROGRESS.value)
        await seed.execution(job_id, recorded_at=NOW - timedelta(hours=25))

        await coordinator.run()
        assert len(fake_provider.ingests) == 1
        job = await seed.get_job(job_id)
        assert job.status == JobStatus.SCRAPE_REQUESTED.value

    @pytest.mark.asyncio
    async def test_recorded_success_is_reused(self, coordinator, session_factory, seed, fake_provider):
        account_id = await seed.account()
        rule_id = await seed.rule(account_id)
        job_id = await seed.job(account_id, rule_id)
        await seed.execution(job_id, recorded_at=NOW - timedelta(hours=2))
        await seed.execution(
            job_id,
            outcome=ExecutionOutcome.SUCCEEDED.value,
            http_status=200,
            provider_status_id=11,
            is_final=True,
            recorded_at=NOW - timedelta(hours=1),
        )

        summary = await coordinator.run()
        assert summary.results.scraping is not None
        assert summary.results.scraping.reused == 1
        assert fake_provider.ingests == []

        job = await seed.get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        rule = await seed.get_rule(rule_id)
        assert rule.next_run_date == date(2025, 4, 15)

    @pytest.mark.asyncio
    async def test_every_call_is_bracketed_in_the_ledger(self, coordinator, session_factory, seed):
        await seed.account()
        await coordinator.run()
        (job,) = await _jobs(session_factory)
        async with session_scope(session_factory) as session:
            rows = await JobExecutionRepository(session).list_for_job(job.id)
        assert [row.outcome for row in rows] == ["SUCCEEDED", "DISPATCHED"]
        assert rows[1].request_payload is not None
        assert rows[1].request_payload["JobId"] == job.id


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_only_one_active_run(self, coordinator):
        handle = await coordinator.start_run(requested_by="api")
        with pytest.raises(RunConflictError) as exc_info:
            await coordinator.start_run(requested_by="cli")
        assert exc_info.value.active_request_id == handle.request_id
        assert len(await coordinator.get_recent_runs()) == 1

        current = await coordinator.get_current_run()
        assert current is not None
        assert current.request_id == handle.request_id
        assert current.status is RunStatus.QUEUED

        summary = await coordinator.execute(handle)
        assert summary.status is RunStatus.COMPLETED
        assert summary.started_at == NOW
        assert await coordinator.get_current_run() is None

        second = await coordinator.start_run()
        assert second.request_id != handle.request_id

    @pytest.mark.asyncio
    async def test_simultaneous_starts_claim_one_slot(self, coordinator):
        outcomes = await asyncio.gather(
            coordinator.start_run(requested_by="api"),
            coordinator.start_run(requested_by="cli"),
            return_exceptions=True,
        )
        handles = [o for o in outcomes if isinstance(o, RunHandle)]
        conflicts = [o for o in outcomes if isinstance(o, RunConflictError)]
        assert len(handles) == 1
        assert len(conflicts) == 1
        assert conflicts[0].active_request_id == handles[0].request_id

        recent = await coordinator.get_recent_runs()
        assert [run.request_id for run in recent] == [handles[0].request_id]

    @pytest.mark.asyncio
    async def test_cancel_before_execution(self, coordinator, seed, fake_provider):
        await seed.account()
        handle = await coordinator.start_run()
        assert await coordinator.request_cancel(handle.request_id)

        summary = await coordinator.execute(handle)
        assert summary.status is RunStatus.CANCELLED
        assert summary.error_message == CANCELLED_MESSAGE
        assert summary.results.job_creation is None
        assert fake_provider.ingests == []

        assert not await coordinator.request_cancel(handle.request_id)
        await coordinator.start_run()

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, coordinator):
        with pytest.raises(LookupError):
            await coordinator.request_cancel("missing")

    @pytest.mark.asyncio
    async def test_orphaned_runs_are_interrupted(self, coordinator, clock, sink):
        handle = await coordinator.start_run(requested_by="api")

        ids = await coordinator.recover_orphaned_runs(clock() + timedelta(seconds=1))
        assert ids == [handle.request_id]

        run = await coordinator.get_run(handle.request_id)
        assert run is not None
        assert run.status is RunStatus.INTERRUPTED
        assert run.error_message == INTERRUPTED_MESSAGE
        assert len(sink.sent) == 1
        assert sink.sent[0].status is RunStatus.INTERRUPTED

        await coordinator.start_run()
        assert await coordinator.recover_orphaned_runs(clock() - timedelta(minutes=1)) == []

    @pytest.mark.asyncio
    async def test_results_are_persisted_on_the_run(self, coordinator, seed):
        await seed.account()
        summary = await coordinator.run()
        stored = await coordinator.get_run(summary.request_id)
        assert stored is not None
        assert stored.results.job_creation is not None
        assert stored.results.job_creation.created == 1
        assert stored.phase_flags == PhaseFlags()


class TestStopSignal:
    def test_deadline(self):
        signal = StopSignal(clock=lambda: NOW, deadline=NOW, max_minutes=5)
        assert signal.should_stop()
        assert signal.reason == "Run exceeded maximum duration of 5 minutes"

    def test_cancel_event(self):
        signal = StopSignal(clock=lambda: NOW, deadline=NOW + timedelta(hours=1), max_minutes=60)
        assert not signal.should_stop()
        signal.event.set()
        assert signal.should_stop()
        assert signal.reason == CANCELLED_MESSAGE


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


class TestOperatorActions:
    @pytest.mark.asyncio
    async def test_manual_job(self, coordinator, seed):
        account_id = await seed.account()
        job_id = await coordinator.create_manual_job(
            account_id, date(2025, 2, 1), date(2025, 2, 28), reason="Vendor re-issued invoice"
        )
        assert job_id is not None

        job = await seed.get_job(job_id)
        assert job.is_manual_request
        assert job.manual_request_reason == "Vendor re-issued invoice"
        assert job.next_run_date == TODAY
        assert job.status == JobStatus.PENDING.value

        duplicate = await coordinator.create_manual_job(account_id, date(2025, 2, 1), date(2025, 2, 28), reason="again")
        assert duplicate is None

    @pytest.mark.asyncio
    async def test_manual_job_validation(self, coordinator, seed):
        account_id = await seed.account()
        with pytest.raises(ValueError):
            await coordinator.create_manual_job(account_id, date(2025, 2, 28), date(2025, 2, 1), reason="x")
        with pytest.raises(LookupError):
            await coordinator.create_manual_job(999999, date(2025, 2, 1), date(2025, 2, 28), reason="x")
        deleted = await seed.account(is_deleted=True)
        with pytest.raises(LookupError):
            await coordinator.create_manual_job(deleted, date(2025, 2, 1), date(2025, 2, 28), reason="x")

    @pytest.mark.asyncio
    async def test_refire_resets_job(self, coordinator, seed):
        job_id = await seed.job(
            await seed.account(),
            status=JobStatus.FAILED.value,
            provider_status_id=14,
            retry_count=2,
            finalized_at=NOW - timedelta(days=1),
        )
        state = await coordinator.refire_job(job_id)
        assert state.status is JobStatus.PENDING
        assert state.retry_count == 0
        assert state.provider_status_id is None
        assert state.ledger_epoch is None

        job = await seed.get_job(job_id)
        assert job.finalized_at is None

    @pytest.mark.asyncio
    async def test_forced_refire_makes_a_fresh_call(self, coordinator, seed, fake_provider):
        job_id = await seed.job(await seed.account(), status=JobStatus.COMPLETED.value, provider_status_id=11)
        await seed.execution(
            job_id,
            outcome=ExecutionOutcome.SUCCEEDED.value,
            provider_status_id=11,
            is_final=True,
            recorded_at=NOW - timedelta(hours=1),
        )

        state = await coordinator.refire_job(job_id, force=True)
        assert state.ledger_epoch == NOW

        await coordinator.run()
        assert len(fake_provider.ingests) == 1
        job = await seed.get_job(job_id)
        assert job.status == JobStatus.SCRAPE_REQUESTED.value

    @pytest.mark.asyncio
    async def test_refire_unknown_job(self, coordinator):
        with pytest.raises(LookupError):
            await coordinator.refire_job(424242)

    @pytest.mark.asyncio
    async def test_refire_of_job_removed_mid_update(self, coordinator, seed, monkeypatch):
        job_id = await seed.job(await seed.account(), status=JobStatus.FAILED.value)
        original_get = JobRepository.get
        reads = 0

        async def get_then_vanish(self, job_id):
            nonlocal reads
            reads += 1
            return await original_get(self, job_id) if reads == 1 else None

        monkeypatch.setattr(JobRepository, "get", get_then_vanish)
        with pytest.raises(LookupError, match=f"Job {job_id} not found"):
            await coordinator.refire_job(job_id)
        monkeypatch.undo()

        job = await seed.get_job(job_id)
        assert job.status == JobStatus.FAILED.value


# ---------------------------------------------------------------------------
# Test mode
# ---------------------------------------------------------------------------


class TestTestModeCaps:
    @pytest.mark.asyncio
    async def test_scrapes_capped_to_lowest_job_ids(self, session_factory, seed, clock, fake_provider):
        provider = ProviderClient(
            "http://provider.test/api/adr/",
            transport=httpx.MockTransport(fake_provider.handler),
        )
        coordinator = OrchestrationCoordinator(
            load_settings(test_mode_enabled=True, test_mode_max_scraping_jobs=2),
            session_factory,
            provider,
            reporter=RunReporter(RecordingSink()),
            clock=clock,
        )
        try:
            for _ in range(3):
                await seed.account()
            summary = await coordinator.run()
        finally:
            await coordinator.close()

        assert summary.results.job_creation is not None
        assert summary.results.job_creation.created == 3
        assert summary.results.scraping is not None
        assert summary.results.scraping.requested == 2

        jobs = sorted(await _jobs(session_factory), key=lambda j: j.id)
        assert sorted(body["JobId"] for body in fake_provider.ingests) == [jobs[0].id, jobs[1].id]
        assert jobs[2].status == JobStatus.PENDING.value
