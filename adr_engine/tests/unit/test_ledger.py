"""Unit tests for adr_engine.ledger."""

from __future__ import annotations

import json
from datetime import UTC, date, datetime, timedelta

import pytest

from adr_engine.ledger import IdempotencyLedger, LedgerAction, result_from_execution
from adr_engine.models.job import ExecutionOutcome, JobState, JobStatus, RequestType
from adr_engine.provider.responses import ResponseKind, parse_response
from adr_engine.state.repository import JobExecutionRepository

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


def _state(job_id: int, **overrides) -> JobState:
    values = {
        "id": job_id,
        "status": JobStatus.SCRAPE_IN_PROGRESS,
        "account_id": 1,
        "next_run_date": date(2025, 3, 15),
        "period_start": date(2025, 3, 10),
        "period_end": date(2025, 3, 20),
    }
    values.update(overrides)
    return JobState(**values)


@pytest.fixture
def ledger(session) -> IdempotencyLedger:
    return IdempotencyLedger(session)


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


class TestCheck:
    @pytest.mark.asyncio
    async def test_no_history_proceeds(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        decision = await ledger.check(_state(job_id), RequestType.DOWNLOAD_INVOICE, NOW)
        assert decision.action is LedgerAction.PROCEED
        assert decision.reason == "no prior execution"
        assert decision.execution_id is None

    @pytest.mark.asyncio
    async def test_recent_dispatch_awaits(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        execution_id = await seed.execution(job_id, recorded_at=NOW - timedelta(hours=1))
        decision = await ledger.check(_state(job_id), RequestType.DOWNLOAD_INVOICE, NOW)
        assert decision.action is LedgerAction.AWAIT
        assert decision.execution_id == execution_id

    @pytest.mark.asyncio
    async def test_expired_dispatch_proceeds(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        await seed.execution(job_id, recorded_at=NOW - timedelta(hours=25))
        decision = await ledger.check(_state(job_id), RequestType.DOWNLOAD_INVOICE, NOW)
        assert decision.action is LedgerAction.PROCEED
        assert decision.reason == "dispatch expired"

    @pytest.mark.asyncio
    async def test_prior_success_is_reused(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        await seed.execution(job_id, recorded_at=NOW - timedelta(hours=3))
        await seed.execution(
            job_id,
            outcome=ExecutionOutcome.SUCCEEDED.value,
            provider_status_id=1,
            provider_status_description="Inserted",
            index_id=99,
            http_status=200,
            recorded_at=NOW - timedelta(hours=2),
        )
        decision = await ledger.check(_state(job_id), RequestType.DOWNLOAD_INVOICE, NOW)
        assert decision.action is LedgerAction.REUSE
        assert decision.reused_result is not None
        assert decision.reused_result.status_id == 1
        assert decision.reused_result.index_id == 99

    @pytest.mark.asyncio
    async def test_prior_failure_proceeds(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        await seed.execution(
            job_id,
            outcome=ExecutionOutcome.FAILED.value,
            http_status=500,
            recorded_at=NOW - timedelta(hours=2),
        )
        decision = await ledger.check(_state(job_id), RequestType.DOWNLOAD_INVOICE, NOW)
        assert decision.action is LedgerAction.PROCEED
        assert decision.reason == "prior failure"

    @pytest.mark.asyncio
    async def test_stale_login_result_proceeds(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        await seed.execution(
            job_id,
            request_type=int(RequestType.ATTEMPT_LOGIN),
            outcome=ExecutionOutcome.SUCCEEDED.value,
            recorded_at=NOW - timedelta(days=8),
        )
        decision = await ledger.check(_state(job_id), RequestType.ATTEMPT_LOGIN, NOW)
        assert decision.action is LedgerAction.PROCEED
        assert decision.reason == "result stale"

    @pytest.mark.asyncio
    async def test_fresh_login_result_reused(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        await seed.execution(
            job_id,
            request_type=int(RequestType.ATTEMPT_LOGIN),
            outcome=ExecutionOutcome.SUCCEEDED.value,
            recorded_at=NOW - timedelta(days=2),
        )
        decision = await ledger.check(_state(job_id), RequestType.ATTEMPT_LOGIN, NOW)
        assert decision.action is LedgerAction.REUSE

    @pytest.mark.asyncio
    async def test_request_types_are_independent(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        await seed.execution(
            job_id,
            request_type=int(RequestType.ATTEMPT_LOGIN),
            recorded_at=NOW - timedelta(minutes=5),
        )
        decision = await ledger.check(_state(job_id), RequestType.DOWNLOAD_INVOICE, NOW)
        assert decision.action is LedgerAction.PROCEED

    @pytest.mark.asyncio
    async def test_epoch_hides_earlier_history(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        await seed.execution(
            job_id,
            outcome=ExecutionOutcome.SUCCEEDED.value,
            provider_status_id=1,
            recorded_at=NOW - timedelta(hours=2),
        )
        state = _state(job_id, ledger_epoch=NOW - timedelta(hours=1))
        decision = await ledger.check(state, RequestType.DOWNLOAD_INVOICE, NOW)
        assert decision.action is LedgerAction.PROCEED
        assert decision.reason == "no prior execution"


# ---------------------------------------------------------------------------
# record_dispatch / record_result
# ---------------------------------------------------------------------------


class TestRecording:
    @pytest.mark.asyncio
    async def test_dispatch_then_accepted_result(self, session, ledger, seed):
        job_id = await seed.job(await seed.account())
        await ledger.record_dispatch(job_id, RequestType.DOWNLOAD_INVOICE, {"JobId": job_id}, "run-1", NOW)
        result = parse_response(200, json.dumps({"StatusId": 1, "IndexId": 5}))
        row = await ledger.record_result(job_id, RequestType.DOWNLOAD_INVOICE, result, "run-1", NOW)
        assert row.outcome == ExecutionOutcome.SUCCEEDED.value
        assert row.index_id == 5

        rows = await JobExecutionRepository(session).list_for_job(job_id)
        assert [r.outcome for r in rows] == ["SUCCEEDED", "DISPATCHED"]
        assert rows[1].request_payload == {"JobId": job_id}
        assert all(r.run_request_id == "run-1" for r in rows)

    @pytest.mark.asyncio
    async def test_rejected_result_recorded_as_failed(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        result = parse_response(500, "boom")
        row = await ledger.record_result(job_id, RequestType.DOWNLOAD_INVOICE, result, now=NOW)
        assert row.outcome == ExecutionOutcome.FAILED.value
        assert row.http_status == 500


# ---------------------------------------------------------------------------
# result_from_execution
# ---------------------------------------------------------------------------


class TestResultFromExecution:
    @pytest.mark.asyncio
    async def test_round_trips_structured_result(self, session, ledger, seed):
        job_id = await seed.job(await seed.account())
        original = parse_response(200, json.dumps({"StatusId": 11, "IsFinal": True}))
        row = await ledger.record_result(job_id, RequestType.STATUS_CHECK, original, now=NOW)
        rebuilt = result_from_execution(row)
        assert rebuilt.kind is ResponseKind.STRUCTURED
        assert rebuilt.status_id == 11
        assert rebuilt.is_final

    @pytest.mark.asyncio
    async def test_index_only_row(self, ledger, seed):
        job_id = await seed.job(await seed.account())
        row = await ledger.record_result(job_id, RequestType.DOWNLOAD_INVOICE, parse_response(200, "77"), now=NOW)
        assert result_from_execution(row).kind is ResponseKind.INDEX_ONLY
