"""Tests for the run control endpoints (/api/v1/orchestration/runs)."""

from __future__ import annotations

import pytest

from adr_engine.models.run import RunStatus


class TestStartRun:
    @pytest.mark.asyncio
    async def test_accepted_and_executed(self, client, run_manager) -> None:
        response = await client.post("/api/v1/orchestration/runs", json={"requested_by": "ops"})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "Queued"
        assert body["phase_flags"]["run_sync"] is True

        summary = await run_manager.wait(body["request_id"])
        assert summary is not None
        assert summary.status is RunStatus.COMPLETED
        assert summary.requested_by == "ops"

    @pytest.mark.asyncio
    async def test_status_check_only(self, client, run_manager) -> None:
        response = await client.post("/api/v1/orchestration/runs", json={"only_status_check": True})

        assert response.status_code == 202
        flags = response.json()["phase_flags"]
        assert flags == {
            "run_sync": False,
            "run_create_jobs": False,
            "run_credential_verification": False,
            "run_scraping": False,
            "run_status_check": True,
        }
        await run_manager.wait(response.json()["request_id"])

    @pytest.mark.asyncio
    async def test_conflict_while_another_run_is_active(self, client, coordinator) -> None:
        """A second start is refused with the holder's request id."""
        handle = await coordinator.start_run(requested_by="cli")

        response = await client.post("/api/v1/orchestration/runs")

        assert response.status_code == 409
        assert response.json()["active_request_id"] == handle.request_id


class TestInspectRuns:
    @pytest.mark.asyncio
    async def test_current_when_idle(self, client) -> None:
        response = await client.get("/api/v1/orchestration/runs/current")
        assert response.status_code == 200
        assert response.json() is None

    @pytest.mark.asyncio
    async def test_current_and_by_id(self, client, coordinator) -> None:
        handle = await coordinator.start_run(requested_by="cli")

        current = await client.get("/api/v1/orchestration/runs/current")
        assert current.json()["request_id"] == handle.request_id
        assert current.json()["status"] == "Queued"

        single = await client.get(f"/api/v1/orchestration/runs/{handle.request_id}")
        assert single.status_code == 200
        assert single.json()["requested_by"] == "cli"

    @pytest.mark.asyncio
    async def test_recent_runs(self, client, coordinator) -> None:
        first = await coordinator.run(requested_by="a")
        second = await coordinator.run(requested_by="b")

        response = await client.get("/api/v1/orchestration/runs", params={"limit": 5})
        ids = [run["request_id"] for run in response.json()]
        assert set(ids) == {first.request_id, second.request_id}

    @pytest.mark.asyncio
    async def test_unknown_run(self, client) -> None:
        response = await client.get("/api/v1/orchestration/runs/nope")
        assert response.status_code == 404


class TestCancelRun:
    @pytest.mark.asyncio
    async def test_cancel_active_run(self, client, coordinator) -> None:
        handle = await coordinator.start_run()

        response = await client.post(f"/api/v1/orchestration/runs/{handle.request_id}/cancel")

        assert response.status_code == 200
        assert response.json() == {"request_id": handle.request_id, "cancel_requested": True}
        summary = await coordinator.execute(handle)
        assert summary.status is RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_run(self, client, coordinator) -> None:
        summary = await coordinator.run()
        response = await client.post(f"/api/v1/orchestration/runs/{summary.request_id}/cancel")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, client) -> None:
        response = await client.post("/api/v1/orchestration/runs/missing/cancel")
        assert response.status_code == 404
        assert "missing" in response.json()["detail"]
