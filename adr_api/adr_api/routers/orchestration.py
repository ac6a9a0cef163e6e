"""Run control endpoints: start, inspect and cancel orchestration runs."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, status

from adr_api.dependencies import CoordinatorDep, RunManagerDep
from adr_api.schemas import CancelRunResponse, StartRunRequest, StartRunResponse
from adr_engine.models.run import RunSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orchestration", tags=["orchestration"])


@router.post("/runs", status_code=status.HTTP_202_ACCEPTED)
async def start_run(manager: RunManagerDep, body: StartRunRequest | None = None) -> StartRunResponse:
    """Start a run in the background.

    Answers 409 (via the ``RunConflictError`` handler) when another run is
    queued or running.
    """
    body = body or StartRunRequest()
    handle = await manager.start(body.phase_flags(), body.requested_by)
    return StartRunResponse(request_id=handle.request_id, phase_flags=handle.phase_flags)


@router.get("/runs/current")
async def current_run(coordinator: CoordinatorDep) -> RunSummary | None:
    """The active run, or ``null`` when idle."""
    return await coordinator.get_current_run()


@router.get("/runs")
async def recent_runs(
    coordinator: CoordinatorDep,
    limit: int = Query(default=20, ge=1, le=200),
) -> list[RunSummary]:
    return await coordinator.get_recent_runs(limit)


@router.get("/runs/{request_id}")
async def get_run(request_id: str, coordinator: CoordinatorDep) -> RunSummary:
    summary = await coordinator.get_run(request_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Run {request_id} not found")
    return summary


@router.post("/runs/{request_id}/cancel")
async def cancel_run(request_id: str, coordinator: CoordinatorDep) -> CancelRunResponse:
    """Request cooperative cancellation; in-flight provider calls complete first."""
    flagged = await coordinator.request_cancel(request_id)
    if not flagged:
        raise HTTPException(status_code=409, detail=f"Run {request_id} is not active")
    return CancelRunResponse(request_id=request_id, cancel_requested=True)
