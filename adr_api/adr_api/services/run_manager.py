"""Starts orchestration runs as background tasks of the API process.

``POST /orchestration/runs`` must answer immediately with the run id, so
the claim happens synchronously (a conflict is reported to the caller) and
execution continues in an ``asyncio`` task owned by this manager.
"""

from __future__ import annotations

import asyncio
import logging

from adr_engine.models.run import PhaseFlags, RunSummary
from adr_engine.orchestration.coordinator import OrchestrationCoordinator, RunHandle

logger = logging.getLogger(__name__)


class RunManager:
    """Owns the tasks of runs started through the API or the scheduler.

    Parameters
    ----------
    coordinator:
        The engine coordinator that claims and executes runs.
    """

    def __init__(self, coordinator: OrchestrationCoordinator) -> None:
        self._coordinator = coordinator
        self._tasks: dict[str, asyncio.Task[RunSummary]] = {}

    @property
    def coordinator(self) -> OrchestrationCoordinator:
        return self._coordinator

    @property
    def active_request_ids(self) -> list[str]:
        return [request_id for request_id, task in self._tasks.items() if not task.done()]

    async def start(self, phase_flags: PhaseFlags | None = None, requested_by: str = "api") -> RunHandle:
        """Claim the run slot and execute the run in the background.

        Raises
        ------
        RunConflictError
            When another run is already active.
        """
        handle = await self._coordinator.start_run(phase_flags, requested_by)
        task = asyncio.create_task(self._coordinator.execute(handle), name=f"adr-run-{handle.request_id}")
        self._tasks[handle.request_id] = task
        task.add_done_callback(lambda t, rid=handle.request_id: self._on_done(rid, t))
        return handle

    def _on_done(self, request_id: str, task: asyncio.Task[RunSummary]) -> None:
        self._tasks.pop(request_id, None)
        if task.cancelled():
            logger.warning("Run task %s was cancelled", request_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Run task %s raised: %s", request_id, exc, exc_info=exc)

    async def wait(self, request_id: str) -> RunSummary | None:
        task = self._tasks.get(request_id)
        if task is None:
            return await self._coordinator.get_run(request_id)
        return await task

    async def shutdown(self, grace_seconds: float = 30.0) -> None:
        """Ask active runs to stop, then cancel whatever outlives the grace period."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        for request_id in self.active_request_ids:
            await self._coordinator.request_cancel(request_id)
        done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Run manager stopped: %d finished, %d cancelled", len(done), len(pending))
