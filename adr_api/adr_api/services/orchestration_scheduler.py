"""Background trigger that starts full orchestration runs on a schedule.

Runs as an ``asyncio`` background task, checking every ``poll_seconds``
whether the next scheduled time has passed.  Only the cron shapes an
orchestration cadence needs are accepted (hourly, daily, weekly), so no
cron library is pulled in.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import InterfaceError, OperationalError

from adr_engine.errors import RunConflictError

if TYPE_CHECKING:
    from adr_api.services.run_manager import RunManager

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_SUPPORTED = "'M * * * *' (hourly), 'M H * * *' (daily), 'M H * * D' (weekly)"


def _field(raw: str, maximum: int, name: str) -> int:
    value = int(raw)
    if value > maximum:
        raise ValueError(f"Cron {name} out of range: {value}")
    return value


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Return the first scheduled time strictly after *from_time*.

    Accepted shapes, with day-of-week counted from Sunday = 0:

    * ``M * * * *``: every hour at minute *M*;
    * ``M H * * *``: daily at *H*:*M*;
    * ``M H * * D``: weekly on day *D* at *H*:*M*.

    Raises
    ------
    ValueError
        If the expression has another shape or a field is out of range.
    """
    fields = cron_expression.split()
    shape_ok = (
        len(fields) == 5
        and fields[0].isdigit()
        and fields[2:4] == ["*", "*"]
        and (fields[1].isdigit() or fields[1] == "*")
        and (fields[4].isdigit() or fields[4] == "*")
        and not (fields[1] == "*" and fields[4] != "*")
    )
    if not shape_ok:
        raise ValueError(f"Unsupported cron expression: '{cron_expression}'. Supported patterns: {_SUPPORTED}.")

    minute_raw, hour_raw, _, _, dow_raw = fields
    base = from_time.replace(minute=_field(minute_raw, 59, "minute"), second=0, microsecond=0)

    if hour_raw == "*":
        return base if base > from_time else base + timedelta(hours=1)

    candidate = base.replace(hour=_field(hour_raw, 23, "hour"))
    if dow_raw == "*":
        return candidate if candidate > from_time else candidate + timedelta(days=1)

    # Cron counts Sunday=0; Python's weekday() counts Monday=0.
    target = (_field(dow_raw, 6, "day-of-week") - 1) % 7
    days_ahead = (target - candidate.weekday()) % 7
    if days_ahead == 0 and candidate <= from_time:
        days_ahead = 7
    return candidate + timedelta(days=days_ahead)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class OrchestrationScheduler:
    """AsyncIO background task that starts a full run when one is due.

    A due tick that finds another run active is skipped, not queued; the
    next tick is computed either way.

    Parameters
    ----------
    run_manager:
        Used to start runs in the background.
    cron_expression:
        Schedule in the supported cron subset.
    poll_seconds:
        Sleep between checks.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        run_manager: RunManager,
        cron_expression: str,
        *,
        poll_seconds: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._run_manager = run_manager
        self._cron = cron_expression
        self._poll_seconds = poll_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._next_run_at = compute_next_run(cron_expression, self._clock())
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def next_run_at(self) -> datetime:
        return self._next_run_at

    async def start(self) -> None:
        if self._running:
            logger.warning("OrchestrationScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("OrchestrationScheduler started; next run at %s", self._next_run_at.isoformat())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("OrchestrationScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("OrchestrationScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("OrchestrationScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._poll_seconds)

    async def tick(self) -> str | None:
        """Start a run if one is due.  Returns the new run id, if any."""
        now = self._clock()
        if now < self._next_run_at:
            return None
        self._next_run_at = compute_next_run(self._cron, now)
        try:
            handle = await self._run_manager.start(requested_by="scheduler")
        except RunConflictError as exc:
            logger.info(
                "Scheduled run skipped: %s; next run at %s",
                exc,
                self._next_run_at.isoformat(),
            )
            return None
        logger.info("Scheduled run %s started; next run at %s", handle.request_id, self._next_run_at.isoformat())
        return handle.request_id
