"""Orchestration run coordinator.

Owns the run lifecycle ``Queued -> Running -> Completed | Failed |
Cancelled`` (plus ``Interrupted`` from startup recovery) and is the only
component holding orchestration control flow.  Phases are sequential;
items within a phase run concurrently through the worker pool.

INVARIANT: At most one run per tenant is ``Queued`` or ``Running``.  The
guard is the persisted run slot, claimed with a compare-and-swap in the
same transaction that inserts the run, so it holds across processes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adr_engine.config import Settings
from adr_engine.errors import RunConflictError
from adr_engine.jobs import state_machine as sm
from adr_engine.models.account import HistoricalBillingStatus
from adr_engine.models.job import JobState, JobStatus, JobType
from adr_engine.models.run import (
    ACTIVE_RUN_STATUSES,
    PhaseFlags,
    RunResults,
    RunStatus,
    RunSummary,
)
from adr_engine.orchestration import phases
from adr_engine.orchestration.phases import ProgressTracker, RunContext
from adr_engine.provider.client import ProviderClient
from adr_engine.reporting.summary import RunReporter
from adr_engine.state.database import session_scope
from adr_engine.state.repository import (
    AccountRepository,
    AccountRuleRepository,
    JobRepository,
    OrchestrationRunRepository,
    RunSlotRepository,
)
from adr_engine.state.tables import OrchestrationRunTable
from adr_engine.sync.account_sync import AccountSource, HttpAccountSource

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = (
    "Application restarted while orchestration was running. "
    "Please manually restart the orchestration if needed."
)
CANCELLED_MESSAGE = "Cancelled by request"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RunHandle:
    """A run that holds the slot and is ready to execute."""

    request_id: str
    requested_by: str
    phase_flags: PhaseFlags


@dataclass
class StopSignal:
    """Cooperative stop: an operator cancel or the run-duration deadline."""

    clock: Callable[[], datetime]
    deadline: datetime
    max_minutes: int
    event: asyncio.Event = field(default_factory=asyncio.Event)
    reason: str | None = None

    def should_stop(self) -> bool:
        if self.event.is_set():
            self.reason = self.reason or CANCELLED_MESSAGE
            return True
        if self.clock() >= self.deadline:
            self.reason = f"Run exceeded maximum duration of {self.max_minutes} minutes"
            self.event.set()
            return True
        return False


def to_summary(row: OrchestrationRunTable) -> RunSummary:
    return RunSummary(
        request_id=row.request_id,
        requested_by=row.requested_by,
        status=RunStatus(row.status),
        requested_at=row.requested_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        current_step=row.current_step,
        current_progress=row.current_progress,
        total_items=row.total_items,
        error_message=row.error_message,
        phase_flags=PhaseFlags.model_validate(row.phase_flags or {}),
        results=RunResults.model_validate(row.results or {}),
    )


class OrchestrationCoordinator:
    """Start, execute, cancel and inspect orchestration runs.

    Parameters
    ----------
    settings:
        Engine configuration.
    session_factory:
        Factory for the short-lived sessions each phase and item opens.
    provider:
        Scraping provider client.
    account_source:
        Feed for the sync phase; ``None`` skips the sync.
    reporter:
        End-of-run reporter.  Built from *settings* when omitted.
    clock:
        Returns the current UTC time.  Tests inject a fixed clock.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        provider: ProviderClient,
        *,
        account_source: AccountSource | None = None,
        reporter: RunReporter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._provider = provider
        self._account_source = account_source
        self._reporter = reporter or RunReporter.from_settings(settings)
        self._clock = clock or _utcnow
        self._tenant_id = settings.tenant_id
        self._policy = sm.JobPolicy.from_settings(settings)
        self._signals: dict[str, StopSignal] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        **kwargs: Any,
    ) -> OrchestrationCoordinator:
        provider = kwargs.pop("provider", None) or ProviderClient.from_settings(settings)
        if "account_source" not in kwargs and settings.account_source_url:
            kwargs["account_source"] = HttpAccountSource(
                settings.account_source_url, settings.account_source_timeout_seconds
            )
        return cls(settings, session_factory, provider, **kwargs)

    async def close(self) -> None:
        await self._provider.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_run(
        self,
        phase_flags: PhaseFlags | None = None,
        requested_by: str = "system",
    ) -> RunHandle:
        """Insert a ``Queued`` run and claim the run slot for it.

        Raises
        ------
        RunConflictError
            When another run holds the slot.  Nothing is persisted.
        """
        flags = phase_flags or PhaseFlags()
        request_id = uuid.uuid4().hex
        async with session_scope(self._session_factory) as session:
            await OrchestrationRunRepository(session, self._tenant_id).create(
                request_id, requested_by, flags.model_dump(), self._clock()
            )
            slot = RunSlotRepository(session, self._tenant_id)
            if not await slot.claim(request_id, self._clock()):
                raise RunConflictError(await slot.get_active())
        logger.info(
            "Orchestration run %s queued by %s",
            request_id,
            requested_by,
            extra={"orchestration": {"request_id": request_id, "flags": flags.model_dump()}},
        )
        return RunHandle(request_id=request_id, requested_by=requested_by, phase_flags=flags)

    async def run(self, phase_flags: PhaseFlags | None = None, requested_by: str = "system") -> RunSummary:
        """Start and execute a run in the current task."""
        handle = await self.start_run(phase_flags, requested_by)
        return await self.execute(handle)

    async def execute(self, handle: RunHandle) -> RunSummary:
        """Run the enabled phases of *handle* to completion.

        Always ends by persisting the final status, releasing the slot and
        invoking the reporter, whatever happened in between.
        """
        request_id = handle.request_id
        log_extra = {"orchestration": {"request_id": request_id}}
        started = self._clock()
        signal = StopSignal(
            clock=self._clock,
            deadline=started + timedelta(minutes=self._settings.max_run_duration_minutes),
            max_minutes=self._settings.max_run_duration_minutes,
        )
        self._signals[request_id] = signal
        progress = ProgressTracker(
            request_id,
            self._session_factory,
            self._tenant_id,
            flush_every=self._settings.progress_flush_every,
            flush_seconds=self._settings.progress_flush_seconds,
            on_cancel_requested=signal.event.set,
        )
        ctx = RunContext(
            request_id=request_id,
            settings=self._settings,
            session_factory=self._session_factory,
            provider=self._provider,
            clock=self._clock,
            policy=self._policy,
            account_source=self._account_source,
            tenant_id=self._tenant_id,
            should_stop=signal.should_stop,
            progress=progress,
        )

        async with session_scope(self._session_factory) as session:
            await OrchestrationRunRepository(session, self._tenant_id).update(
                request_id, {"status": RunStatus.RUNNING.value, "started_at": started}
            )
        logger.info("Orchestration run %s started", request_id, extra=log_extra)

        flags = handle.phase_flags
        plan = (
            ("sync", flags.run_sync, phases.sync_accounts),
            ("job_creation", flags.run_create_jobs, phases.create_jobs),
            ("credentials", flags.run_credential_verification, phases.verify_credentials),
            ("scraping", flags.run_scraping, phases.request_scrapes),
            ("status_check", flags.run_status_check, phases.check_statuses),
            ("stale_sweep", flags.run_status_check, phases.sweep_stale_jobs),
        )

        results = RunResults()
        status = RunStatus.COMPLETED
        error_message: str | None = None
        try:
            for name, enabled, phase in plan:
                if not enabled:
                    continue
                await progress.flush()
                if signal.should_stop():
                    break
                setattr(results, name, await phase(ctx))
                await self._save_results(request_id, results)
            if signal.should_stop():
                status, error_message = RunStatus.CANCELLED, signal.reason
        except asyncio.CancelledError:
            status, error_message = RunStatus.CANCELLED, "Run task was cancelled"
            raise
        except Exception as exc:
            logger.exception("Orchestration run %s failed", request_id, extra=log_extra)
            status, error_message = RunStatus.FAILED, str(exc) or type(exc).__name__
        finally:
            self._signals.pop(request_id, None)
            summary = await self._finish(request_id, status, error_message, results)

        logger.info(
            "Orchestration run %s finished %s with %d failure(s)",
            request_id,
            status.value,
            results.total_failures,
            extra={"orchestration": {"request_id": request_id, "status": status.value}},
        )
        await self._reporter.report(summary)
        return summary

    async def _save_results(self, request_id: str, results: RunResults) -> None:
        async with session_scope(self._session_factory) as session:
            await OrchestrationRunRepository(session, self._tenant_id).update(
                request_id, {"results": results.model_dump(mode="json", exclude_none=True)}
            )

    async def _finish(
        self,
        request_id: str,
        status: RunStatus,
        error_message: str | None,
        results: RunResults,
    ) -> RunSummary:
        async with session_scope(self._session_factory) as session:
            runs = OrchestrationRunRepository(session, self._tenant_id)
            await runs.update(
                request_id,
                {
                    "status": status.value,
                    "completed_at": self._clock(),
                    "error_message": error_message,
                    "results": results.model_dump(mode="json", exclude_none=True),
                },
            )
            if not await RunSlotRepository(session, self._tenant_id).release(request_id):
                logger.warning("Run slot was not held by %s at finish", request_id)
            row = await runs.get(request_id)
            if row is None:
                raise LookupError(f"Orchestration run {request_id} not found")
            return to_summary(row)

    async def request_cancel(self, request_id: str) -> bool:
        """Ask an active run to stop after its in-flight items.

        Returns ``False`` when the run is no longer active.

        Raises
        ------
        LookupError
            If no run has *request_id*.
        """
        async with session_scope(self._session_factory) as session:
            runs = OrchestrationRunRepository(session, self._tenant_id)
            if await runs.get(request_id) is None:
                raise LookupError(f"Orchestration run {request_id} not found")
            flagged = await runs.request_cancel(request_id)
        signal = self._signals.get(request_id)
        if signal is not None:
            signal.event.set()
        if flagged:
            logger.info("Cancellation requested for run %s", request_id)
        return flagged

    async def recover_orphaned_runs(self, started_before: datetime | None = None) -> list[str]:
        """Mark runs left active by a previous process as ``Interrupted``.

        Runs executing in this process are left alone.  The run slot is
        released, and a single notification lists every interrupted run.
        Interrupted runs are never restarted automatically.
        """
        cutoff = started_before or self._clock()
        now = self._clock()
        interrupted: list[RunSummary] = []
        async with session_scope(self._session_factory) as session:
            runs = OrchestrationRunRepository(session, self._tenant_id)
            slot = RunSlotRepository(session, self._tenant_id)
            for row in await runs.list_orphaned(cutoff):
                if row.request_id in self._signals:
                    continue
                await runs.update(
                    row.request_id,
                    {
                        "status": RunStatus.INTERRUPTED.value,
                        "completed_at": now,
                        "error_message": INTERRUPTED_MESSAGE,
                    },
                )
                await slot.release(row.request_id)
                refreshed = await runs.get(row.request_id)
                if refreshed is not None:
                    interrupted.append(to_summary(refreshed))

            # A slot pointing at a run that is no longer active is stale as well.
            holder = await slot.get_active()
            if holder is not None and holder not in self._signals:
                held = await runs.get(holder)
                if held is None or RunStatus(held.status) not in ACTIVE_RUN_STATUSES:
                    logger.warning("Releasing run slot held by inactive run %s", holder)
                    await slot.release(holder)

        if not interrupted:
            return []
        ids = [summary.request_id for summary in interrupted]
        logger.warning("Marked %d orphaned run(s) Interrupted: %s", len(ids), ", ".join(ids))
        latest = interrupted[-1]
        if len(ids) > 1:
            latest = latest.model_copy(
                update={"error_message": f"{INTERRUPTED_MESSAGE} Interrupted runs: {', '.join(ids)}"}
            )
        await self._reporter.report(latest)
        return ids

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_current_run(self) -> RunSummary | None:
        async with session_scope(self._session_factory) as session:
            row = await OrchestrationRunRepository(session, self._tenant_id).get_current()
            return to_summary(row) if row is not None else None

    async def get_recent_runs(self, limit: int = 20) -> list[RunSummary]:
        async with session_scope(self._session_factory) as session:
            rows = await OrchestrationRunRepository(session, self._tenant_id).list_recent(limit)
            return [to_summary(row) for row in rows]

    async def get_run(self, request_id: str) -> RunSummary | None:
        async with session_scope(self._session_factory) as session:
            row = await OrchestrationRunRepository(session, self._tenant_id).get(request_id)
            return to_summary(row) if row is not None else None

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def create_manual_job(
        self,
        account_id: int,
        period_start: date,
        period_end: date,
        *,
        reason: str,
        job_type: JobType = JobType.DOWNLOAD_INVOICE,
        next_run_date: date | None = None,
    ) -> int | None:
        """Create an operator-requested job; ``None`` when the period already has one.

        Raises
        ------
        LookupError
            If the account does not exist or is deleted.
        ValueError
            If the period is empty or inverted.
        """
        if period_end < period_start:
            raise ValueError("period_end must not be before period_start")
        async with session_scope(self._session_factory) as session:
            account = await AccountRepository(session, self._tenant_id).get(account_id)
            if account is None or account.is_deleted:
                raise LookupError(f"Account {account_id} not found")
            rule = await AccountRuleRepository(session, self._tenant_id).get_active(account_id, job_type)
            job_id = await JobRepository(session, self._tenant_id).create_if_absent(
                {
                    "account_id": account.id,
                    "rule_id": rule.id if rule is not None else None,
                    "job_type": job_type.value,
                    "status": JobStatus.PENDING.value,
                    "vendor_code": account.vendor_code,
                    "credential_id": account.credential_id,
                    "period_type": account.period_type,
                    "period_start": period_start,
                    "period_end": period_end,
                    "next_run_date": next_run_date or self._clock().date(),
                    "is_missing": account.historical_billing_status == HistoricalBillingStatus.MISSING.value,
                    "is_manual_request": True,
                    "manual_request_reason": reason,
                }
            )
        if job_id is None:
            logger.info("Manual job for account %d %s..%s already exists", account_id, period_start, period_end)
        else:
            logger.info("Created manual job %d for account %d: %s", job_id, account_id, reason)
        return job_id

    async def refire_job(self, job_id: int, *, force: bool = False) -> JobState:
        """Reset a job to ``Pending`` so the next run processes it again.

        This is an operator override and bypasses the transition table.
        With *force* the job's ledger epoch moves to now, so earlier
        provider results are ignored and a fresh billable call is made.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            jobs = JobRepository(session, self._tenant_id)
            job = await jobs.get(job_id)
            if job is None or job.is_deleted:
                raise LookupError(f"Job {job_id} not found")
            transition = sm.refire(JobState.model_validate(job), now, force=force)
            await jobs.update(job_id, {**transition.values(now), "updated_at": now})
            refreshed = await jobs.get(job_id)
            if refreshed is None:
                raise LookupError(f"Job {job_id} not found")
            state = JobState.model_validate(refreshed)
        logger.info("Refired job %d (force=%s)", job_id, force)
        return state
