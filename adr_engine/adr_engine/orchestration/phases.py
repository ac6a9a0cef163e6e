"""The five orchestration phases plus the stale-job sweep.

Each phase selects its work items, then processes them through
:func:`~adr_engine.orchestration.worker_pool.run_bounded`.  Every item runs
in its own sessions and follows the same shape for billable calls:

1. Session A: reload the job, re-check its guard, consult the ledger, mark
   the ``*InProgress`` state and append the ``DISPATCHED`` row; commit.
2. Call the provider outside any transaction.
3. Session B: append the result row and apply the state machine's
   transition with a compare-and-set on the expected status; commit.

A crash between 1 and 3 leaves the job ``*InProgress`` with an unanswered
dispatch, which the next run re-selects and the ledger turns into ``AWAIT``
instead of a second billable call.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adr_engine.config import Settings
from adr_engine.errors import AccountSourceError
from adr_engine.jobs import state_machine as sm
from adr_engine.ledger import IdempotencyLedger, LedgerAction
from adr_engine.models.account import ExclusionType, HistoricalBillingStatus
from adr_engine.models.job import JobState, JobStatus, JobType, RequestType
from adr_engine.models.run import (
    CredentialVerificationResult,
    JobCreationResult,
    Phase,
    PhaseResult,
    ScrapeResult,
    StaleJobResult,
    StatusCheckResult,
    SyncResult,
)
from adr_engine.orchestration.worker_pool import ItemOutcome, run_bounded
from adr_engine.provider.client import AdrRequest, ProviderClient
from adr_engine.scheduling.rule_scheduler import BlacklistMatcher, RuleScheduler
from adr_engine.state.database import session_scope
from adr_engine.state.repository import (
    AccountRepository,
    AccountRuleRepository,
    JobRepository,
    OrchestrationRunRepository,
)
from adr_engine.state.tables import AccountTable, JobTable
from adr_engine.sync.account_sync import AccountSource, AccountSyncService

logger = logging.getLogger(__name__)

S = JobStatus


# ---------------------------------------------------------------------------
# Run context and progress
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """Everything a phase needs; shared read-only across workers."""

    request_id: str
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    provider: ProviderClient
    clock: Callable[[], datetime]
    policy: sm.JobPolicy
    account_source: AccountSource | None = None
    tenant_id: str = "default"
    should_stop: Callable[[], bool] = lambda: False
    progress: ProgressTracker | None = None

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        return self.clock().date()

    def ledger(self, session: AsyncSession) -> IdempotencyLedger:
        return IdempotencyLedger(
            session,
            self.tenant_id,
            credential_freshness_days=self.settings.credential_check_freshness_days,
            in_flight_grace_hours=self.settings.in_flight_grace_hours,
        )

    def log_extra(self, phase: Phase) -> dict[str, Any]:
        return {"orchestration": {"request_id": self.request_id, "phase": phase.name}}


@dataclass
class ProgressTracker:
    """Writes ``current_step`` / ``current_progress`` / ``total_items`` to the run row.

    Flushes happen at phase boundaries and after every ``flush_every`` items
    or ``flush_seconds`` seconds, whichever comes first.  Each flush also
    reads the run's ``cancel_requested`` flag.
    """

    request_id: str
    session_factory: async_sessionmaker[AsyncSession]
    tenant_id: str = "default"
    flush_every: int = 25
    flush_seconds: float = 5.0
    on_cancel_requested: Callable[[], None] | None = None
    step: str | None = None
    processed: int = 0
    total: int = 0
    _unflushed: int = field(default=0, repr=False)
    _last_flush: float = field(default_factory=time.monotonic, repr=False)

    async def start_phase(self, step: str, total: int) -> None:
        self.step, self.processed, self.total = step, 0, total
        await self.flush()

    async def advance(self, count: int = 1) -> None:
        self.processed += count
        self._unflushed += count
        if self._unflushed >= self.flush_every or time.monotonic() - self._last_flush >= self.flush_seconds:
            await self.flush()

    async def flush(self) -> None:
        async with session_scope(self.session_factory) as session:
            runs = OrchestrationRunRepository(session, self.tenant_id)
            await runs.update(
                self.request_id,
                {
                    "current_step": self.step,
                    "current_progress": self.processed,
                    "total_items": self.total,
                },
            )
            cancel = await runs.is_cancel_requested(self.request_id)
        self._unflushed = 0
        self._last_flush = time.monotonic()
        if cancel and self.on_cancel_requested is not None:
            self.on_cancel_requested()


async def _run_items(
    ctx: RunContext,
    phase: Phase,
    items: list[Any],
    fn: Callable[[Any], Awaitable[Any]],
    result: PhaseResult,
    describe: Callable[[Any], str],
) -> list[ItemOutcome[Any, Any]]:
    if ctx.progress is not None:
        await ctx.progress.start_phase(phase.value, len(items))

    async def _done(outcome: ItemOutcome[Any, Any]) -> None:
        if outcome.error is not None:
            result.add_error(f"{describe(outcome.item)}: {outcome.error}")
        if ctx.progress is not None:
            await ctx.progress.advance()

    outcomes = await run_bounded(
        items,
        fn,
        max_concurrency=ctx.settings.max_parallel_requests,
        batch_size=ctx.settings.batch_size,
        should_stop=ctx.should_stop,
        on_item_done=_done,
    )
    if ctx.progress is not None:
        await ctx.progress.flush()
    skipped = sum(1 for o in outcomes if o.skipped)
    if skipped:
        logger.info("%s stopped early; %d items not started", phase.value, skipped, extra=ctx.log_extra(phase))
    return outcomes


def _cap(ctx: RunContext, jobs: list[JobTable], limit: int, phase: Phase) -> list[JobTable]:
    if not ctx.settings.test_mode_enabled or len(jobs) <= limit:
        return jobs
    logger.warning(
        "Test mode: limiting %s to %d of %d jobs",
        phase.value,
        limit,
        len(jobs),
        extra=ctx.log_extra(phase),
    )
    return sorted(jobs, key=lambda j: j.id)[:limit]


async def _advance_rule_for_job(
    ctx: RunContext,
    session: AsyncSession,
    job: JobTable,
    status: JobStatus,
) -> bool:
    """Advance the rule that produced *job*, unless it already moved past it."""
    if job.rule_id is None:
        logger.warning("Job %d has no rule; nothing to advance", job.id)
        return False
    rule = await AccountRuleRepository(session, ctx.tenant_id).get(job.rule_id)
    if rule is None:
        logger.warning("Rule %d of job %d not found", job.rule_id, job.id)
        return False
    if rule.next_run_date is not None and rule.next_run_date > job.next_run_date:
        logger.debug("Rule %d already advanced past job %d", rule.id, job.id)
        return False
    scheduler = RuleScheduler(session, ctx.tenant_id, settings=ctx.settings)
    return await scheduler.advance_rule(rule, job.next_run_date, status, ctx.today())


async def _mark(
    ctx: RunContext,
    session: AsyncSession,
    job_id: int,
    expected: JobStatus,
    target: JobStatus,
    extra: dict[str, Any] | None = None,
) -> bool:
    """CAS *job_id* from *expected* into the in-progress state *target*."""
    sm.assert_transition(expected, target)
    return await JobRepository(session, ctx.tenant_id).transition(
        job_id, expected, {**(extra or {}), "status": target.value, "updated_at": ctx.now()}
    )


async def _apply(
    ctx: RunContext,
    session: AsyncSession,
    job: JobTable,
    expected: JobStatus,
    transition: sm.JobTransition,
    *,
    via: JobStatus | None = None,
    extra: dict[str, Any] | None = None,
) -> bool:
    """Persist *transition* with a CAS on *expected*; advance the rule if asked.

    *via* names the in-progress state a reused or awaited result skips over;
    both legs of the move are validated.  *extra* values are written under
    the transition's own.
    """
    if via is not None:
        sm.assert_transition(expected, via)
        sm.assert_transition(via, transition.status)
    else:
        sm.assert_transition(expected, transition.status)
    values = {**(extra or {}), **transition.values(ctx.now()), "updated_at": ctx.now()}
    applied = await JobRepository(session, ctx.tenant_id).transition(job.id, expected, values)
    if not applied:
        logger.warning("Job %d left %s concurrently; dropping %s", job.id, expected.value, transition.label)
        return False
    if transition.advance_rule:
        await _advance_rule_for_job(ctx, session, job, transition.status)
    return True


async def _load(ctx: RunContext, session: AsyncSession, job_id: int) -> tuple[JobTable, JobState] | None:
    job = await JobRepository(session, ctx.tenant_id).get(job_id)
    if job is None or job.is_deleted:
        return None
    return job, JobState.model_validate(job)


def _build_request(
    request_type: RequestType,
    job: JobTable,
    account: AccountTable,
    today: date,
) -> AdrRequest:
    return AdrRequest(
        request_type=request_type,
        job_id=job.id,
        credential_id=job.credential_id,
        account_id=account.vm_account_id,
        interface_account_id=account.interface_account_id,
        start_date=job.period_start,
        end_date=job.period_end,
        is_last_attempt=request_type is RequestType.DOWNLOAD_INVOICE and job.period_end <= today,
    )


# ---------------------------------------------------------------------------
# Phase 1: account sync
# ---------------------------------------------------------------------------


async def sync_accounts(ctx: RunContext) -> SyncResult:
    """Refresh ``adr_accounts`` from the configured source.

    An unreachable source is recorded as a phase error; the run continues
    with the accounts already stored.
    """
    if ctx.account_source is None:
        logger.warning("No account source configured; skipping sync", extra=ctx.log_extra(Phase.SYNC))
        return SyncResult()
    if ctx.progress is not None:
        await ctx.progress.start_phase(Phase.SYNC.value, 0)

    try:
        rows = await ctx.account_source.fetch_accounts()
    except AccountSourceError as exc:
        logger.error("Account sync failed: %s", exc, extra=ctx.log_extra(Phase.SYNC))
        failed = SyncResult()
        failed.add_error(f"Account source unavailable: {exc}")
        return failed

    async with session_scope(ctx.session_factory) as session:
        synced = await AccountSyncService(session, ctx.tenant_id).sync_accounts(rows, ctx.now())
    for message in getattr(ctx.account_source, "rejected", []):
        synced.add_error(message)

    if ctx.progress is not None:
        ctx.progress.total = synced.total_processed
        ctx.progress.processed = synced.total_processed
        await ctx.progress.flush()
    return synced


# ---------------------------------------------------------------------------
# Phase 2: job creation
# ---------------------------------------------------------------------------


async def create_jobs(ctx: RunContext) -> JobCreationResult:
    """Create one job per due rule and billing period (including the lead window)."""
    result = JobCreationResult()
    today = ctx.today()
    lead = ctx.settings.credential_check_lead_days
    batch_size = ctx.settings.batch_size

    async with session_scope(ctx.session_factory) as session:
        scheduler = RuleScheduler(session, ctx.tenant_id, settings=ctx.settings)
        result.rules_backfilled = await scheduler.ensure_rules(today)
        pairs = []
        for job_type in JobType:
            pairs.extend(await scheduler.accounts_for_job_creation(today, lead, job_type))
        blacklist = await BlacklistMatcher.load(session, today, ctx.tenant_id)

    if ctx.progress is not None:
        await ctx.progress.start_phase(Phase.CREATE_JOBS.value, len(pairs))

    for start in range(0, len(pairs), batch_size):
        if ctx.should_stop():
            break
        async with session_scope(ctx.session_factory) as session:
            jobs = JobRepository(session, ctx.tenant_id)
            for rule, account in pairs[start : start + batch_size]:
                exclusion = (
                    ExclusionType.CREDENTIAL_CHECK
                    if rule.job_type == JobType.CREDENTIAL_CHECK.value
                    else ExclusionType.DOWNLOAD
                )
                if blacklist.is_excluded(account, exclusion):
                    result.blacklisted += 1
                    result.skipped += 1
                    continue
                if rule.next_range_start is None or rule.next_range_end is None or rule.next_run_date is None:
                    logger.debug("Rule %d has no complete window; skipping account %d", rule.id, account.id)
                    result.skipped += 1
                    continue
                job_id = await jobs.create_if_absent(
                    {
                        "account_id": account.id,
                        "rule_id": rule.id,
                        "job_type": rule.job_type,
                        "status": S.PENDING.value,
                        "vendor_code": account.vendor_code,
                        "credential_id": account.credential_id,
                        "period_type": rule.period_type,
                        "period_start": rule.next_range_start,
                        "period_end": rule.next_range_end,
                        "next_run_date": rule.next_run_date,
                        "is_missing": account.historical_billing_status == HistoricalBillingStatus.MISSING.value,
                    }
                )
                if job_id is None:
                    result.skipped += 1
                else:
                    result.created += 1
        if ctx.progress is not None:
            await ctx.progress.advance(min(batch_size, len(pairs) - start))

    logger.info(
        "Job creation: created=%d skipped=%d blacklisted=%d backfilled=%d",
        result.created,
        result.skipped,
        result.blacklisted,
        result.rules_backfilled,
        extra=ctx.log_extra(Phase.CREATE_JOBS),
    )
    return result


# ---------------------------------------------------------------------------
# Phase 3: credential verification
# ---------------------------------------------------------------------------


async def verify_credentials(ctx: RunContext) -> CredentialVerificationResult:
    result = CredentialVerificationResult()
    today, now = ctx.today(), ctx.now()
    lead = timedelta(days=ctx.settings.credential_check_lead_days)

    async with session_scope(ctx.session_factory) as session:
        candidates = await JobRepository(session, ctx.tenant_id).credential_candidates(today + lead)
        eligible = [
            job
            for job in candidates
            if sm.is_credential_check_eligible(JobState.model_validate(job), today, now, ctx.policy)
        ]
        accounts = {acc.id: acc for acc in await AccountRepository(session, ctx.tenant_id).list_all()}
        blacklist = await BlacklistMatcher.load(session, today, ctx.tenant_id)

    allowed = []
    for job in eligible:
        account = accounts.get(job.account_id)
        if account is None:
            continue
        if blacklist.is_excluded(account, ExclusionType.CREDENTIAL_CHECK):
            result.blacklisted += 1
            continue
        allowed.append(job)
    limit = ctx.settings.test_mode_max_credential_checks
    work = [job.id for job in _cap(ctx, allowed, limit, Phase.VERIFY_CREDENTIALS)]

    async def _verify(job_id: int) -> str:
        async with session_scope(ctx.session_factory) as session:
            loaded = await _load(ctx, session, job_id)
            if loaded is None:
                return "skipped"
            job, state = loaded
            if not sm.is_credential_check_eligible(state, today, ctx.now(), ctx.policy):
                return "skipped"
            account = await AccountRepository(session, ctx.tenant_id).get(job.account_id)
            if account is None:
                return "skipped"

            ledger = ctx.ledger(session)
            decision = await ledger.check(state, RequestType.ATTEMPT_LOGIN, ctx.now())
            if decision.action is LedgerAction.AWAIT:
                return "deferred"
            if decision.action is LedgerAction.REUSE and decision.reused_result is not None:
                transition = sm.on_credential_result(state, decision.reused_result, ctx.now(), ctx.policy)
                await _apply(ctx, session, job, state.status, transition, via=S.CREDENTIAL_CHECK_IN_PROGRESS)
                return "reused"

            if not await _mark(ctx, session, job.id, state.status, S.CREDENTIAL_CHECK_IN_PROGRESS):
                return "skipped"
            request = _build_request(RequestType.ATTEMPT_LOGIN, job, account, today)
            await ledger.record_dispatch(
                job.id, RequestType.ATTEMPT_LOGIN, ctx.provider.build_payload(request), ctx.request_id, ctx.now()
            )

        provider_result = await ctx.provider.verify_credential(request)

        async with session_scope(ctx.session_factory) as session:
            await ctx.ledger(session).record_result(
                job.id, RequestType.ATTEMPT_LOGIN, provider_result, ctx.request_id, ctx.now()
            )
            in_progress = state.model_copy(update={"status": S.CREDENTIAL_CHECK_IN_PROGRESS})
            transition = sm.on_credential_result(in_progress, provider_result, ctx.now(), ctx.policy)
            await _apply(ctx, session, job, S.CREDENTIAL_CHECK_IN_PROGRESS, transition)
        return transition.label

    outcomes = await _run_items(ctx, Phase.VERIFY_CREDENTIALS, work, _verify, result, lambda j: f"Job {j}")
    for outcome in outcomes:
        if not outcome.ok:
            continue
        label = outcome.result
        if label == "skipped":
            continue
        result.processed += 1
        if label == "verified":
            result.verified += 1
        elif label == "failed":
            result.failed += 1
        elif label == "reused":
            result.reused += 1
        elif label == "deferred":
            result.deferred += 1

    logger.info(
        "Credential verification: processed=%d verified=%d failed=%d reused=%d deferred=%d",
        result.processed,
        result.verified,
        result.failed,
        result.reused,
        result.deferred,
        extra=ctx.log_extra(Phase.VERIFY_CREDENTIALS),
    )
    return result


# ---------------------------------------------------------------------------
# Phase 4: scraping
# ---------------------------------------------------------------------------


_SCRAPE_STEP_STATES = (S.SCRAPE_IN_PROGRESS, S.SCRAPE_FAILED)


async def request_scrapes(ctx: RunContext) -> ScrapeResult:
    result = ScrapeResult()
    today, now = ctx.today(), ctx.now()

    async with session_scope(ctx.session_factory) as session:
        candidates = await JobRepository(session, ctx.tenant_id).scrape_candidates(today)
    eligible = [
        job for job in candidates if sm.is_scrape_eligible(JobState.model_validate(job), today, now, ctx.policy)
    ]
    work = [job.id for job in _cap(ctx, eligible, ctx.settings.test_mode_max_scraping_jobs, Phase.SCRAPE)]

    async def _scrape(job_id: int) -> str:
        async with session_scope(ctx.session_factory) as session:
            loaded = await _load(ctx, session, job_id)
            if loaded is None:
                return "skipped"
            job, state = loaded
            if not sm.is_scrape_eligible(state, today, ctx.now(), ctx.policy):
                return "skipped"
            account = await AccountRepository(session, ctx.tenant_id).get(job.account_id)
            if account is None:
                return "skipped"

            # Entering the scrape step from a credential state starts a fresh retry budget.
            entering: dict[str, Any] = {}
            if state.status not in _SCRAPE_STEP_STATES:
                entering = {"retry_count": 0, "next_attempt_at": None}
            in_progress = state.model_copy(update={"status": S.SCRAPE_IN_PROGRESS, **entering})

            ledger = ctx.ledger(session)
            decision = await ledger.check(state, RequestType.DOWNLOAD_INVOICE, ctx.now())
            if decision.action is LedgerAction.AWAIT:
                transition = sm.on_awaiting_scrape(in_progress, ctx.now())
                await _apply(
                    ctx, session, job, state.status, transition, via=S.SCRAPE_IN_PROGRESS, extra=entering
                )
                return "awaiting"
            if decision.action is LedgerAction.REUSE and decision.reused_result is not None:
                transition = sm.on_scrape_result(in_progress, decision.reused_result, ctx.now(), ctx.policy)
                await _apply(
                    ctx, session, job, state.status, transition, via=S.SCRAPE_IN_PROGRESS, extra=entering
                )
                return "reused"

            if not await _mark(ctx, session, job.id, state.status, S.SCRAPE_IN_PROGRESS, entering):
                return "skipped"
            request = _build_request(RequestType.DOWNLOAD_INVOICE, job, account, today)
            await ledger.record_dispatch(
                job.id, RequestType.DOWNLOAD_INVOICE, ctx.provider.build_payload(request), ctx.request_id, ctx.now()
            )

        provider_result = await ctx.provider.request_scrape(request)

        async with session_scope(ctx.session_factory) as session:
            await ctx.ledger(session).record_result(
                job.id, RequestType.DOWNLOAD_INVOICE, provider_result, ctx.request_id, ctx.now()
            )
            transition = sm.on_scrape_result(in_progress, provider_result, ctx.now(), ctx.policy)
            await _apply(ctx, session, job, S.SCRAPE_IN_PROGRESS, transition)
        return transition.label

    outcomes = await _run_items(ctx, Phase.SCRAPE, work, _scrape, result, lambda j: f"Job {j}")
    for outcome in outcomes:
        if not outcome.ok or outcome.result == "skipped":
            continue
        result.processed += 1
        label = outcome.result
        if label == "requested":
            result.requested += 1
        elif label == "completed":
            result.completed += 1
        elif label == "needs_review":
            result.needs_review += 1
        elif label == "failed":
            result.failed += 1
        elif label == "reused":
            result.reused += 1
        elif label == "awaiting":
            result.awaiting += 1

    logger.info(
        "Scraping: processed=%d requested=%d completed=%d needs_review=%d failed=%d reused=%d awaiting=%d",
        result.processed,
        result.requested,
        result.completed,
        result.needs_review,
        result.failed,
        result.reused,
        result.awaiting,
        extra=ctx.log_extra(Phase.SCRAPE),
    )
    return result


# ---------------------------------------------------------------------------
# Phase 5: status checks and stale sweep
# ---------------------------------------------------------------------------


_STATUS_LABELS = {
    "completed": "completed",
    "needs_review": "needs_review",
    "failed": "failed",
    "no_invoice": "no_invoice",
    "still_pending": "still_pending",
    "credential_verified": "credential_verified",
    "credential_failed": "credential_failed",
    "check_error": "check_errors",
}


async def check_statuses(ctx: RunContext) -> StatusCheckResult:
    result = StatusCheckResult()
    today, now = ctx.today(), ctx.now()

    async with session_scope(ctx.session_factory) as session:
        jobs = JobRepository(session, ctx.tenant_id)
        polls = [
            (job.id, False)
            for job in await jobs.status_check_candidates()
            if sm.is_status_check_eligible(JobState.model_validate(job), now, ctx.policy)
        ]
        polls += [
            (job.id, True)
            for job in await jobs.credential_followup_candidates(today)
            if sm.is_credential_followup_eligible(JobState.model_validate(job), today, now, ctx.policy)
        ]

    async def _check(item: tuple[int, bool]) -> str:
        job_id, followup = item
        async with session_scope(ctx.session_factory) as session:
            loaded = await _load(ctx, session, job_id)
            if loaded is None:
                return "skipped"
            job, state = loaded
            if followup:
                if not sm.is_credential_followup_eligible(state, today, ctx.now(), ctx.policy):
                    return "skipped"
                expected, previous = S.CREDENTIAL_FAILED, S.CREDENTIAL_FAILED
            else:
                if not sm.is_status_check_eligible(state, ctx.now(), ctx.policy):
                    return "skipped"
                if not await _mark(ctx, session, job.id, state.status, S.STATUS_CHECK_IN_PROGRESS):
                    return "skipped"
                expected, previous = S.STATUS_CHECK_IN_PROGRESS, S.SCRAPE_REQUESTED

        provider_result = await ctx.provider.check_status(job_id)

        async with session_scope(ctx.session_factory) as session:
            await ctx.ledger(session).record_result(
                job_id, RequestType.STATUS_CHECK, provider_result, ctx.request_id, ctx.now()
            )
            transition = sm.on_status_result(state, provider_result, today, ctx.now(), previous_status=previous)
            await _apply(ctx, session, job, expected, transition)
        return transition.label

    outcomes = await _run_items(ctx, Phase.STATUS_CHECK, polls, _check, result, lambda i: f"Job {i[0]}")
    for outcome in outcomes:
        if not outcome.ok or outcome.result == "skipped":
            continue
        result.checked += 1
        bucket = _STATUS_LABELS.get(outcome.result or "")
        if bucket is not None:
            setattr(result, bucket, getattr(result, bucket) + 1)

    logger.info(
        "Status check: checked=%d completed=%d needs_review=%d failed=%d no_invoice=%d pending=%d errors=%d",
        result.checked,
        result.completed,
        result.needs_review,
        result.failed,
        result.no_invoice,
        result.still_pending,
        result.check_errors,
        extra=ctx.log_extra(Phase.STATUS_CHECK),
    )
    return result


async def sweep_stale_jobs(ctx: RunContext) -> StaleJobResult:
    """Cancel jobs that missed their processing window and advance their rules."""
    result = StaleJobResult()
    today = ctx.today()
    cutoff = today - timedelta(days=ctx.policy.stale_job_lookback_days)

    async with session_scope(ctx.session_factory) as session:
        candidates = await JobRepository(session, ctx.tenant_id).stale_candidates(cutoff)
    stale = [job.id for job in candidates if sm.is_stale(JobState.model_validate(job), today, ctx.policy)]
    if ctx.progress is not None:
        await ctx.progress.start_phase(Phase.STALE_SWEEP.value, len(stale))

    for job_id in stale:
        try:
            async with session_scope(ctx.session_factory) as session:
                loaded = await _load(ctx, session, job_id)
                if loaded is None:
                    continue
                job, state = loaded
                if not sm.is_stale(state, today, ctx.policy):
                    continue
                transition = sm.on_stale(state, today)
                if not await JobRepository(session, ctx.tenant_id).transition(
                    job.id, state.status, {**transition.values(ctx.now()), "updated_at": ctx.now()}
                ):
                    continue
                result.cancelled += 1
                if await _advance_rule_for_job(ctx, session, job, transition.status):
                    result.rules_advanced += 1
        except Exception as exc:
            logger.exception("Failed to finalize stale job %d", job_id)
            result.add_error(f"Job {job_id}: {exc}")
        if ctx.progress is not None:
            await ctx.progress.advance()

    if result.cancelled:
        logger.info(
            "Stale sweep: cancelled=%d rules_advanced=%d",
            result.cancelled,
            result.rules_advanced,
            extra=ctx.log_extra(Phase.STALE_SWEEP),
        )
    return result
