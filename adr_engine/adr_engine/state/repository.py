"""Repository classes providing access to the ADR state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``session_scope`` context manager).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adr_engine.models.job import TERMINAL_STATUSES, JobStatus, JobType
from adr_engine.models.run import ACTIVE_RUN_STATUSES, RunStatus
from adr_engine.state.tables import (
    AccountBlacklistTable,
    AccountRuleTable,
    AccountTable,
    JobArchiveTable,
    JobExecutionArchiveTable,
    JobExecutionTable,
    JobTable,
    OrchestrationRunTable,
    RunSlotTable,
)

logger = logging.getLogger(__name__)

_TERMINAL = [s.value for s in TERMINAL_STATUSES]
_ACTIVE_RUN = [s.value for s in ACTIVE_RUN_STATUSES]


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str] | None = None,
    returning: Any | None = None,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names for conflict detection.  When omitted, any unique
        violation (including partial unique indexes) is ignored.
    returning:
        Optional column to return; no row comes back when the insert was
        skipped.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    conflict_kwargs: dict[str, Any] = {}
    if index_elements is not None:
        conflict_kwargs["index_elements"] = index_elements

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(**conflict_kwargs)
    if returning is not None:
        stmt = stmt.returning(returning)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountRepository:
    """Access to ``adr_accounts``."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, account_id: int) -> AccountTable | None:
        stmt = select(AccountTable).where(
            AccountTable.tenant_id == self._tenant_id,
            AccountTable.id == account_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, include_deleted: bool = False) -> list[AccountTable]:
        stmt = select(AccountTable).where(AccountTable.tenant_id == self._tenant_id)
        if not include_deleted:
            stmt = stmt.where(AccountTable.is_deleted.is_(False))
        result = await self._session.execute(stmt.order_by(AccountTable.id))
        return list(result.scalars().all())

    async def index_by_sync_key(self) -> dict[tuple[int, str], AccountTable]:
        """Return every account (deleted included) keyed by ``(vm_account_id, vm_account_number)``."""
        rows = await self.list_all(include_deleted=True)
        return {(row.vm_account_id, row.vm_account_number): row for row in rows}

    async def add(self, values: dict[str, Any]) -> AccountTable:
        row = AccountTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def update(self, account_id: int, values: dict[str, Any]) -> None:
        stmt = (
            update(AccountTable)
            .where(AccountTable.tenant_id == self._tenant_id, AccountTable.id == account_id)
            .values(**values)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_deleted(self, account_ids: Sequence[int]) -> int:
        """Soft-delete the given accounts.  Returns the number changed."""
        if not account_ids:
            return 0
        stmt = (
            update(AccountTable)
            .where(
                AccountTable.tenant_id == self._tenant_id,
                AccountTable.id.in_(list(account_ids)),
                AccountTable.is_deleted.is_(False),
            )
            .values(is_deleted=True)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]


# ---------------------------------------------------------------------------
# Account rules
# ---------------------------------------------------------------------------


class AccountRuleRepository:
    """Access to ``adr_account_rules``."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _active(self) -> Any:
        return select(AccountRuleTable).where(
            AccountRuleTable.tenant_id == self._tenant_id,
            AccountRuleTable.is_enabled.is_(True),
            AccountRuleTable.is_deleted.is_(False),
        )

    async def get(self, rule_id: int) -> AccountRuleTable | None:
        stmt = select(AccountRuleTable).where(
            AccountRuleTable.tenant_id == self._tenant_id,
            AccountRuleTable.id == rule_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active(self, account_id: int, job_type: JobType = JobType.DOWNLOAD_INVOICE) -> AccountRuleTable | None:
        stmt = self._active().where(
            AccountRuleTable.account_id == account_id,
            AccountRuleTable.job_type == job_type.value,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, account_id: int, job_type: JobType, values: dict[str, Any]) -> AccountRuleTable | None:
        """Insert a rule unless an enabled one already exists for the account and job type."""
        result = await _dialect_upsert_nothing(
            self._session,
            AccountRuleTable,
            values={
                "tenant_id": self._tenant_id,
                "account_id": account_id,
                "job_type": job_type.value,
                **values,
            },
            returning=AccountRuleTable.id,
        )
        rule_id = result.scalar_one_or_none()
        await self._session.flush()
        if rule_id is None:
            return None
        return await self.get(rule_id)

    async def list_due(
        self,
        through: date,
        *,
        after: date | None = None,
        job_type: JobType = JobType.DOWNLOAD_INVOICE,
    ) -> list[tuple[AccountRuleTable, AccountTable]]:
        """Enabled rules of live accounts with ``after < next_run_date <= through``."""
        stmt = (
            select(AccountRuleTable, AccountTable)
            .join(AccountTable, AccountTable.id == AccountRuleTable.account_id)
            .where(
                AccountRuleTable.tenant_id == self._tenant_id,
                AccountRuleTable.is_enabled.is_(True),
                AccountRuleTable.is_deleted.is_(False),
                AccountRuleTable.job_type == job_type.value,
                AccountRuleTable.next_run_date.is_not(None),
                AccountRuleTable.next_run_date <= through,
                AccountTable.is_deleted.is_(False),
            )
            .order_by(AccountRuleTable.priority, AccountRuleTable.account_id)
        )
        if after is not None:
            stmt = stmt.where(AccountRuleTable.next_run_date > after)
        result = await self._session.execute(stmt)
        return [(rule, account) for rule, account in result.all()]

    async def accounts_without_rule(self, job_type: JobType = JobType.DOWNLOAD_INVOICE) -> list[AccountTable]:
        has_rule = (
            select(AccountRuleTable.account_id)
            .where(
                AccountRuleTable.tenant_id == self._tenant_id,
                AccountRuleTable.job_type == job_type.value,
                AccountRuleTable.is_deleted.is_(False),
            )
            .scalar_subquery()
        )
        stmt = (
            select(AccountTable)
            .where(
                AccountTable.tenant_id == self._tenant_id,
                AccountTable.is_deleted.is_(False),
                AccountTable.id.not_in(has_rule),
            )
            .order_by(AccountTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, rule_id: int, values: dict[str, Any]) -> None:
        stmt = (
            update(AccountRuleTable)
            .where(AccountRuleTable.tenant_id == self._tenant_id, AccountRuleTable.id == rule_id)
            .values(**values)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobRepository:
    """Access to ``adr_jobs``.

    Status changes go through :meth:`transition`, which is a compare-and-set
    on the current status so two workers can never both move the same job.
    """

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _live(self) -> Any:
        return select(JobTable).where(
            JobTable.tenant_id == self._tenant_id,
            JobTable.is_deleted.is_(False),
        )

    async def create_if_absent(self, values: dict[str, Any]) -> int | None:
        """Insert a job; return its id, or ``None`` when the account/period already has one."""
        result = await _dialect_upsert_nothing(
            self._session,
            JobTable,
            values={"tenant_id": self._tenant_id, **values},
            returning=JobTable.id,
        )
        job_id = result.scalar_one_or_none()
        await self._session.flush()
        return job_id

    async def get(self, job_id: int) -> JobTable | None:
        stmt = select(JobTable).where(JobTable.tenant_id == self._tenant_id, JobTable.id == job_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_for_period(self, account_id: int, period_start: date, period_end: date) -> JobTable | None:
        stmt = self._live().where(
            JobTable.account_id == account_id,
            JobTable.period_start == period_start,
            JobTable.period_end == period_end,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        account_id: int | None = None,
        limit: int = 100,
    ) -> list[JobTable]:
        stmt = self._live()
        if status is not None:
            stmt = stmt.where(JobTable.status == status.value)
        if account_id is not None:
            stmt = stmt.where(JobTable.account_id == account_id)
        result = await self._session.execute(stmt.order_by(JobTable.id.desc()).limit(limit))
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        stmt = (
            select(JobTable.status, func.count())
            .where(JobTable.tenant_id == self._tenant_id, JobTable.is_deleted.is_(False))
            .group_by(JobTable.status)
        )
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}

    # -- Phase candidate queries ------------------------------------------------
    # These are coarse SQL pre-filters; the state machine guards make the
    # final decision per job.

    async def credential_candidates(self, through: date) -> list[JobTable]:
        stmt = self._live().where(
            JobTable.status.in_(
                [
                    JobStatus.PENDING.value,
                    JobStatus.CREDENTIAL_CHECK_IN_PROGRESS.value,
                    JobStatus.CREDENTIAL_FAILED.value,
                ]
            ),
            JobTable.credential_verified_at.is_(None),
            JobTable.next_run_date <= through,
        )
        result = await self._session.execute(stmt.order_by(JobTable.id))
        return list(result.scalars().all())

    async def scrape_candidates(self, today: date) -> list[JobTable]:
        stmt = self._live().where(
            JobTable.job_type == JobType.DOWNLOAD_INVOICE.value,
            JobTable.status.in_(
                [
                    JobStatus.PENDING.value,
                    JobStatus.CREDENTIAL_CHECK_IN_PROGRESS.value,
                    JobStatus.CREDENTIAL_VERIFIED.value,
                    JobStatus.CREDENTIAL_FAILED.value,
                    JobStatus.SCRAPE_IN_PROGRESS.value,
                    JobStatus.SCRAPE_FAILED.value,
                ]
            ),
            JobTable.next_run_date <= today,
        )
        result = await self._session.execute(stmt.order_by(JobTable.id))
        return list(result.scalars().all())

    async def status_check_candidates(self) -> list[JobTable]:
        stmt = self._live().where(
            JobTable.status.in_(
                [JobStatus.SCRAPE_REQUESTED.value, JobStatus.STATUS_CHECK_IN_PROGRESS.value]
            ),
            JobTable.provider_status_id.is_not(None),
            JobTable.scrape_completed_at.is_(None),
        )
        result = await self._session.execute(stmt.order_by(JobTable.id))
        return list(result.scalars().all())

    async def credential_followup_candidates(self, today: date) -> list[JobTable]:
        stmt = self._live().where(
            JobTable.status == JobStatus.CREDENTIAL_FAILED.value,
            JobTable.provider_index_id.is_not(None),
            JobTable.credential_verified_at.is_(None),
            JobTable.next_run_date > today,
        )
        result = await self._session.execute(stmt.order_by(JobTable.id))
        return list(result.scalars().all())

    async def stale_candidates(self, cutoff: date) -> list[JobTable]:
        """Non-terminal jobs whose run date is before *cutoff*."""
        stmt = self._live().where(
            JobTable.status.not_in(_TERMINAL),
            JobTable.next_run_date < cutoff,
        )
        result = await self._session.execute(stmt.order_by(JobTable.id))
        return list(result.scalars().all())

    # -- Writes -----------------------------------------------------------------

    async def transition(self, job_id: int, expected_status: JobStatus | str, values: dict[str, Any]) -> bool:
        """Apply *values* only if the job is still in *expected_status*.

        Returns ``True`` when the row was updated.
        """
        expected = expected_status.value if isinstance(expected_status, JobStatus) else expected_status
        stmt = (
            update(JobTable)
            .where(
                JobTable.tenant_id == self._tenant_id,
                JobTable.id == job_id,
                JobTable.status == expected,
            )
            .values(**values)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def update(self, job_id: int, values: dict[str, Any]) -> None:
        stmt = (
            update(JobTable)
            .where(JobTable.tenant_id == self._tenant_id, JobTable.id == job_id)
            .values(**values)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    # -- Retention --------------------------------------------------------------

    async def finalized_before(self, cutoff: datetime, limit: int) -> list[JobTable]:
        stmt = (
            select(JobTable)
            .where(
                JobTable.tenant_id == self._tenant_id,
                JobTable.status.in_(_TERMINAL),
                JobTable.finalized_at.is_not(None),
                JobTable.finalized_at < cutoff,
            )
            .order_by(JobTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_many(self, job_ids: Sequence[int]) -> int:
        if not job_ids:
            return 0
        stmt = delete(JobTable).where(JobTable.tenant_id == self._tenant_id, JobTable.id.in_(list(job_ids)))
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]


# ---------------------------------------------------------------------------
# Job executions
# ---------------------------------------------------------------------------


class JobExecutionRepository:
    """Append-only access to ``adr_job_executions``."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def append(self, values: dict[str, Any]) -> JobExecutionTable:
        row = JobExecutionTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_job(
        self,
        job_id: int,
        *,
        request_type: int | None = None,
        since: datetime | None = None,
    ) -> list[JobExecutionTable]:
        """Executions of a job, newest first."""
        stmt = select(JobExecutionTable).where(
            JobExecutionTable.tenant_id == self._tenant_id,
            JobExecutionTable.job_id == job_id,
        )
        if request_type is not None:
            stmt = stmt.where(JobExecutionTable.request_type == request_type)
        if since is not None:
            stmt = stmt.where(JobExecutionTable.recorded_at >= since)
        stmt = stmt.order_by(JobExecutionTable.recorded_at.desc(), JobExecutionTable.id.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_jobs(self, job_ids: Sequence[int]) -> list[JobExecutionTable]:
        if not job_ids:
            return []
        stmt = (
            select(JobExecutionTable)
            .where(
                JobExecutionTable.tenant_id == self._tenant_id,
                JobExecutionTable.job_id.in_(list(job_ids)),
            )
            .order_by(JobExecutionTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_job(self, job_id: int, request_type: int | None = None) -> int:
        stmt = select(func.count()).where(
            JobExecutionTable.tenant_id == self._tenant_id,
            JobExecutionTable.job_id == job_id,
        )
        if request_type is not None:
            stmt = stmt.where(JobExecutionTable.request_type == request_type)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def recorded_before_for_terminal_jobs(self, cutoff: datetime, limit: int) -> list[JobExecutionTable]:
        stmt = (
            select(JobExecutionTable)
            .join(JobTable, JobTable.id == JobExecutionTable.job_id)
            .where(
                JobExecutionTable.tenant_id == self._tenant_id,
                JobExecutionTable.recorded_at < cutoff,
                JobTable.status.in_(_TERMINAL),
            )
            .order_by(JobExecutionTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_many(self, execution_ids: Sequence[int]) -> int:
        if not execution_ids:
            return 0
        stmt = delete(JobExecutionTable).where(
            JobExecutionTable.tenant_id == self._tenant_id,
            JobExecutionTable.id.in_(list(execution_ids)),
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]


# ---------------------------------------------------------------------------
# Orchestration runs
# ---------------------------------------------------------------------------


class OrchestrationRunRepository:
    """Access to ``adr_orchestration_runs``."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(
        self,
        request_id: str,
        requested_by: str,
        phase_flags: dict[str, Any],
        requested_at: datetime,
    ) -> OrchestrationRunTable:
        row = OrchestrationRunTable(
            request_id=request_id,
            tenant_id=self._tenant_id,
            requested_by=requested_by,
            requested_at=requested_at,
            status=RunStatus.QUEUED.value,
            phase_flags=phase_flags,
            results={},
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, request_id: str) -> OrchestrationRunTable | None:
        stmt = select(OrchestrationRunTable).where(
            OrchestrationRunTable.tenant_id == self._tenant_id,
            OrchestrationRunTable.request_id == request_id,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_current(self) -> OrchestrationRunTable | None:
        """Return the newest Queued/Running run, if any."""
        stmt = (
            select(OrchestrationRunTable)
            .where(
                OrchestrationRunTable.tenant_id == self._tenant_id,
                OrchestrationRunTable.status.in_(_ACTIVE_RUN),
            )
            .order_by(OrchestrationRunTable.requested_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 20) -> list[OrchestrationRunTable]:
        stmt = (
            select(OrchestrationRunTable)
            .where(OrchestrationRunTable.tenant_id == self._tenant_id)
            .order_by(OrchestrationRunTable.requested_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_orphaned(self, started_before: datetime) -> list[OrchestrationRunTable]:
        stmt = (
            select(OrchestrationRunTable)
            .where(
                OrchestrationRunTable.tenant_id == self._tenant_id,
                OrchestrationRunTable.status.in_(_ACTIVE_RUN),
                OrchestrationRunTable.requested_at < started_before,
            )
            .order_by(OrchestrationRunTable.requested_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, request_id: str, values: dict[str, Any]) -> None:
        stmt = (
            update(OrchestrationRunTable)
            .where(
                OrchestrationRunTable.tenant_id == self._tenant_id,
                OrchestrationRunTable.request_id == request_id,
            )
            .values(**values)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def request_cancel(self, request_id: str) -> bool:
        """Flag an active run for cooperative cancellation."""
        stmt = (
            update(OrchestrationRunTable)
            .where(
                OrchestrationRunTable.tenant_id == self._tenant_id,
                OrchestrationRunTable.request_id == request_id,
                OrchestrationRunTable.status.in_(_ACTIVE_RUN),
            )
            .values(cancel_requested=True)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def is_cancel_requested(self, request_id: str) -> bool:
        stmt = select(OrchestrationRunTable.cancel_requested).where(
            OrchestrationRunTable.tenant_id == self._tenant_id,
            OrchestrationRunTable.request_id == request_id,
        )
        result = await self._session.execute(stmt)
        return bool(result.scalar_one_or_none())


class RunSlotRepository:
    """Compare-and-swap guard over the single ``adr_run_slot`` row of a tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def _ensure_row(self) -> None:
        await _dialect_upsert_nothing(
            self._session,
            RunSlotTable,
            values={"tenant_id": self._tenant_id, "active_request_id": None},
            index_elements=["tenant_id"],
        )

    async def claim(self, request_id: str, now: datetime) -> bool:
        """Take the slot for *request_id* if it is free.  Returns ``True`` on success."""
        await self._ensure_row()
        stmt = (
            update(RunSlotTable)
            .where(
                RunSlotTable.tenant_id == self._tenant_id,
                RunSlotTable.active_request_id.is_(None),
            )
            .values(active_request_id=request_id, claimed_at=now)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release(self, request_id: str) -> bool:
        """Free the slot only if *request_id* still holds it."""
        stmt = (
            update(RunSlotTable)
            .where(
                RunSlotTable.tenant_id == self._tenant_id,
                RunSlotTable.active_request_id == request_id,
            )
            .values(active_request_id=None, claimed_at=None)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_active(self) -> str | None:
        stmt = select(RunSlotTable.active_request_id).where(RunSlotTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Blacklist
# ---------------------------------------------------------------------------


class BlacklistRepository:
    """Access to ``adr_account_blacklist``."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def add(self, values: dict[str, Any]) -> AccountBlacklistTable:
        row = AccountBlacklistTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_effective(self, on: date) -> list[AccountBlacklistTable]:
        """Active entries whose effective range contains *on*."""
        stmt = select(AccountBlacklistTable).where(
            AccountBlacklistTable.tenant_id == self._tenant_id,
            AccountBlacklistTable.is_active.is_(True),
            or_(
                AccountBlacklistTable.effective_start_date.is_(None),
                AccountBlacklistTable.effective_start_date <= on,
            ),
            or_(
                AccountBlacklistTable.effective_end_date.is_(None),
                AccountBlacklistTable.effective_end_date >= on,
            ),
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


class ArchiveRepository:
    """Writes to the archive tables."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def add_jobs(self, rows: Iterable[dict[str, Any]]) -> int:
        count = 0
        for payload in rows:
            self._session.add(
                JobArchiveTable(
                    id=payload["id"],
                    tenant_id=self._tenant_id,
                    account_id=payload["account_id"],
                    status=payload["status"],
                    period_start=date.fromisoformat(payload["period_start"]),
                    period_end=date.fromisoformat(payload["period_end"]),
                    finalized_at=(
                        datetime.fromisoformat(payload["finalized_at"]) if payload.get("finalized_at") else None
                    ),
                    payload=payload,
                )
            )
            count += 1
        await self._session.flush()
        return count

    async def add_executions(self, rows: Iterable[dict[str, Any]]) -> int:
        count = 0
        for payload in rows:
            self._session.add(
                JobExecutionArchiveTable(
                    id=payload["id"],
                    tenant_id=self._tenant_id,
                    job_id=payload["job_id"],
                    request_type=payload["request_type"],
                    outcome=payload["outcome"],
                    recorded_at=datetime.fromisoformat(payload["recorded_at"]),
                    payload=payload,
                )
            )
            count += 1
        await self._session.flush()
        return count

    async def count_jobs(self) -> int:
        stmt = select(func.count()).select_from(JobArchiveTable).where(JobArchiveTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_executions(self) -> int:
        stmt = (
            select(func.count())
            .select_from(JobExecutionArchiveTable)
            .where(JobExecutionArchiveTable.tenant_id == self._tenant_id)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()
