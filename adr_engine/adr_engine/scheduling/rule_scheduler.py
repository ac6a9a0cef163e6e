"""Account rule scheduling: which accounts are due and how rules advance.

Rules, not accounts, drive job creation.  Each enabled rule carries the next
run date and search window of one account and job type.  After a job
reaches a final state the rule is advanced one billing period, anchored on
the job's scheduled run date so that a late status check never shifts the
schedule.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from adr_engine.billing import calculator
from adr_engine.config import Settings
from adr_engine.errors import CalculationLimitError
from adr_engine.models.account import ExclusionType, HistoricalBillingStatus, PeriodType
from adr_engine.models.job import JobStatus, JobType
from adr_engine.state.repository import AccountRepository, AccountRuleRepository, BlacklistRepository
from adr_engine.state.tables import AccountBlacklistTable, AccountRuleTable, AccountTable

logger = logging.getLogger(__name__)

# Window offsets outside [0, _MAX_WINDOW_DAYS] are treated as corrupt.
_MAX_WINDOW_DAYS = 365


# ---------------------------------------------------------------------------
# Blacklist
# ---------------------------------------------------------------------------


class BlacklistMatcher:
    """In-memory matcher over the blacklist entries effective on one day.

    An entry matches an account when *any* of its populated identifiers
    (vendor code, account id, account number, credential id) equals the
    account's.  ``All`` entries apply to every exclusion type.
    """

    def __init__(self, entries: Sequence[AccountBlacklistTable]) -> None:
        self._entries = list(entries)

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    async def load(cls, session: AsyncSession, on: date, tenant_id: str = "default") -> BlacklistMatcher:
        entries = await BlacklistRepository(session, tenant_id).list_effective(on)
        return cls(entries)

    def match(self, account: AccountTable, exclusion: ExclusionType) -> AccountBlacklistTable | None:
        for entry in self._entries:
            if entry.exclusion_type not in (ExclusionType.ALL.value, exclusion.value):
                continue
            if (
                (entry.vendor_code and entry.vendor_code == account.vendor_code)
                or (entry.vm_account_id is not None and entry.vm_account_id == account.vm_account_id)
                or (entry.vm_account_number and entry.vm_account_number == account.vm_account_number)
                or (entry.credential_id is not None and entry.credential_id == account.credential_id)
            ):
                return entry
        return None

    def is_excluded(self, account: AccountTable, exclusion: ExclusionType) -> bool:
        entry = self.match(account, exclusion)
        if entry is not None:
            logger.debug(
                "Account %d (vm_account_id=%d) is blacklisted for %s: %s",
                account.id,
                account.vm_account_id,
                exclusion.value,
                entry.reason,
            )
        return entry is not None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def window_offsets(rule: AccountRuleTable, default_before: int, default_after: int) -> tuple[int, int]:
    """Current (days_before, days_after) of a rule's window.

    Offsets derived from the rule's own dates win so that a manually
    widened or narrowed window survives advancement.  Missing or corrupt
    offsets fall back to the stored widths, then to the cadence default.
    """
    if rule.next_run_date and rule.next_range_start and rule.next_range_end:
        before = (rule.next_run_date - rule.next_range_start).days
        after = (rule.next_range_end - rule.next_run_date).days
        if 0 <= before <= _MAX_WINDOW_DAYS and 0 <= after <= _MAX_WINDOW_DAYS:
            return before, after
        logger.warning("Rule %d has invalid window offsets (%d/%d); using stored widths", rule.id, before, after)

    if rule.period_type:
        default_before, default_after = calculator.default_window_days(rule.period_type)
    before = rule.window_days_before if rule.window_days_before is not None else default_before
    after = rule.window_days_after if rule.window_days_after is not None else default_after
    return before, after


def _project(
    period_type: str | None,
    anchor: date,
    today: date,
    account: AccountTable | None,
    drift_threshold_days: int,
    anchor_day: int | None = None,
) -> date:
    """Next run date one period after *anchor*, rolled forward to today if needed.

    *anchor_day* is the rule's billing day.  It survives short months, so a
    31st-of-month rule clamps to Feb 28 and returns to Mar 31.
    """
    day = anchor_day or calculator.anchor_day_of_month(anchor)
    next_run = calculator.next_date(period_type, anchor, day)
    if next_run < today:
        next_run = calculator.next_date_on_or_after(period_type, next_run, today, day)

    if (
        account is not None
        and PeriodType.parse(period_type) is PeriodType.BI_WEEKLY
        and account.last_invoice_date is not None
        and account.median_days
        and calculator.detect_drift(next_run, account.last_invoice_date, account.median_days, drift_threshold_days)
    ):
        corrected = calculator.correct_drift(account.last_invoice_date, account.median_days, today)
        logger.info(
            "Bi-weekly drift on account %d: projected %s, corrected to %s",
            account.id,
            next_run.isoformat(),
            corrected.isoformat(),
        )
        next_run = corrected
    return next_run


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class RuleScheduler:
    """Due-account queries and rule advancement for one tenant."""

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str = "default",
        *,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or Settings()
        self._rules = AccountRuleRepository(session, tenant_id)
        self._accounts = AccountRepository(session, tenant_id)
        self._default_before = settings.default_window_days_before
        self._default_after = settings.default_window_days_after
        self._drift_threshold = settings.drift_threshold_days

    # -- Due queries ------------------------------------------------------------

    async def accounts_due(
        self,
        today: date,
        lead_days: int,
        job_type: JobType = JobType.DOWNLOAD_INVOICE,
    ) -> list[tuple[AccountRuleTable, AccountTable]]:
        """Rules whose run date has arrived (``next_run_date <= today``)."""
        return await self._rules.list_due(today, job_type=job_type)

    async def accounts_needing_credential_check(
        self,
        today: date,
        lead_days: int,
        job_type: JobType = JobType.DOWNLOAD_INVOICE,
    ) -> list[tuple[AccountRuleTable, AccountTable]]:
        """Rules whose run date falls in ``(today, today + lead_days]``."""
        return await self._rules.list_due(today + timedelta(days=lead_days), after=today, job_type=job_type)

    async def accounts_for_job_creation(
        self,
        today: date,
        lead_days: int,
        job_type: JobType = JobType.DOWNLOAD_INVOICE,
    ) -> list[tuple[AccountRuleTable, AccountTable]]:
        """Union of due rules and rules inside the credential lead window."""
        return await self._rules.list_due(today + timedelta(days=lead_days), job_type=job_type)

    # -- Advancement ------------------------------------------------------------

    async def advance_rule(
        self,
        rule: AccountRuleTable,
        job_next_run_date: date,
        job_status: JobStatus,
        today: date,
        *,
        account: AccountTable | None = None,
    ) -> bool:
        """Move *rule* to its next billing cycle after a job on it finished.

        Parameters
        ----------
        rule:
            The rule that produced the job.
        job_next_run_date:
            The job's scheduled run date; the new cycle is anchored on it.
        job_status:
            Final status of the job.  ``Completed`` also moves the account's
            ``last_successful_download_date``.
        today:
            Business date.
        account:
            The rule's account; loaded when omitted.

        Returns
        -------
        bool
            ``False`` when the rule is manually overridden or deleted and was
            left alone.
        """
        if rule.is_deleted:
            logger.warning("Rule %d is deleted; not advancing", rule.id)
            return False
        if rule.is_manually_overridden:
            logger.info("Rule %d is manually overridden by %s; not advancing", rule.id, rule.overridden_by)
            return False
        if account is None:
            account = await self._accounts.get(rule.account_id)

        period_type = rule.period_type or (account.period_type if account else None)
        before, after = window_offsets(rule, self._default_before, self._default_after)

        try:
            next_run = _project(
                period_type, job_next_run_date, today, account, self._drift_threshold, anchor_day=rule.day_of_month
            )
        except CalculationLimitError:
            logger.exception("Rule %d could not be advanced from %s", rule.id, job_next_run_date.isoformat())
            return False

        range_start, range_end = calculator.billing_window(next_run, before, after)
        values: dict[str, Any] = {
            "next_run_date": next_run,
            "next_range_start": range_start,
            "next_range_end": range_end,
        }
        if rule.day_of_month is None:
            values["day_of_month"] = job_next_run_date.day
            rule.day_of_month = job_next_run_date.day
        await self._rules.update(rule.id, values)
        rule.next_run_date, rule.next_range_start, rule.next_range_end = next_run, range_start, range_end

        if account is not None:
            await self._mirror_to_account(account, next_run, range_start, range_end, before, today)
            if job_status is JobStatus.COMPLETED:
                anchor = calculator.anti_creep_anchor(
                    period_type, account.last_successful_download_date, job_next_run_date
                )
                await self._accounts.update(account.id, {"last_successful_download_date": anchor})
                account.last_successful_download_date = anchor

        logger.info(
            "Advanced rule %d: period=%s next_run=%s window=%s..%s (-%d/+%d)",
            rule.id,
            period_type,
            next_run.isoformat(),
            range_start.isoformat(),
            range_end.isoformat(),
            before,
            after,
        )
        return True

    async def _mirror_to_account(
        self,
        account: AccountTable,
        next_run: date,
        range_start: date,
        range_end: date,
        window_before: int,
        today: date,
    ) -> None:
        days_until = (next_run - today).days
        is_missing = account.historical_billing_status == HistoricalBillingStatus.MISSING.value
        status = calculator.classify_next_run_status(days_until, window_before, is_missing)
        values: dict[str, Any] = {
            "next_run_date": next_run,
            "next_range_start": range_start,
            "next_range_end": range_end,
            "days_until_next_run": days_until,
            "next_run_status": status.value,
        }
        await self._accounts.update(account.id, values)
        for key, value in values.items():
            setattr(account, key, value)

    # -- Backfill ---------------------------------------------------------------

    async def ensure_rules(self, today: date, job_type: JobType = JobType.DOWNLOAD_INVOICE) -> int:
        """Create a rule for every live account that has none.

        The rule starts from the account's synced next-run fields.  Accounts
        with no next run date but a last invoice date get one projected from
        that invoice.  Returns the number of rules created.
        """
        created = 0
        for account in await self._rules.accounts_without_rule(job_type):
            values = self._rule_values_from_account(account, today)
            if values is None:
                logger.debug("Account %d has no schedule to backfill a rule from", account.id)
                continue
            rule = await self._rules.create(account.id, job_type, values)
            if rule is not None:
                created += 1
        if created:
            logger.info("Backfilled %d account rules", created)
        return created

    def _rule_values_from_account(self, account: AccountTable, today: date) -> dict[str, Any] | None:
        period_type = account.period_type
        default_before, default_after = (
            calculator.default_window_days(period_type)
            if period_type
            else (self._default_before, self._default_after)
        )

        next_run = account.next_run_date
        anchor_day = next_run.day if next_run is not None else None
        if next_run is None and account.last_invoice_date is not None:
            anchor_day = account.last_invoice_date.day
            try:
                next_run = _project(period_type, account.last_invoice_date, today, account, self._drift_threshold)
            except CalculationLimitError:
                logger.warning("Account %d: last invoice too old to project a run date", account.id)
                return None
        elif next_run is not None and PeriodType.parse(period_type) is PeriodType.BI_WEEKLY:
            if (
                account.last_invoice_date is not None
                and account.median_days
                and calculator.detect_drift(
                    next_run, account.last_invoice_date, account.median_days, self._drift_threshold
                )
            ):
                next_run = calculator.correct_drift(account.last_invoice_date, account.median_days, today)
        if next_run is None:
            return None

        if account.next_run_date == next_run and account.next_range_start and account.next_range_end:
            range_start, range_end = account.next_range_start, account.next_range_end
            before = (next_run - range_start).days
            after = (range_end - next_run).days
        else:
            before, after = default_before, default_after
            range_start, range_end = calculator.billing_window(next_run, before, after)

        return {
            "period_type": period_type,
            "period_days": account.period_days,
            "day_of_month": anchor_day or next_run.day,
            "next_run_date": next_run,
            "next_range_start": range_start,
            "next_range_end": range_end,
            "window_days_before": before,
            "window_days_after": after,
            "is_enabled": True,
            "notes": f"Backfilled from account on {today.isoformat()}",
        }
