"""Unit tests for adr_engine.scheduling.rule_scheduler."""

from __future__ import annotations

from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from adr_engine.config import load_settings
from adr_engine.models.account import ExclusionType, NextRunStatus
from adr_engine.models.job import JobStatus, JobType
from adr_engine.scheduling.rule_scheduler import BlacklistMatcher, RuleScheduler, window_offsets
from adr_engine.state.repository import AccountRuleRepository, BlacklistRepository

TODAY = date(2025, 3, 15)


@pytest.fixture
def scheduler(session) -> RuleScheduler:
    return RuleScheduler(session, settings=load_settings())


# ---------------------------------------------------------------------------
# ensure_rules
# ---------------------------------------------------------------------------


class TestEnsureRules:
    @pytest.mark.asyncio
    async def test_backfills_from_account_schedule(self, session, scheduler, seed):
        account_id = await seed.account(
            next_run_date=date(2025, 3, 20),
            next_range_start=date(2025, 3, 17),
            next_range_end=date(2025, 3, 27),
        )
        assert await scheduler.ensure_rules(TODAY) == 1

        rule = await AccountRuleRepository(session).get_active(account_id)
        assert rule is not None
        assert rule.next_run_date == date(2025, 3, 20)
        assert rule.window_days_before == 3
        assert rule.window_days_after == 7
        assert rule.day_of_month == 20
        assert rule.notes == "Backfilled from account on 2025-03-15"

    @pytest.mark.asyncio
    async def test_idempotent(self, scheduler, seed):
        await seed.account()
        assert await scheduler.ensure_rules(TODAY) == 1
        assert await scheduler.ensure_rules(TODAY) == 0

    @pytest.mark.asyncio
    async def test_projects_from_last_invoice(self, session, scheduler, seed):
        account_id = await seed.account(
            next_run_date=None,
            next_range_start=None,
            next_range_end=None,
            last_invoice_date=date(2025, 2, 20),
        )
        assert await scheduler.ensure_rules(TODAY) == 1
        rule = await AccountRuleRepository(session).get_active(account_id)
        assert rule is not None
        assert rule.next_run_date == date(2025, 3, 20)
        assert (rule.next_range_start, rule.next_range_end) == (date(2025, 3, 15), date(2025, 3, 25))

    @pytest.mark.asyncio
    async def test_skips_accounts_without_schedule(self, scheduler, seed):
        await seed.account(next_run_date=None, next_range_start=None, next_range_end=None)
        assert await scheduler.ensure_rules(TODAY) == 0


# ---------------------------------------------------------------------------
# Due queries
# ---------------------------------------------------------------------------


class TestDueQueries:
    @pytest.mark.asyncio
    async def test_lead_window_split(self, scheduler, seed):
        due = await seed.account()
        await seed.rule(due, next_run_date=TODAY)
        soon = await seed.account()
        await seed.rule(soon, next_run_date=TODAY + timedelta(days=3))
        later = await seed.account()
        await seed.rule(later, next_run_date=TODAY + timedelta(days=10))

        assert [a.id for _, a in await scheduler.accounts_due(TODAY, 7)] == [due]
        assert [a.id for _, a in await scheduler.accounts_needing_credential_check(TODAY, 7)] == [soon]
        assert [a.id for _, a in await scheduler.accounts_for_job_creation(TODAY, 7)] == [due, soon]

    @pytest.mark.asyncio
    async def test_job_type_is_respected(self, scheduler, seed):
        account_id = await seed.account()
        await seed.rule(account_id, job_type=JobType.CREDENTIAL_CHECK, next_run_date=TODAY)
        assert await scheduler.accounts_due(TODAY, 7) == []
        due = await scheduler.accounts_due(TODAY, 7, job_type=JobType.CREDENTIAL_CHECK)
        assert [a.id for _, a in due] == [account_id]


# ---------------------------------------------------------------------------
# advance_rule
# ---------------------------------------------------------------------------


class TestAdvanceRule:
    @pytest.mark.asyncio
    async def test_monthly_advance_keeps_window(self, session, scheduler, seed):
        account_id = await seed.account()
        rule_id = await seed.rule(
            account_id,
            next_run_date=date(2025, 1, 15),
            next_range_start=date(2025, 1, 12),
            next_range_end=date(2025, 1, 22),
        )
        rule = await AccountRuleRepository(session).get(rule_id)
        assert rule is not None

        advanced = await scheduler.advance_rule(rule, date(2025, 1, 15), JobStatus.COMPLETED, date(2025, 1, 20))
        assert advanced
        await session.commit()

        stored = await seed.get_rule(rule_id)
        assert stored.next_run_date == date(2025, 2, 15)
        assert (stored.next_range_start, stored.next_range_end) == (date(2025, 2, 12), date(2025, 2, 22))

        account = await seed.get_account(account_id)
        assert account.next_run_date == date(2025, 2, 15)
        assert account.days_until_next_run == 26
        assert account.next_run_status == NextRunStatus.UPCOMING.value
        assert account.last_successful_download_date == date(2025, 1, 15)

    @pytest.mark.asyncio
    async def test_month_end_day_survives_short_month(self, session, scheduler, seed):
        account_id = await seed.account()
        rule_id = await seed.rule(
            account_id,
            day_of_month=31,
            next_run_date=date(2025, 1, 31),
            next_range_start=date(2025, 1, 26),
            next_range_end=date(2025, 2, 5),
        )
        rule = await AccountRuleRepository(session).get(rule_id)
        assert rule is not None

        await scheduler.advance_rule(rule, date(2025, 1, 31), JobStatus.COMPLETED, date(2025, 2, 3))
        assert rule.next_run_date == date(2025, 2, 28)

        await scheduler.advance_rule(rule, date(2025, 2, 28), JobStatus.COMPLETED, date(2025, 3, 3))
        assert rule.next_run_date == date(2025, 3, 31)
        await session.commit()

        stored = await seed.get_rule(rule_id)
        assert stored.next_run_date == date(2025, 3, 31)
        assert stored.day_of_month == 31

    @pytest.mark.asyncio
    async def test_rolls_forward_past_missed_cycles(self, session, scheduler, seed):
        account_id = await seed.account()
        rule_id = await seed.rule(account_id, next_run_date=date(2024, 10, 15),
                                  next_range_start=date(2024, 10, 10), next_range_end=date(2024, 10, 20))
        rule = await AccountRuleRepository(session).get(rule_id)
        assert rule is not None

        await scheduler.advance_rule(rule, date(2024, 10, 15), JobStatus.CANCELLED, TODAY)
        assert rule.next_run_date == TODAY

        await session.commit()
        account = await seed.get_account(account_id)
        assert account.next_run_status == NextRunStatus.RUN_NOW.value
        assert account.last_successful_download_date is None

    @pytest.mark.asyncio
    async def test_overridden_rule_left_alone(self, session, scheduler, seed):
        account_id = await seed.account()
        rule_id = await seed.rule(account_id, is_manually_overridden=True, overridden_by="ops")
        rule = await AccountRuleRepository(session).get(rule_id)
        assert rule is not None

        assert not await scheduler.advance_rule(rule, date(2025, 3, 15), JobStatus.COMPLETED, TODAY)
        assert rule.next_run_date == date(2025, 3, 15)

    @pytest.mark.asyncio
    async def test_deleted_rule_left_alone(self, session, scheduler, seed):
        account_id = await seed.account()
        rule_id = await seed.rule(account_id, is_deleted=True)
        rule = await AccountRuleRepository(session).get(rule_id)
        assert rule is not None
        assert not await scheduler.advance_rule(rule, date(2025, 3, 15), JobStatus.COMPLETED, TODAY)


# ---------------------------------------------------------------------------
# window_offsets
# ---------------------------------------------------------------------------


class TestWindowOffsets:
    def test_derived_from_rule_dates(self):
        rule = SimpleNamespace(
            id=1,
            next_run_date=date(2025, 3, 15),
            next_range_start=date(2025, 3, 13),
            next_range_end=date(2025, 3, 25),
            period_type="Monthly",
            window_days_before=5,
            window_days_after=5,
        )
        assert window_offsets(rule, 5, 5) == (2, 10)

    def test_corrupt_dates_fall_back_to_stored_widths(self):
        rule = SimpleNamespace(
            id=1,
            next_run_date=date(2025, 3, 15),
            next_range_start=date(2025, 3, 20),
            next_range_end=date(2025, 3, 25),
            period_type="Monthly",
            window_days_before=4,
            window_days_after=6,
        )
        assert window_offsets(rule, 5, 5) == (4, 6)

    def test_cadence_default_when_nothing_stored(self):
        rule = SimpleNamespace(
            id=1,
            next_run_date=None,
            next_range_start=None,
            next_range_end=None,
            period_type="Bi-Weekly",
            window_days_before=None,
            window_days_after=None,
        )
        assert window_offsets(rule, 5, 5) == (3, 3)


# ---------------------------------------------------------------------------
# BlacklistMatcher
# ---------------------------------------------------------------------------


def _entry(**overrides) -> SimpleNamespace:
    values = {
        "vendor_code": None,
        "vm_account_id": None,
        "vm_account_number": None,
        "credential_id": None,
        "exclusion_type": ExclusionType.ALL.value,
        "reason": "test",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


_ACCOUNT = SimpleNamespace(
    id=1, vendor_code="ACME", vm_account_id=1001, vm_account_number="ACC-1", credential_id=55
)


class TestBlacklistMatcher:
    def test_empty_matches_nothing(self):
        matcher = BlacklistMatcher([])
        assert len(matcher) == 0
        assert not matcher.is_excluded(_ACCOUNT, ExclusionType.DOWNLOAD)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("vendor_code", "ACME"),
            ("vm_account_id", 1001),
            ("vm_account_number", "ACC-1"),
            ("credential_id", 55),
        ],
    )
    def test_any_identifier_matches(self, field, value):
        matcher = BlacklistMatcher([_entry(**{field: value})])
        assert matcher.is_excluded(_ACCOUNT, ExclusionType.CREDENTIAL_CHECK)

    def test_exclusion_type_scoping(self):
        matcher = BlacklistMatcher([_entry(vendor_code="ACME", exclusion_type=ExclusionType.DOWNLOAD.value)])
        assert matcher.is_excluded(_ACCOUNT, ExclusionType.DOWNLOAD)
        assert not matcher.is_excluded(_ACCOUNT, ExclusionType.CREDENTIAL_CHECK)

    def test_non_matching_identifiers(self):
        matcher = BlacklistMatcher([_entry(vendor_code="OTHER", credential_id=99)])
        assert matcher.match(_ACCOUNT, ExclusionType.DOWNLOAD) is None

    @pytest.mark.asyncio
    async def test_load_uses_effective_entries(self, session):
        await BlacklistRepository(session).add({"vendor_code": "ACME", "effective_end_date": date(2025, 1, 1)})
        matcher = await BlacklistMatcher.load(session, TODAY)
        assert len(matcher) == 0
