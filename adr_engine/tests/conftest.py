"""Shared fixtures for ADR engine tests.

Every test gets its own SQLite file under ``tmp_path`` so that concurrent
per-item sessions of the coordinator behave as they do against a real
database.  :class:`Seeder` inserts committed rows with sensible defaults;
tests override only the fields they care about.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from datetime import date
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from adr_engine.models.job import ExecutionOutcome, JobStatus, JobType, RequestType
from adr_engine.state.database import create_tables, get_engine, get_session_factory, session_scope
from adr_engine.state.repository import (
    AccountRepository,
    AccountRuleRepository,
    JobExecutionRepository,
    JobRepository,
)
from adr_engine.state.tables import AccountRuleTable, AccountTable, JobTable

_account_numbers = itertools.count(1)


class Seeder:
    """Inserts rows in their own committed transactions."""

    def __init__(self, factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = factory

    async def account(self, **overrides: Any) -> int:
        n = next(_account_numbers)
        values: dict[str, Any] = {
            "vm_account_id": 1000 + n,
            "vm_account_number": f"ACC-{n:04d}",
            "interface_account_id": f"IF-{n}",
            "credential_id": 500 + n,
            "vendor_code": "ACME",
            "period_type": "Monthly",
            "next_run_date": date(2025, 3, 15),
            "next_range_start": date(2025, 3, 10),
            "next_range_end": date(2025, 3, 20),
        }
        values.update(overrides)
        async with session_scope(self._factory) as session:
            row = await AccountRepository(session).add(values)
            return row.id

    async def rule(self, account_id: int, **overrides: Any) -> int:
        job_type = overrides.pop("job_type", JobType.DOWNLOAD_INVOICE)
        values: dict[str, Any] = {
            "period_type": "Monthly",
            "day_of_month": 15,
            "next_run_date": date(2025, 3, 15),
            "next_range_start": date(2025, 3, 10),
            "next_range_end": date(2025, 3, 20),
            "window_days_before": 5,
            "window_days_after": 5,
        }
        values.update(overrides)
        async with session_scope(self._factory) as session:
            row = await AccountRuleRepository(session).create(account_id, job_type, values)
            assert row is not None
            return row.id

    async def job(self, account_id: int, rule_id: int | None = None, **overrides: Any) -> int:
        values: dict[str, Any] = {
            "account_id": account_id,
            "rule_id": rule_id,
            "job_type": JobType.DOWNLOAD_INVOICE.value,
            "status": JobStatus.PENDING.value,
            "vendor_code": "ACME",
            "credential_id": 777,
            "period_type": "Monthly",
            "period_start": date(2025, 3, 10),
            "period_end": date(2025, 3, 20),
            "next_run_date": date(2025, 3, 15),
        }
        values.update(overrides)
        async with session_scope(self._factory) as session:
            job_id = await JobRepository(session).create_if_absent(values)
            assert job_id is not None
            return job_id

    async def execution(self, job_id: int, **overrides: Any) -> int:
        values: dict[str, Any] = {
            "job_id": job_id,
            "request_type": int(RequestType.DOWNLOAD_INVOICE),
            "outcome": ExecutionOutcome.DISPATCHED.value,
        }
        values.update(overrides)
        async with session_scope(self._factory) as session:
            row = await JobExecutionRepository(session).append(values)
            return row.id

    async def get_job(self, job_id: int) -> JobTable:
        async with session_scope(self._factory) as session:
            row = await JobRepository(session).get(job_id)
            assert row is not None
            return row

    async def get_rule(self, rule_id: int) -> AccountRuleTable:
        async with session_scope(self._factory) as session:
            row = await AccountRuleRepository(session).get(rule_id)
            assert row is not None
            return row

    async def get_account(self, account_id: int) -> AccountTable:
        async with session_scope(self._factory) as session:
            row = await AccountRepository(session).get(account_id)
            assert row is not None
            return row


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with all tables created."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)
