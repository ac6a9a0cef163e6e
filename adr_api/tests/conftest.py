"""Shared fixtures for ADR API tests.

The application runs against a real SQLite file under ``tmp_path`` and a
coordinator whose provider traffic goes to an ``httpx.MockTransport``.
The lifespan is not triggered by ``ASGITransport``, so the fixtures
perform the same start-up steps themselves.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from adr_api.dependencies import (
    dispose_engine,
    get_session_factory,
    init_engine,
    init_run_manager,
    reset_run_manager,
)
from adr_api.main import create_app
from adr_api.services.run_manager import RunManager
from adr_engine.config import Settings, load_settings
from adr_engine.models.job import JobStatus, JobType
from adr_engine.orchestration.coordinator import OrchestrationCoordinator
from adr_engine.provider.client import ProviderClient
from adr_engine.reporting.summary import RunNotification, RunReporter
from adr_engine.state.database import create_tables, session_scope
from adr_engine.state.repository import AccountRepository, JobRepository


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[RunNotification] = []

    async def send(self, notification: RunNotification) -> None:
        self.sent.append(notification)


def _provider_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/IngestAdrRequest"):
        return httpx.Response(200, json={"StatusId": 1, "IndexId": 1})
    return httpx.Response(200, json={"StatusId": 6})


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine_settings(tmp_path: Path) -> Settings:
    return load_settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        max_parallel_requests=2,
    )


@pytest_asyncio.fixture()
async def run_manager(engine_settings: Settings) -> AsyncGenerator[RunManager, None]:
    """Initialised engine, tables, coordinator and run manager."""
    engine = init_engine(engine_settings)
    await create_tables(engine)
    provider = ProviderClient("http://provider.test/api/adr/", transport=httpx.MockTransport(_provider_handler))
    coordinator = OrchestrationCoordinator(
        engine_settings,
        get_session_factory(),
        provider,
        reporter=RunReporter(RecordingSink()),
    )
    manager = init_run_manager(coordinator)
    yield manager
    await manager.shutdown(grace_seconds=5.0)
    await coordinator.close()
    reset_run_manager()
    await dispose_engine()


@pytest.fixture()
def coordinator(run_manager: RunManager) -> OrchestrationCoordinator:
    return run_manager.coordinator


@pytest.fixture()
def app(run_manager: RunManager) -> FastAPI:
    return create_app()


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


class DataFactory:
    """Commits accounts and jobs through the application's session factory."""

    def __init__(self) -> None:
        self._accounts = 0

    async def account(self, **overrides: Any) -> int:
        self._accounts += 1
        n = 4000 + self._accounts
        values: dict[str, Any] = {
            "vm_account_id": n,
            "vm_account_number": f"ACC-{n}",
            "interface_account_id": f"IF-{n}",
            "credential_id": 900 + self._accounts,
            "vendor_code": "ACME",
            "period_type": "Monthly",
            "next_run_date": date(2025, 3, 15),
            "next_range_start": date(2025, 3, 10),
            "next_range_end": date(2025, 3, 20),
        }
        values.update(overrides)
        async with session_scope(get_session_factory()) as session:
            row = await AccountRepository(session).add(values)
            return row.id

    async def job(self, account_id: int, **overrides: Any) -> int:
        values: dict[str, Any] = {
            "account_id": account_id,
            "job_type": JobType.DOWNLOAD_INVOICE.value,
            "status": JobStatus.PENDING.value,
            "vendor_code": "ACME",
            "credential_id": 901,
            "period_type": "Monthly",
            "period_start": date(2025, 3, 10),
            "period_end": date(2025, 3, 20),
            "next_run_date": date(2025, 3, 15),
        }
        values.update(overrides)
        async with session_scope(get_session_factory()) as session:
            job_id = await JobRepository(session).create_if_absent(values)
            assert job_id is not None
            return job_id


@pytest.fixture()
def factory(run_manager: RunManager) -> DataFactory:
    return DataFactory()
