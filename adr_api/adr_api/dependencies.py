"""FastAPI dependency injection for settings, sessions and the run manager."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from adr_api.config import APISettings, load_api_settings
from adr_api.services.run_manager import RunManager
from adr_engine.config import Settings, load_settings
from adr_engine.orchestration.coordinator import OrchestrationCoordinator
from adr_engine.state.database import get_engine, get_session_factory as engine_session_factory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> Settings:
    """Return the cached engine :class:`~adr_engine.config.Settings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[Settings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: Settings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    _session_factory = engine_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

_run_manager: RunManager | None = None


def init_run_manager(coordinator: OrchestrationCoordinator) -> RunManager:
    global _run_manager  # noqa: PLW0603
    _run_manager = RunManager(coordinator)
    return _run_manager


def reset_run_manager() -> None:
    global _run_manager  # noqa: PLW0603
    _run_manager = None


def get_run_manager() -> RunManager:
    if _run_manager is None:
        raise RuntimeError("Run manager has not been initialised.")
    return _run_manager


def get_coordinator(manager: Annotated[RunManager, Depends(get_run_manager)]) -> OrchestrationCoordinator:
    return manager.coordinator


def get_tenant_id(settings: EngineSettingsDep) -> str:
    return settings.tenant_id


RunManagerDep = Annotated[RunManager, Depends(get_run_manager)]
CoordinatorDep = Annotated[OrchestrationCoordinator, Depends(get_coordinator)]
TenantDep = Annotated[str, Depends(get_tenant_id)]
