"""Engine and session helpers for the ADR state store.

The URL scheme picks the backend:

* ``postgresql+asyncpg://`` for the shared production database, pooled;
* ``sqlite+aiosqlite://`` for local runs and tests (see
  :mod:`adr_engine.state.sqlite_adapter`).

Every unit of work (a phase item, an API request, a CLI command) opens its
own session through :func:`session_scope`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from adr_engine.state.sqlite_adapter import get_local_engine

logger = logging.getLogger(__name__)

# Statement and lock timeouts (ms) applied to every Postgres connection.
_PG_SERVER_SETTINGS = {"statement_timeout": "30000", "lock_timeout": "10000"}

_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def _sqlite_path(database_url: str) -> str:
    # sqlite+aiosqlite:///path/to/db; a bare scheme means in-memory.
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``Settings.database_url``.
    pool_size, max_overflow:
        Connection pool bounds.  Only meaningful for PostgreSQL; the SQLite
        engine manages its own connections.
    """
    if database_url.startswith("sqlite"):
        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("Postgres state engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory bound to *engine*, creating it once."""
    factory = _session_factories.get(id(engine))
    # Ids are reused once a disposed engine is collected.
    if factory is None or factory.kw.get("bind") is not engine:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[id(engine)] = factory
    return factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on clean exit and rolls back on error."""
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing state tables (local and test databases only).

    Shared databases are managed with Alembic instead.
    """
    from adr_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("State tables created/verified on %s", engine.url.render_as_string(hide_password=True))
