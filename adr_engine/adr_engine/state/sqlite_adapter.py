"""SQLite backend for local runs and tests.

Uses the same ORM tables as PostgreSQL through ``aiosqlite``.  Each
connection is switched to WAL with a generous busy timeout so the
coordinator's concurrent per-item sessions queue for the write lock instead
of failing with ``database is locked``.  JSON columns are stored as text.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=30000",
)


def _install_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()


def get_local_engine(db_path: Path | str = ".adr/state.db") -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*.

    The parent directory is created when missing.  ``":memory:"`` gives a
    throwaway database that only lives as long as its connection.
    """
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, connect_args={"check_same_thread": False})
    _install_pragmas(engine)
    logger.info("SQLite state store at %s", url)
    return engine
