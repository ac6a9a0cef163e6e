"""Alembic environment for the ADR state store.

The URL comes from ``ALEMBIC_DATABASE_URL``, then ``ADR_DATABASE_URL`` (the
same variable the engine reads), then ``alembic.ini``.  Async drivers are
swapped for synchronous ones because Alembic migrates over a blocking
connection: asyncpg becomes psycopg and aiosqlite becomes pysqlite.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from adr_engine.state.tables import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

_FALLBACK_URL = "sqlite:///.adr/state.db"

# Async URL prefix -> synchronous equivalent.
_SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql+psycopg://",
    "postgresql://": "postgresql+psycopg://",
    "sqlite+aiosqlite://": "sqlite://",
}


def _get_database_url() -> str:
    url = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or os.environ.get("ADR_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
        or _FALLBACK_URL
    )
    for async_prefix, sync_prefix in _SYNC_DRIVERS.items():
        if url.startswith(async_prefix):
            url = sync_prefix + url[len(async_prefix) :]
            break
    # asyncpg spells it ssl=, libpq spells it sslmode=.
    return url.replace("ssl=require", "sslmode=require")


def _context_options() -> dict[str, object]:
    return {"target_metadata": target_metadata, "compare_type": True}


def run_migrations_offline() -> None:
    """Write the migration SQL to stdout instead of executing it."""
    context.configure(
        url=_get_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _get_database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    try:
        with connectable.connect() as connection:
            # SQLite cannot ALTER most constraints in place.
            context.configure(
                connection=connection,
                render_as_batch=connection.dialect.name == "sqlite",
                **_context_options(),
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        connectable.dispose()


if context.is_offline_mode():
    logger.info("Generating offline migration SQL")
    run_migrations_offline()
else:
    run_migrations_online()
