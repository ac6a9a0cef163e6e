"""State persistence layer (SQLAlchemy async; PostgreSQL or SQLite)."""

from adr_engine.state.database import create_tables, get_engine, get_session_factory, session_scope
from adr_engine.state.repository import (
    AccountRepository,
    AccountRuleRepository,
    ArchiveRepository,
    BlacklistRepository,
    JobExecutionRepository,
    JobRepository,
    OrchestrationRunRepository,
    RunSlotRepository,
)

__all__ = [
    "AccountRepository",
    "AccountRuleRepository",
    "ArchiveRepository",
    "BlacklistRepository",
    "JobExecutionRepository",
    "JobRepository",
    "OrchestrationRunRepository",
    "RunSlotRepository",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
