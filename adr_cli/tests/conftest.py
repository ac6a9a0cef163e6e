"""Shared fixtures for ADR CLI tests."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture()
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Point the CLI at a fresh SQLite file for the duration of the test."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("ADR_DATABASE_URL", url)
    monkeypatch.setenv("ADR_NOTIFICATIONS_ENABLED", "false")
    monkeypatch.delenv("ADR_ACCOUNT_SOURCE_URL", raising=False)
    return url
