"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from adr_api.middleware.json_formatter import JSONFormatter, configure_logging


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "hello %s", args: tuple = ("world",), **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="adr_engine.orchestration.phases",
        level=logging.INFO,
        pathname="phases.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "adr_engine.orchestration.phases"
        assert data["message"] == "hello world"
        assert "timestamp" in data
        assert "orchestration" not in data

    def test_orchestration_context(self, formatter: JSONFormatter) -> None:
        record = _record(orchestration={"request_id": "run-1", "phase": "SCRAPE"})
        data = json.loads(formatter.format(record))
        assert data["orchestration"] == {"request_id": "run-1", "phase": "SCRAPE"}

    def test_exception_included(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        data = json.loads(formatter.format(record))
        assert "RuntimeError: boom" in data["exc_info"]

    def test_single_line(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record(msg="line1\nline2", args=()))


class TestConfigureLogging:
    def test_installs_one_json_handler(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging(structured=True, level=logging.DEBUG)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
