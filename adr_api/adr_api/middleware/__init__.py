"""Middleware components for the ADR API."""

from __future__ import annotations

from adr_api.middleware.json_formatter import JSONFormatter
from adr_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
]
