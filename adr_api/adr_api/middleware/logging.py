"""Access logging for the ADR API.

One ``adr_api.access`` record per request, carrying a ``request`` extra that
:class:`~adr_api.middleware.json_formatter.JSONFormatter` emits as a
structured field.  Run control calls arrive from the scheduler, the
operator console and scripts, so every request is tagged with a correlation
id that is echoed back in ``X-Correlation-ID``.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("adr_api.access")

_CORRELATION_HEADER = "X-Correlation-ID"

# Function keys and bearer tokens guard the provider and the run surface.
_SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "x-functions-key", "cookie"})


def _safe_headers(request: Request) -> dict[str, str]:
    return {key: "***" if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log its outcome and latency.

    An exception escaping the app is logged as a 500 before it propagates.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        started = time.monotonic()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            payload: dict[str, Any] = {
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query or None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": _safe_headers(request),
            }
            logger.log(
                _level_for(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": payload},
            )
