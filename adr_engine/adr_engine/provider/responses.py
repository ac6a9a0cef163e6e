"""Parsing of scraping-provider responses into a tagged result.

The provider answers in several shapes depending on endpoint and version:
an empty body, a JSON object, a JSON array of objects, or a bare integer
index id.  Each shape has one parser; :func:`parse_response` tries them in
a fixed order (empty, object, array, integer) and falls back to
``UNEXPECTED_FORMAT``.  Nothing downstream inspects raw bodies.

A non-2xx body never counts as success, but the provider may already have
created an index record, so an ``IndexId`` in the error body is preserved.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from adr_engine.provider.status_codes import DEFAULT_STATUS_TABLE, StatusCodeTable

logger = logging.getLogger(__name__)

# Raw bodies stored on executions and in error messages are cut to this length.
MAX_RAW_RESPONSE_CHARS = 500


class ResponseKind(str, Enum):
    STRUCTURED = "structured"
    INDEX_ONLY = "index_only"
    EMPTY = "empty"
    ERROR = "error"
    UNEXPECTED_FORMAT = "unexpected_format"


_SUCCESS_KINDS = frozenset({ResponseKind.STRUCTURED, ResponseKind.INDEX_ONLY, ResponseKind.EMPTY})


class ProviderResult(BaseModel):
    """Outcome of one provider call, tagged by :class:`ResponseKind`."""

    kind: ResponseKind
    http_status: int | None = None
    status_id: int | None = None
    status_description: str | None = None
    index_id: int | None = None
    is_error: bool = False
    is_final: bool = False
    error_message: str | None = None
    raw_response: str | None = None
    request_payload: dict[str, Any] | None = Field(
        default=None, description="JSON payload sent with the request, when there was one."
    )
    transient: bool = Field(
        default=False, description="Failure was a timeout or transport error and may succeed on retry."
    )

    @property
    def is_success(self) -> bool:
        return self.kind in _SUCCESS_KINDS

    @property
    def is_accepted(self) -> bool:
        """The request went through: a success that is not a final error."""
        return self.is_success and not (self.is_final and self.is_error)


def truncate(text: str | None, limit: int = MAX_RAW_RESPONSE_CHARS) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "..."


def _field(obj: dict[str, Any], name: str) -> Any:
    """Case-insensitive key lookup."""
    if name in obj:
        return obj[name]
    lowered = name.lower()
    for key, value in obj.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _from_object(obj: dict[str, Any], table: StatusCodeTable) -> ProviderResult:
    status_id = _as_int(_field(obj, "StatusId"))
    description = _field(obj, "StatusDescription") or _field(obj, "Status")
    if description is None and status_id is not None:
        description = table.describe(status_id)
    return ProviderResult(
        kind=ResponseKind.STRUCTURED,
        status_id=status_id,
        status_description=description,
        index_id=_as_int(_field(obj, "IndexId")),
        is_error=bool(_field(obj, "IsError")),
        # Status endpoints may omit IsFinal; the code table decides then.
        is_final=bool(_field(obj, "IsFinal")) or table.is_final(status_id),
    )


# ---------------------------------------------------------------------------
# Shape parsers: each returns None when the body is not its shape.
# ---------------------------------------------------------------------------


def _parse_empty(body: str, table: StatusCodeTable) -> ProviderResult | None:
    if body.strip():
        return None
    return ProviderResult(kind=ResponseKind.EMPTY, status_description="ADR API returned no content.")


def _parse_object(body: str, table: StatusCodeTable) -> ProviderResult | None:
    if not body.lstrip().startswith("{"):
        return None
    data = json.loads(body)
    if not isinstance(data, dict) or not data:
        return ProviderResult(
            kind=ResponseKind.ERROR, is_error=True, error_message="ADR API returned an empty JSON object."
        )
    return _from_object(data, table)


def _parse_array(body: str, table: StatusCodeTable) -> ProviderResult | None:
    if not body.lstrip().startswith("["):
        return None
    data = json.loads(body)
    first = data[0] if isinstance(data, list) and data else None
    if not isinstance(first, dict):
        return ProviderResult(
            kind=ResponseKind.ERROR, is_error=True, error_message="ADR API returned an empty JSON array."
        )
    logger.debug("Provider returned an array response; using the first element")
    return _from_object(first, table)


def _parse_integer(body: str, table: StatusCodeTable) -> ProviderResult | None:
    text = body.strip()
    try:
        index_id = int(text)
    except ValueError:
        return None
    return ProviderResult(
        kind=ResponseKind.INDEX_ONLY,
        index_id=index_id,
        status_description="Request submitted successfully",
    )


_PARSERS: tuple[Callable[[str, StatusCodeTable], ProviderResult | None], ...] = (
    _parse_empty,
    _parse_object,
    _parse_array,
    _parse_integer,
)


def _extract_error_index_id(body: str) -> int | None:
    if not body.lstrip().startswith("{"):
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return _as_int(_field(data, "IndexId"))


def parse_response(
    http_status: int,
    body: str | None,
    table: StatusCodeTable = DEFAULT_STATUS_TABLE,
) -> ProviderResult:
    """Classify a provider HTTP response.

    Parameters
    ----------
    http_status:
        HTTP status code of the response.
    body:
        Response text; ``None`` is treated as empty.
    table:
        Status code table used to derive finality and descriptions.

    Returns
    -------
    ProviderResult
        The tagged result with ``raw_response`` truncated for storage.
    """
    body = body or ""
    raw = truncate(body)

    if not 200 <= http_status < 300:
        index_id = _extract_error_index_id(body)
        if index_id is not None:
            logger.warning("Provider returned HTTP %d with index id %d", http_status, index_id)
        return ProviderResult(
            kind=ResponseKind.ERROR,
            http_status=http_status,
            index_id=index_id,
            is_error=True,
            error_message=f"API returned {http_status}: {raw}",
            raw_response=raw,
            transient=http_status >= 500 or http_status == 429,
        )

    for parser in _PARSERS:
        try:
            parsed = parser(body, table)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Malformed provider response: %s", raw)
            return ProviderResult(
                kind=ResponseKind.UNEXPECTED_FORMAT,
                http_status=http_status,
                is_error=True,
                error_message=f"Error deserializing ADR API response: {exc}. Raw: {raw}",
                raw_response=raw,
            )
        if parsed is not None:
            return parsed.model_copy(update={"http_status": http_status, "raw_response": raw})

    logger.warning("Provider returned unexpected content: %s", raw)
    return ProviderResult(
        kind=ResponseKind.UNEXPECTED_FORMAT,
        http_status=http_status,
        is_error=True,
        error_message=f"ADR API returned unexpected content: {raw}",
        raw_response=raw,
    )


def transport_failure(message: str, *, timeout: bool = False) -> ProviderResult:
    """Result for a call that never produced an HTTP response."""
    return ProviderResult(
        kind=ResponseKind.ERROR,
        is_error=True,
        error_message=message,
        transient=True,
        status_description="Request timed out" if timeout else None,
    )
