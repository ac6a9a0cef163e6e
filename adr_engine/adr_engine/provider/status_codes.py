"""Provider status code table.

The scraping provider reports progress as small integer codes.  Their
meaning (description, error flag, finality) is configuration: the built-in
table below covers codes 1-15, and a JSON file can add new codes or override
existing ones without touching code::

    {"16": {"name": "Throttled", "description": "Throttled by vendor", "is_error": true}}

INVARIANT: only codes whose entry is ``is_final`` move a job out of its
in-flight states; every unknown code is treated as non-final.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class StatusCode(BaseModel):
    """One provider status code."""

    code: int = Field(..., ge=0)
    name: str
    description: str
    is_error: bool = False
    is_final: bool = False


# Well-known codes referenced by the state machine.
INSERTED = 1
INSERTED_WITH_PRIORITY = 2
INVALID_CREDENTIAL_ID = 3
CANNOT_CONNECT_TO_VCM = 4
CANNOT_INSERT_INTO_QUEUE = 5
SENT_TO_AI = 6
CANNOT_CONNECT_TO_AI = 7
CANNOT_SAVE_RESULT = 8
NEEDS_HUMAN_REVIEW = 9
RECEIVED_FROM_AI = 10
COMPLETE = 11
LOGIN_ATTEMPT_SUCCEEDED = 12
NO_DOCUMENTS_FOUND = 13
FAILED_TO_PROCESS_ALL_DOCUMENTS = 14
NO_DOCUMENTS_PROCESSED = 15

# Codes that mean a credential check failed on the provider side.
CREDENTIAL_ERROR_CODES: frozenset[int] = frozenset(
    {INVALID_CREDENTIAL_ID, CANNOT_CONNECT_TO_VCM, CANNOT_INSERT_INTO_QUEUE, CANNOT_CONNECT_TO_AI, CANNOT_SAVE_RESULT}
)

_BUILTIN: tuple[StatusCode, ...] = (
    StatusCode(code=1, name="Inserted", description="Inserted"),
    StatusCode(code=2, name="InsertedWithPriority", description="Inserted With Priority"),
    StatusCode(
        code=3, name="InvalidCredentialId", description="Invalid CredentialID", is_error=True, is_final=True
    ),
    StatusCode(
        code=4, name="CannotConnectToVcm", description="Cannot Connect To VCM", is_error=True, is_final=True
    ),
    StatusCode(
        code=5,
        name="CannotInsertIntoQueue",
        description="Cannot Insert Into Queue",
        is_error=True,
        is_final=True,
    ),
    StatusCode(code=6, name="SentToAi", description="Sent To AI"),
    StatusCode(code=7, name="CannotConnectToAi", description="Cannot Connect To AI", is_error=True, is_final=True),
    StatusCode(code=8, name="CannotSaveResult", description="Cannot Save Result", is_error=True, is_final=True),
    StatusCode(code=9, name="NeedsHumanReview", description="Needs Human Review", is_error=True, is_final=True),
    StatusCode(code=10, name="ReceivedFromAi", description="Received From AI"),
    StatusCode(code=11, name="Complete", description="Complete", is_final=True),
    StatusCode(code=12, name="LoginAttemptSucceeded", description="Login Attempt Succeeded"),
    StatusCode(code=13, name="NoDocumentsFound", description="No Documents Found"),
    StatusCode(
        code=14,
        name="FailedToProcessAllDocuments",
        description="Failed To Process All Documents",
        is_error=True,
        is_final=True,
    ),
    StatusCode(code=15, name="NoDocumentsProcessed", description="No Documents Processed"),
)


class StatusCodeTable:
    """Lookup of provider status codes with data-driven extension."""

    def __init__(self, codes: Iterable[StatusCode] = _BUILTIN) -> None:
        self._codes: dict[int, StatusCode] = {c.code: c for c in codes}

    def __contains__(self, code: object) -> bool:
        return code in self._codes

    def __len__(self) -> int:
        return len(self._codes)

    def get(self, code: int | None) -> StatusCode | None:
        if code is None:
            return None
        return self._codes.get(code)

    def is_final(self, code: int | None) -> bool:
        entry = self.get(code)
        return entry.is_final if entry is not None else False

    def is_error(self, code: int | None) -> bool:
        entry = self.get(code)
        return entry.is_error if entry is not None else False

    def describe(self, code: int | None) -> str:
        entry = self.get(code)
        if entry is not None:
            return entry.description
        return f"Unknown status {code}" if code is not None else "No status"

    def final_codes(self) -> frozenset[int]:
        return frozenset(c.code for c in self._codes.values() if c.is_final)

    def with_overrides(self, overrides: Mapping[int | str, Mapping[str, Any]]) -> StatusCodeTable:
        """Return a new table with *overrides* merged over this one.

        Each override may be partial for an existing code; new codes need at
        least a ``name``.
        """
        merged = dict(self._codes)
        for raw_code, fields in overrides.items():
            code = int(raw_code)
            base = merged.get(code)
            if base is not None:
                merged[code] = base.model_copy(update=dict(fields))
            else:
                payload = {"description": fields.get("name", f"Status {code}"), **fields, "code": code}
                merged[code] = StatusCode.model_validate(payload)
        return StatusCodeTable(merged.values())


def load_status_table(path: Path | str | None = None) -> StatusCodeTable:
    """Build the status table, merging the JSON file at *path* when given.

    Raises
    ------
    ValueError
        If the file is not a JSON object keyed by status code.
    """
    table = StatusCodeTable()
    if path is None:
        return table
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Status code file {path} must contain a JSON object keyed by code")
    table = table.with_overrides(data)
    logger.info("Loaded %d status code overrides from %s", len(data), path)
    return table


DEFAULT_STATUS_TABLE = StatusCodeTable()
