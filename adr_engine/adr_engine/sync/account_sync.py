"""Account synchronisation from the source-of-truth feed (phase 1).

The feed reports every account with its statistically derived billing
cadence.  Sync upserts on ``(vm_account_id, vm_account_number)``, soft
deletes accounts the feed no longer reports, and never touches the billing
fields of an account an operator has manually overridden.

INVARIANT: Running a sync twice with identical input changes nothing the
second time.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from adr_engine.errors import AccountSourceError
from adr_engine.executor.retry import RetryConfig, async_retry_with_backoff
from adr_engine.models.account import AccountSyncRow
from adr_engine.models.run import SyncResult
from adr_engine.state.repository import AccountRepository

logger = logging.getLogger(__name__)

# Fields refreshed on every sync.
IDENTITY_FIELDS: tuple[str, ...] = (
    "interface_account_id",
    "client_id",
    "client_name",
    "credential_id",
    "vendor_code",
)

# Billing cadence fields; preserved while an account is manually overridden.
OVERRIDE_PROTECTED_FIELDS: tuple[str, ...] = (
    "period_type",
    "period_days",
    "median_days",
    "invoice_count",
    "last_invoice_date",
    "expected_next_date",
    "expected_range_start",
    "expected_range_end",
    "next_run_date",
    "next_range_start",
    "next_range_end",
    "days_until_next_run",
    "next_run_status",
    "historical_billing_status",
)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class AccountSource(Protocol):
    """Anything that can produce the current account list."""

    async def fetch_accounts(self) -> list[AccountSyncRow]: ...


def _validate_rows(raw_rows: Any, origin: str) -> tuple[list[AccountSyncRow], list[str]]:
    if not isinstance(raw_rows, list):
        raise AccountSourceError(f"{origin} did not return a JSON array")
    rows: list[AccountSyncRow] = []
    rejected: list[str] = []
    for index, raw in enumerate(raw_rows):
        try:
            rows.append(AccountSyncRow.model_validate(raw))
        except ValidationError as exc:
            vm_id = raw.get("vm_account_id") if isinstance(raw, dict) else None
            message = f"Row {index} (vm_account_id={vm_id}): {exc.error_count()} validation error(s)"
            logger.warning("Rejected account row from %s: %s", origin, message)
            rejected.append(message)
    return rows, rejected


class StaticAccountSource:
    """Account source backed by an in-memory list or a JSON file."""

    def __init__(self, rows: list[AccountSyncRow], rejected: list[str] | None = None) -> None:
        self._rows = rows
        self.rejected: list[str] = rejected or []

    @classmethod
    def from_file(cls, path: Path | str) -> StaticAccountSource:
        path = Path(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise AccountSourceError(f"Cannot read account file {path}: {exc}") from exc
        rows, rejected = _validate_rows(raw, str(path))
        return cls(rows, rejected)

    async def fetch_accounts(self) -> list[AccountSyncRow]:
        return list(self._rows)


class HttpAccountSource:
    """Account source reading a JSON array from an HTTP endpoint.

    Parameters
    ----------
    url:
        Feed endpoint returning a JSON array of account rows.
    timeout:
        Request timeout in seconds.  The feed is large; the default is
        generous.
    retry:
        Backoff for transport errors and 5xx responses.  The feed is a
        read, so retrying is safe.
    transport:
        Optional ``httpx`` transport, used by tests.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 300.0,
        *,
        retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._retry = retry or RetryConfig(max_retries=2, base_delay=2.0, max_delay=30.0)
        self._transport = transport
        self.rejected: list[str] = []

    async def _get(self) -> Any:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.get(self._url, headers={"Accept": "application/json"})
            except httpx.HTTPError as exc:
                raise AccountSourceError(f"Account feed request failed: {exc}") from exc
        if response.status_code >= 500:
            raise AccountSourceError(f"Account feed returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ValueError(f"Account feed returned HTTP {response.status_code}")
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise ValueError(f"Account feed returned malformed JSON: {exc}") from exc

    async def fetch_accounts(self) -> list[AccountSyncRow]:
        try:
            payload = await async_retry_with_backoff(
                self._get, self._retry, (AccountSourceError,), label="Account feed fetch"
            )
        except ValueError as exc:
            raise AccountSourceError(str(exc)) from exc
        rows, self.rejected = _validate_rows(payload, self._url)
        logger.info("Fetched %d account rows (%d rejected) from %s", len(rows), len(self.rejected), self._url)
        return rows


# ---------------------------------------------------------------------------
# Sync service
# ---------------------------------------------------------------------------


class AccountSyncService:
    """Upserts feed rows into ``adr_accounts``."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._accounts = AccountRepository(session, tenant_id)

    async def sync_accounts(self, rows: list[AccountSyncRow], now: datetime) -> SyncResult:
        """Apply one full snapshot of the feed.

        Parameters
        ----------
        rows:
            Every account the source currently reports.  Later duplicates
            of a key win.
        now:
            Stamped on ``last_synced_at`` of changed rows.

        Returns
        -------
        SyncResult
            Counts of inserted, updated and soft-deleted accounts.
        """
        result = SyncResult()
        existing = await self._accounts.index_by_sync_key()

        latest: dict[tuple[int, str], AccountSyncRow] = {}
        for row in rows:
            if row.key in latest:
                logger.warning("Duplicate account key %s in feed; keeping the last row", row.key)
            latest[row.key] = row

        for key, row in latest.items():
            result.total_processed += 1
            account = existing.get(key)
            if account is None:
                await self._accounts.add({**row.model_dump(), "last_synced_at": now})
                result.inserted += 1
                continue

            changes = self._diff(account, row)
            if changes:
                await self._accounts.update(account.id, {**changes, "last_synced_at": now})
                result.updated += 1

        if not latest and existing:
            logger.warning("Account feed was empty; not marking %d accounts deleted", len(existing))
            return result

        missing = [acc.id for key, acc in existing.items() if key not in latest and not acc.is_deleted]
        result.marked_deleted = await self._accounts.mark_deleted(missing)

        logger.info(
            "Account sync: processed=%d inserted=%d updated=%d deleted=%d",
            result.total_processed,
            result.inserted,
            result.updated,
            result.marked_deleted,
        )
        return result

    @staticmethod
    def _diff(account: Any, row: AccountSyncRow) -> dict[str, Any]:
        fields = IDENTITY_FIELDS
        if not account.is_manually_overridden:
            fields = fields + OVERRIDE_PROTECTED_FIELDS
        changes = {name: getattr(row, name) for name in fields if getattr(account, name) != getattr(row, name)}
        if account.is_deleted:
            changes["is_deleted"] = False
        return changes
