"""Async HTTP client for the scraping provider.

Two kinds of calls exist:

* ``IngestAdrRequest`` (credential check, invoice download) is **billable**.
  It is never retried in-process; the coordinator gates it through the
  idempotency ledger and schedules durable retries on failure.
* ``GetRequestStatusByJobId`` is a read and is retried with backoff on
  transport errors and 5xx answers.

Every call returns a :class:`~adr_engine.provider.responses.ProviderResult`;
transport failures and timeouts are folded into ``ERROR`` results marked
``transient`` rather than raised, so one bad call never aborts a phase.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any

import httpx
from pydantic import BaseModel, Field

from adr_engine.config import Settings
from adr_engine.errors import ProviderError, ProviderTimeoutError
from adr_engine.executor.retry import RetryConfig, async_retry_with_backoff
from adr_engine.models.job import RequestType
from adr_engine.provider.responses import ProviderResult, parse_response, transport_failure
from adr_engine.provider.status_codes import DEFAULT_STATUS_TABLE, StatusCodeTable, load_status_table

logger = logging.getLogger(__name__)

_INGEST_PATH = "IngestAdrRequest"
_STATUS_PATH = "GetRequestStatusByJobId/{job_id}"


class AdrRequest(BaseModel):
    """Parameters of one billable provider request."""

    request_type: RequestType
    job_id: int
    credential_id: int
    account_id: int = Field(..., description="External (vendor-management) account id.")
    interface_account_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_last_attempt: bool = False

    def to_payload(self, source_application_name: str, recipient_email: str | None) -> dict[str, Any]:
        return {
            "ADRRequestTypeId": int(self.request_type),
            "CredentialId": self.credential_id,
            "StartDate": self.start_date.isoformat() if self.start_date else "",
            "EndDate": self.end_date.isoformat() if self.end_date else "",
            "SourceApplicationName": source_application_name,
            "RecipientEmail": recipient_email or "",
            "JobId": self.job_id,
            "AccountId": self.account_id,
            "InterfaceAccountId": self.interface_account_id,
            "IsLastAttempt": self.is_last_attempt,
        }


class ProviderClient:
    """Thin async wrapper around the scraping provider REST API.

    Parameters
    ----------
    base_url:
        Root URL of the provider API; endpoint names are appended to it.
    timeout:
        Per-request timeout in seconds.
    source_application_name:
        Sent as ``SourceApplicationName`` on every ingest request.
    recipient_email:
        Sent as ``RecipientEmail`` on every ingest request.
    api_key:
        Optional key sent in the ``x-functions-key`` header.
    status_table:
        Code table used when classifying responses.
    status_retry:
        Backoff for status reads.
    transport:
        Custom httpx transport; tests pass an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        *,
        source_application_name: str = "ADR Orchestrator",
        recipient_email: str | None = None,
        api_key: str | None = None,
        status_table: StatusCodeTable = DEFAULT_STATUS_TABLE,
        status_retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url.endswith("/"):
            base_url += "/"
        self._source_application_name = source_application_name
        self._recipient_email = recipient_email
        self._status_table = status_table
        self._status_retry = status_retry or RetryConfig(max_retries=2, base_delay=1.0, max_delay=10.0)

        default_headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            default_headers["x-functions-key"] = api_key

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers=default_headers,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ProviderClient:
        api_key = settings.provider_api_key.get_secret_value() if settings.provider_api_key else None
        return cls(
            settings.provider_base_url,
            settings.provider_timeout_seconds,
            source_application_name=settings.source_application_name,
            recipient_email=settings.recipient_email,
            api_key=api_key,
            status_table=load_status_table(settings.status_codes_path),
            transport=transport,
        )

    @property
    def status_table(self) -> StatusCodeTable:
        return self._status_table

    async def __aenter__(self) -> ProviderClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # -- Billable requests ----------------------------------------------------

    async def verify_credential(self, request: AdrRequest) -> ProviderResult:
        """Submit a login attempt (request type 1)."""
        if request.request_type is not RequestType.ATTEMPT_LOGIN:
            request = request.model_copy(update={"request_type": RequestType.ATTEMPT_LOGIN})
        return await self._ingest(request)

    async def request_scrape(self, request: AdrRequest) -> ProviderResult:
        """Submit an invoice download (request type 2)."""
        if request.request_type is not RequestType.DOWNLOAD_INVOICE:
            request = request.model_copy(update={"request_type": RequestType.DOWNLOAD_INVOICE})
        return await self._ingest(request)

    def build_payload(self, request: AdrRequest) -> dict[str, Any]:
        """JSON body sent for *request*; recorded on the ledger before dispatch."""
        return request.to_payload(self._source_application_name, self._recipient_email)

    async def _ingest(self, request: AdrRequest) -> ProviderResult:
        payload = self.build_payload(request)
        try:
            response = await self._client.post(_INGEST_PATH, content=json.dumps(payload))
        except httpx.TimeoutException as exc:
            logger.warning("Provider request for job %d timed out: %s", request.job_id, exc)
            return transport_failure(f"Provider request timed out: {exc}", timeout=True).model_copy(
                update={"request_payload": payload}
            )
        except httpx.RequestError as exc:
            logger.warning("Provider request for job %d failed: %s", request.job_id, exc)
            return transport_failure(f"Provider request failed: {exc}").model_copy(
                update={"request_payload": payload}
            )

        result = parse_response(response.status_code, response.text, self._status_table)
        if not result.is_success:
            logger.warning(
                "Provider rejected %s for job %d: %s",
                request.request_type.name,
                request.job_id,
                result.error_message,
            )
        return result.model_copy(update={"request_payload": payload})

    # -- Status reads ---------------------------------------------------------

    async def check_status(self, job_id: int) -> ProviderResult:
        """Poll the provider for the latest status of *job_id*."""
        try:
            return await async_retry_with_backoff(
                lambda: self._fetch_status(job_id),
                self._status_retry,
                retryable_exceptions=(ProviderError,),
                label=f"Status check for job {job_id}",
            )
        except ProviderTimeoutError as exc:
            return transport_failure(str(exc), timeout=True)
        except ProviderError as exc:
            return transport_failure(str(exc))

    async def _fetch_status(self, job_id: int) -> ProviderResult:
        path = _STATUS_PATH.format(job_id=job_id)
        try:
            response = await self._client.get(path)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"Status check for job {job_id} timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"Status check for job {job_id} failed: {exc}") from exc

        if response.status_code >= 500:
            raise ProviderError(f"Status check for job {job_id} returned {response.status_code}")
        return parse_response(response.status_code, response.text, self._status_table)
