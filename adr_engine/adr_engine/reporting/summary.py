"""End-of-run summary and notification delivery.

The reporter turns a finished run's per-phase tallies into one
:class:`RunNotification` and hands it to a :class:`NotificationSink`.  A
notification goes out only when something went wrong: a phase recorded
errors, or the run itself ended ``Failed`` or ``Interrupted``.

INVARIANT: Notification delivery is fire-and-forget.  Sink failures are
logged but never propagate into the coordinator.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from adr_engine.config import Settings
from adr_engine.models.run import RunResults, RunStatus, RunSummary

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10.0
_MAX_RETRIES = 3
_BACKOFF_BASE = 1.0  # seconds: 1, 2, 4

# Runs that always notify, failures or not.
_ALERT_STATUSES = frozenset({RunStatus.FAILED, RunStatus.INTERRUPTED})


class RunNotification(BaseModel):
    """Payload delivered to notification sinks."""

    request_id: str
    status: RunStatus
    requested_by: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    total_failures: int = 0
    phase_counts: dict[str, dict[str, Any]] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    recipients: list[str] = Field(default_factory=list)

    @property
    def subject(self) -> str:
        return f"ADR orchestration {self.request_id} {self.status.value}: {self.total_failures} failure(s)"


def build_notification(summary: RunSummary, recipients: list[str] | None = None) -> RunNotification:
    results: RunResults = summary.results
    counts = {
        name: phase.model_dump(exclude={"error_messages"}) for name, phase in results.phases().items()
    }
    errors = results.error_messages()
    if summary.error_message and summary.error_message not in errors:
        errors.insert(0, summary.error_message)
    return RunNotification(
        request_id=summary.request_id,
        status=summary.status,
        requested_by=summary.requested_by,
        started_at=summary.started_at,
        completed_at=summary.completed_at,
        error_message=summary.error_message,
        total_failures=results.total_failures,
        phase_counts=counts,
        errors=errors,
        recipients=recipients or [],
    )


def build_summary_text(notification: RunNotification) -> str:
    """Plain-text body for email-style sinks."""
    lines = [notification.subject, ""]
    if notification.started_at is not None:
        lines.append(f"Started:   {notification.started_at.isoformat()}")
    if notification.completed_at is not None:
        lines.append(f"Completed: {notification.completed_at.isoformat()}")
    lines.append(f"Requested by: {notification.requested_by}")
    for phase, counts in notification.phase_counts.items():
        rendered = ", ".join(f"{key}={value}" for key, value in counts.items())
        lines.append(f"  {phase}: {rendered}")
    if notification.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  - {message}" for message in notification.errors)
    return "\n".join(lines)


def needs_notification(summary: RunSummary) -> bool:
    return summary.status in _ALERT_STATUSES or summary.results.total_failures > 0


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class NotificationSink(Protocol):
    async def send(self, notification: RunNotification) -> None: ...


class LoggingNotificationSink:
    """Writes the summary to the log; the default when no webhook is set."""

    async def send(self, notification: RunNotification) -> None:
        logger.warning("%s", build_summary_text(notification))


class WebhookNotificationSink:
    """POSTs the JSON notification to a webhook, retrying with backoff.

    Parameters
    ----------
    url:
        Destination endpoint.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    """

    def __init__(self, url: str, http_client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = http_client or httpx.AsyncClient(timeout=_TIMEOUT_SECONDS)
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, notification: RunNotification) -> None:
        body = notification.model_dump_json()
        headers = {"Content-Type": "application/json", "X-ADR-Run": notification.request_id}
        last_error: str | None = None
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                response = await self._client.post(self._url, content=body, headers=headers)
                if 200 <= response.status_code < 300:
                    logger.info("Run notification delivered: url=%s attempt=%d", self._url, attempt)
                    return
                last_error = f"HTTP {response.status_code}"
            except httpx.TimeoutException:
                last_error = "timeout"
            except httpx.RequestError as exc:
                last_error = str(exc)
            logger.warning(
                "Run notification failed: url=%s error=%s attempt=%d/%d",
                self._url,
                last_error,
                attempt,
                _MAX_RETRIES,
            )
            if attempt < _MAX_RETRIES:
                await asyncio.sleep(_BACKOFF_BASE * (2 ** (attempt - 1)))

        logger.error("Run notification exhausted retries: url=%s error=%s", self._url, last_error)


def sink_from_settings(settings: Settings) -> NotificationSink:
    if settings.notification_webhook_url:
        return WebhookNotificationSink(settings.notification_webhook_url)
    return LoggingNotificationSink()


# ---------------------------------------------------------------------------
# Reporter
# ---------------------------------------------------------------------------


class RunReporter:
    """Decides whether a finished run is worth a notification and sends it."""

    def __init__(
        self,
        sink: NotificationSink | None = None,
        *,
        enabled: bool = True,
        recipients: list[str] | None = None,
    ) -> None:
        self._sink = sink or LoggingNotificationSink()
        self._enabled = enabled
        self._recipients = recipients or []

    @classmethod
    def from_settings(cls, settings: Settings) -> RunReporter:
        return cls(
            sink_from_settings(settings),
            enabled=settings.notifications_enabled,
            recipients=settings.recipients,
        )

    async def report(self, summary: RunSummary) -> RunNotification | None:
        """Send a notification for *summary* if it had failures.

        Returns the notification that was sent, or ``None``.
        """
        if not needs_notification(summary):
            logger.info("Run %s finished %s without failures", summary.request_id, summary.status.value)
            return None
        notification = build_notification(summary, self._recipients)
        if not self._enabled:
            logger.info("Notifications disabled; run %s had %d failure(s)", summary.request_id, notification.total_failures)
            return None
        try:
            await self._sink.send(notification)
        except Exception:
            logger.exception("Notification sink failed for run %s", summary.request_id)
        return notification
