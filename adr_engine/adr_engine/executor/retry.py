"""Exponential backoff for provider and account-feed calls.

Two consumers share one delay curve:

* :func:`async_retry_with_backoff` re-invokes an idempotent coroutine
  in-process (status polls, account feed reads).
* :func:`durable_retry_at` turns the same curve into a wall-clock
  ``next_attempt_at`` that is persisted on a job, so a billable call that
  failed is retried by a later run rather than by a timer that a restart
  would lose.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Shape of the backoff curve used for ADR calls."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Extra attempts after the first one fails.",
    )
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Seconds to wait before the first retry; doubled for each further one.",
    )
    max_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Ceiling in seconds for any single wait.",
    )
    jitter: bool = Field(
        default=True,
        description="Scale in-process waits by a random factor in [0.5, 1.5].",
    )

    def ceiling_delay(self, attempt: int) -> float:
        """Un-jittered delay before retry number ``attempt + 1``."""
        return min(self.base_delay * (2**attempt), self.max_delay)


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    delay = config.ceiling_delay(attempt)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def durable_retry_at(now: datetime, retry_count: int, config: RetryConfig) -> datetime:
    """Return the earliest time a failed attempt may be retried.

    Parameters
    ----------
    now:
        Time of the failed attempt.
    retry_count:
        Number of failures recorded so far, including this one.
    config:
        Backoff curve.  Jitter is ignored so the persisted value is
        reproducible.

    Returns
    -------
    datetime
        ``now`` plus the capped exponential delay.
    """
    return now + timedelta(seconds=config.ceiling_delay(max(retry_count - 1, 0)))


async def async_retry_with_backoff(
    fn: Callable[[], T],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    label: str = "call",
) -> T:
    """Await *fn* until it succeeds or the retry budget is spent.

    Only use this for calls that are safe to repeat.  Billable provider
    requests go through the idempotency ledger instead.

    Parameters
    ----------
    fn:
        Zero-argument callable, sync or async.  A returned coroutine is
        awaited.
    config:
        Backoff curve and retry budget.
    retryable_exceptions:
        Exception types that trigger a retry.  Anything else propagates
        immediately.
    label:
        Short description of the call, used in log messages.

    Raises
    ------
    Exception
        The error from the final attempt once the budget is spent.
    """
    attempt = 0
    while True:
        try:
            result = fn()
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except retryable_exceptions as exc:
            if attempt >= config.max_retries:
                logger.error("%s failed after %d attempt(s): %s", label, attempt + 1, exc)
                raise
            delay = _compute_delay(attempt, config)
            attempt += 1
            logger.warning("%s failed (%s); retry %d/%d in %.1fs", label, exc, attempt, config.max_retries, delay)
            await asyncio.sleep(delay)
