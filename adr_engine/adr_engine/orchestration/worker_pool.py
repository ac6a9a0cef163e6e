"""Bounded concurrent execution of per-item work.

An ``asyncio.Semaphore`` is the only backpressure mechanism.  Items are
scheduled in batches so a phase with tens of thousands of jobs never holds
that many pending tasks at once.  Exceptions raised by an item are captured
on its :class:`ItemOutcome`; they never cancel sibling items.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ItemOutcome(Generic[T, R]):
    item: T
    result: R | None = None
    error: BaseException | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


async def run_bounded(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    *,
    max_concurrency: int,
    batch_size: int = 1000,
    should_stop: Callable[[], bool] | None = None,
    on_item_done: Callable[[ItemOutcome[T, R]], Awaitable[None]] | None = None,
) -> list[ItemOutcome[T, R]]:
    """Run *fn* over *items* with at most *max_concurrency* in flight.

    Parameters
    ----------
    items:
        Work items, processed in order of submission.
    fn:
        Coroutine function applied to each item.
    max_concurrency:
        Semaphore size.
    batch_size:
        Number of tasks created at a time.
    should_stop:
        Checked before each item starts.  Once it returns ``True``, items
        that have not started are marked ``skipped``; items already in
        flight run to completion.
    on_item_done:
        Awaited after each item finishes (progress reporting).

    Returns
    -------
    list[ItemOutcome]
        One outcome per item, in input order.
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")

    semaphore = asyncio.Semaphore(max_concurrency)
    stopped = False

    async def _one(item: T) -> ItemOutcome[T, R]:
        nonlocal stopped
        async with semaphore:
            if stopped or (should_stop is not None and should_stop()):
                stopped = True
                return ItemOutcome(item=item, skipped=True)
            try:
                outcome: ItemOutcome[T, R] = ItemOutcome(item=item, result=await fn(item))
            except Exception as exc:
                logger.exception("Work item %r failed", item)
                outcome = ItemOutcome(item=item, error=exc)
            if on_item_done is not None:
                await on_item_done(outcome)
            return outcome

    outcomes: list[ItemOutcome[T, R]] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        outcomes.extend(await asyncio.gather(*[_one(item) for item in batch]))
        if stopped:
            outcomes.extend(ItemOutcome(item=item, skipped=True) for item in items[start + batch_size :])
            break
    return outcomes
