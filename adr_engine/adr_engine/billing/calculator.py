"""Billing period calculator.

Pure, deterministic date arithmetic used to project when an account's next
invoice should appear and which window of days to search around it.  Nothing
here reads the clock: callers pass ``today`` explicitly.

Key design decisions
--------------------
* **Anchor-preserving months**: month arithmetic re-applies the anchor
  day-of-month to every target month and clamps to that month's last day, so
  Jan 31 -> Feb 28 -> Mar 31 rather than sticking at the 28th.
* **Bounded iteration**: any "roll forward until today" loop stops after
  :data:`MAX_ITERATIONS` steps and raises :class:`CalculationLimitError`.
* **Anti-creep**: when a cycle completes late, the next anchor is the
  *expected* date, not the late one, so one-off vendor lateness never shifts
  all future due dates.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta

from adr_engine.errors import CalculationLimitError
from adr_engine.models.account import NextRunStatus, PeriodType

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 100
DEFAULT_DRIFT_THRESHOLD_DAYS = 3

# Calendar months added per period; bi-weekly is day based.
_PERIOD_MONTHS: dict[PeriodType, int] = {
    PeriodType.MONTHLY: 1,
    PeriodType.BI_MONTHLY: 2,
    PeriodType.QUARTERLY: 3,
    PeriodType.SEMI_ANNUALLY: 6,
    PeriodType.ANNUALLY: 12,
}

_DEFAULT_WINDOWS: dict[PeriodType, tuple[int, int]] = {
    PeriodType.BI_WEEKLY: (3, 3),
    PeriodType.MONTHLY: (5, 5),
    PeriodType.BI_MONTHLY: (7, 7),
    PeriodType.QUARTERLY: (10, 10),
    PeriodType.SEMI_ANNUALLY: (14, 14),
    PeriodType.ANNUALLY: (21, 21),
}

_APPROXIMATE_DAYS: dict[PeriodType, int] = {
    PeriodType.BI_WEEKLY: 14,
    PeriodType.MONTHLY: 30,
    PeriodType.BI_MONTHLY: 60,
    PeriodType.QUARTERLY: 90,
    PeriodType.SEMI_ANNUALLY: 180,
    PeriodType.ANNUALLY: 365,
}

# Days-until-run at or below which an account is "Upcoming" rather than "Future".
_UPCOMING_HORIZON_DAYS = 30


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def is_end_of_month(d: date) -> bool:
    return d.day == days_in_month(d.year, d.month)


def anchor_day_of_month(d: date) -> int:
    """Day of month to preserve when rolling *d* forward by months."""
    return d.day


def add_months(anchor: date, months: int, anchor_day: int | None = None) -> date:
    """Add *months* calendar months, re-applying *anchor_day* clamped to month end."""
    day = anchor_day if anchor_day is not None else anchor.day
    total = anchor.year * 12 + (anchor.month - 1) + months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    return date(year, month, min(day, days_in_month(year, month)))


# ---------------------------------------------------------------------------
# Period arithmetic
# ---------------------------------------------------------------------------


def next_date(
    period_type: PeriodType | str | None,
    anchor_date: date,
    anchor_day_of_month: int | None = None,
) -> date:
    """Advance *anchor_date* by one billing period.

    Parameters
    ----------
    period_type:
        Cadence; free-form labels are normalised and unknown values fall back
        to monthly.
    anchor_date:
        Date the period starts from.
    anchor_day_of_month:
        Day of month to preserve across month-based periods.  Defaults to
        ``anchor_date.day``.

    Returns
    -------
    date
        The next due date.
    """
    period = PeriodType.parse(period_type)
    if period is PeriodType.BI_WEEKLY:
        return anchor_date + timedelta(days=14)
    return add_months(anchor_date, _PERIOD_MONTHS[period], anchor_day_of_month)


def next_date_on_or_after(
    period_type: PeriodType | str | None,
    anchor_date: date,
    today: date,
    anchor_day_of_month: int | None = None,
) -> date:
    """Roll *anchor_date* forward whole periods until it is on or after *today*.

    Every intermediate step re-applies the original anchor day, so the result
    is always reachable by an integer number of :func:`next_date` advances.

    Raises
    ------
    CalculationLimitError
        If :data:`MAX_ITERATIONS` advances do not reach *today*.
    """
    day = anchor_day_of_month if anchor_day_of_month is not None else anchor_date.day
    current = anchor_date
    for _ in range(MAX_ITERATIONS):
        if current >= today:
            return current
        current = next_date(period_type, current, day)
    if current >= today:
        return current
    raise CalculationLimitError(
        f"Could not reach {today.isoformat()} from {anchor_date.isoformat()} "
        f"within {MAX_ITERATIONS} {PeriodType.parse(period_type).value} periods"
    )


def billing_window(next_run_date: date, days_before: int, days_after: int) -> tuple[date, date]:
    """Return the (start, end) search window around *next_run_date*."""
    return next_run_date - timedelta(days=days_before), next_run_date + timedelta(days=days_after)


def default_window_days(period_type: PeriodType | str | None) -> tuple[int, int]:
    """Default (days_before, days_after) window widths for a cadence."""
    if period_type is None or (isinstance(period_type, str) and not period_type):
        return (5, 5)
    return _DEFAULT_WINDOWS.get(PeriodType.parse(period_type), (5, 5))


def approximate_period_days(period_type: PeriodType | str | None) -> int:
    return _APPROXIMATE_DAYS.get(PeriodType.parse(period_type), 30)


# ---------------------------------------------------------------------------
# Drift (bi-weekly)
# ---------------------------------------------------------------------------


def detect_drift(
    calculated_date: date | None,
    last_invoice_date: date | None,
    median_days: float | None,
    threshold_days: int = DEFAULT_DRIFT_THRESHOLD_DAYS,
) -> bool:
    """Return ``True`` when a naive projection strays from the observed median gap."""
    if calculated_date is None or last_invoice_date is None or not median_days:
        return False
    expected = last_invoice_date + timedelta(days=round(median_days))
    return abs((calculated_date - expected).days) > threshold_days


def correct_drift(last_invoice_date: date, median_days: float, today: date) -> date:
    """Project from the last invoice in median-sized steps until reaching *today*."""
    step = max(int(round(median_days)), 1)
    current = last_invoice_date + timedelta(days=step)
    for _ in range(MAX_ITERATIONS):
        if current >= today:
            return current
        current += timedelta(days=step)
    # Very old last-invoice dates: jump straight to the first step on/after today.
    gap = (today - last_invoice_date).days
    steps = -(-gap // step)
    return last_invoice_date + timedelta(days=steps * step)


# ---------------------------------------------------------------------------
# Anti-creep anchoring
# ---------------------------------------------------------------------------


def anti_creep_anchor(
    period_type: PeriodType | str | None,
    previous_anchor: date | None,
    job_date: date,
) -> date:
    """Choose the anchor for the next cycle after a completed job.

    A job on or before the expected date becomes the new anchor; a late job
    is pinned back to the expected date.
    """
    if previous_anchor is None:
        return job_date
    expected = next_date(period_type, previous_anchor, previous_anchor.day)
    return job_date if job_date <= expected else expected


def anti_creep_anchor_days(previous_anchor: date | None, period_days: int, job_date: date) -> date:
    """Day-count form of :func:`anti_creep_anchor` for accounts billed every N days."""
    if previous_anchor is None:
        return job_date
    expected = previous_anchor + timedelta(days=period_days)
    return job_date if job_date <= expected else expected


# ---------------------------------------------------------------------------
# Status classification
# ---------------------------------------------------------------------------


def classify_next_run_status(
    days_until_next_run: int,
    window_days_before: int,
    is_missing: bool = False,
) -> NextRunStatus:
    if is_missing:
        return NextRunStatus.MISSING
    if days_until_next_run <= 0:
        return NextRunStatus.RUN_NOW
    if days_until_next_run <= window_days_before:
        return NextRunStatus.DUE_SOON
    if days_until_next_run <= _UPCOMING_HORIZON_DAYS:
        return NextRunStatus.UPCOMING
    return NextRunStatus.FUTURE
