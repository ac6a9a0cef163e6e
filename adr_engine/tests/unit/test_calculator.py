"""Unit tests for adr_engine.billing.calculator."""

from __future__ import annotations

from datetime import date

import pytest

from adr_engine.billing import calculator
from adr_engine.errors import CalculationLimitError
from adr_engine.models.account import NextRunStatus, PeriodType

# ---------------------------------------------------------------------------
# Month arithmetic
# ---------------------------------------------------------------------------


class TestAddMonths:
    def test_clamps_to_short_month(self):
        assert calculator.add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert calculator.add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)

    def test_anchor_day_restores_after_short_month(self):
        assert calculator.add_months(date(2025, 2, 28), 1, anchor_day=31) == date(2025, 3, 31)

    def test_crosses_year_boundary(self):
        assert calculator.add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_negative_months(self):
        assert calculator.add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
        assert calculator.add_months(date(2025, 1, 10), -12) == date(2024, 1, 10)


class TestPeriodParsing:
    @pytest.mark.parametrize("label", ["Bi-Weekly", "biweekly", "bi weekly", "BI_WEEKLY"])
    def test_bi_weekly_aliases(self, label):
        assert PeriodType.parse(label) is PeriodType.BI_WEEKLY

    @pytest.mark.parametrize("label", [None, "", "fortnightly-ish"])
    def test_unknown_or_empty_falls_back_to_monthly(self, label):
        assert PeriodType.parse(label) is PeriodType.MONTHLY


# ---------------------------------------------------------------------------
# next_date
# ---------------------------------------------------------------------------


class TestNextDate:
    def test_monthly_preserves_end_of_month_anchor(self):
        first = calculator.next_date("Monthly", date(2025, 1, 31))
        assert first == date(2025, 2, 28)
        assert calculator.next_date("Monthly", first, anchor_day_of_month=31) == date(2025, 3, 31)

    def test_bi_weekly_adds_fourteen_days(self):
        assert calculator.next_date("Bi-Weekly", date(2025, 3, 1)) == date(2025, 3, 15)

    def test_quarterly(self):
        assert calculator.next_date(PeriodType.QUARTERLY, date(2024, 11, 30)) == date(2025, 2, 28)

    def test_annually_from_leap_day(self):
        assert calculator.next_date("Annually", date(2024, 2, 29)) == date(2025, 2, 28)

    def test_semi_annually_and_bi_monthly(self):
        assert calculator.next_date("Semi-Annually", date(2025, 1, 15)) == date(2025, 7, 15)
        assert calculator.next_date("Bi-Monthly", date(2025, 1, 15)) == date(2025, 3, 15)

    def test_unknown_period_is_monthly(self):
        assert calculator.next_date("whenever", date(2025, 1, 15)) == date(2025, 2, 15)


class TestNextDateOnOrAfter:
    def test_anchor_already_in_future(self):
        assert calculator.next_date_on_or_after("Monthly", date(2025, 6, 1), date(2025, 3, 1)) == date(2025, 6, 1)

    def test_rolls_forward_keeping_anchor_day(self):
        result = calculator.next_date_on_or_after("Monthly", date(2024, 1, 31), date(2024, 4, 15))
        assert result == date(2024, 4, 30)

    def test_lands_exactly_on_today(self):
        assert calculator.next_date_on_or_after("Bi-Weekly", date(2025, 3, 1), date(2025, 3, 29)) == date(
            2025, 3, 29
        )

    def test_iteration_limit(self):
        with pytest.raises(CalculationLimitError):
            calculator.next_date_on_or_after("Bi-Weekly", date(1990, 1, 1), date(2025, 1, 1))


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


class TestWindows:
    def test_billing_window(self):
        assert calculator.billing_window(date(2025, 5, 10), 5, 3) == (date(2025, 5, 5), date(2025, 5, 13))

    def test_default_window_days(self):
        assert calculator.default_window_days("Quarterly") == (10, 10)
        assert calculator.default_window_days("Bi-Weekly") == (3, 3)
        assert calculator.default_window_days(None) == (5, 5)
        assert calculator.default_window_days("") == (5, 5)


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------


class TestDrift:
    def test_drift_detected_beyond_threshold(self):
        assert calculator.detect_drift(date(2025, 3, 20), date(2025, 3, 1), 14) is True

    def test_no_drift_within_threshold(self):
        assert calculator.detect_drift(date(2025, 3, 16), date(2025, 3, 1), 14) is False

    def test_missing_inputs_never_drift(self):
        assert calculator.detect_drift(None, date(2025, 3, 1), 14) is False
        assert calculator.detect_drift(date(2025, 3, 20), None, 14) is False
        assert calculator.detect_drift(date(2025, 3, 20), date(2025, 3, 1), None) is False

    def test_correct_drift_steps_by_median(self):
        assert calculator.correct_drift(date(2025, 1, 1), 14, date(2025, 2, 1)) == date(2025, 2, 12)

    def test_correct_drift_from_very_old_invoice(self):
        result = calculator.correct_drift(date(2015, 1, 1), 14, date(2025, 1, 1))
        assert result >= date(2025, 1, 1)
        assert (result - date(2015, 1, 1)).days % 14 == 0
        assert (result - date(2025, 1, 1)).days < 14


# ---------------------------------------------------------------------------
# Anti-creep
# ---------------------------------------------------------------------------


class TestAntiCreep:
    def test_late_job_is_pinned_to_expected_date(self):
        assert calculator.anti_creep_anchor_days(date(2024, 12, 23), 31, date(2025, 1, 27)) == date(2025, 1, 23)

    def test_early_job_becomes_anchor(self):
        assert calculator.anti_creep_anchor_days(date(2024, 12, 23), 31, date(2025, 1, 20)) == date(2025, 1, 20)

    def test_monthly_late_job(self):
        assert calculator.anti_creep_anchor("Monthly", date(2025, 1, 15), date(2025, 2, 20)) == date(2025, 2, 15)

    def test_monthly_on_time_job(self):
        assert calculator.anti_creep_anchor("Monthly", date(2025, 1, 15), date(2025, 2, 10)) == date(2025, 2, 10)

    def test_no_previous_anchor(self):
        assert calculator.anti_creep_anchor("Monthly", None, date(2025, 2, 20)) == date(2025, 2, 20)
        assert calculator.anti_creep_anchor_days(None, 31, date(2025, 2, 20)) == date(2025, 2, 20)


# ---------------------------------------------------------------------------
# Status classification
# ---------------------------------------------------------------------------


class TestClassifyNextRunStatus:
    @pytest.mark.parametrize(
        ("days", "expected"),
        [
            (-3, NextRunStatus.RUN_NOW),
            (0, NextRunStatus.RUN_NOW),
            (3, NextRunStatus.DUE_SOON),
            (5, NextRunStatus.DUE_SOON),
            (20, NextRunStatus.UPCOMING),
            (31, NextRunStatus.FUTURE),
        ],
    )
    def test_buckets(self, days, expected):
        assert calculator.classify_next_run_status(days, 5) is expected

    def test_missing_wins(self):
        assert calculator.classify_next_run_status(0, 5, is_missing=True) is NextRunStatus.MISSING
