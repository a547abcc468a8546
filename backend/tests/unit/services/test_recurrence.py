"""Tests for recurring cadence rules."""

from datetime import date

import pytest

from fieldsy.core.exceptions import ValidationException
from fieldsy.services.recurrence import (
    add_month,
    clamp_day,
    coerce_interval,
    first_occurrence_on_or_after,
    iter_occurrences,
    next_occurrence,
    occurs_on,
    stripe_interval,
    weekday_name,
)


class TestCadence:
    def test_coerce_interval_is_case_insensitive(self):
        assert coerce_interval("WEEKLY").value == "weekly"

    def test_unknown_interval_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            coerce_interval("fortnightly")
        assert exc_info.value.code == "INVALID_INTERVAL"

    def test_stripe_interval_mapping(self):
        assert stripe_interval("everyday") == "day"
        assert stripe_interval("weekly") == "week"
        assert stripe_interval("monthly") == "month"

    def test_weekly_occurs_only_on_its_weekday(self):
        assert weekday_name(date(2025, 6, 10)) == "Tuesday"
        assert occurs_on("weekly", date(2025, 6, 10), day_of_week="Tuesday")
        assert not occurs_on("weekly", date(2025, 6, 11), day_of_week="Tuesday")

    def test_everyday_occurs_every_day(self):
        assert occurs_on("everyday", date(2025, 6, 11))
        assert next_occurrence("everyday", date(2025, 6, 30)) == date(2025, 7, 1)


class TestMonthlyClamp:
    def test_day_31_clamps_to_short_months(self):
        assert clamp_day(2025, 4, 31) == date(2025, 4, 30)
        assert clamp_day(2025, 2, 31) == date(2025, 2, 28)
        assert clamp_day(2024, 2, 31) == date(2024, 2, 29)

    def test_anchor_returns_after_short_month(self):
        after_april = add_month(date(2025, 4, 30), 31)
        assert after_april == date(2025, 5, 31)

    def test_monthly_sequence_keeps_anchor(self):
        dates = list(
            iter_occurrences("monthly", date(2025, 1, 31), date(2025, 5, 31), day_of_month=31)
        )
        assert dates == [
            date(2025, 1, 31),
            date(2025, 2, 28),
            date(2025, 3, 31),
            date(2025, 4, 30),
            date(2025, 5, 31),
        ]

    def test_clamped_day_counts_as_occurrence(self):
        assert occurs_on("monthly", date(2025, 2, 28), day_of_month=31)
        assert not occurs_on("monthly", date(2025, 2, 27), day_of_month=31)

    def test_december_rolls_into_next_year(self):
        assert next_occurrence("monthly", date(2025, 12, 15), day_of_month=15) == date(2026, 1, 15)


class TestOccurrenceWindows:
    def test_first_weekly_occurrence_on_or_after(self):
        assert first_occurrence_on_or_after(
            "weekly", date(2025, 6, 2), day_of_week="Tuesday"
        ) == date(2025, 6, 3)
        assert first_occurrence_on_or_after(
            "weekly", date(2025, 6, 3), day_of_week="Tuesday"
        ) == date(2025, 6, 3)

    def test_first_monthly_occurrence_moves_to_next_month_when_passed(self):
        assert first_occurrence_on_or_after(
            "monthly", date(2025, 6, 20), day_of_month=15
        ) == date(2025, 7, 15)

    def test_weekly_requires_day(self):
        with pytest.raises(ValidationException):
            first_occurrence_on_or_after("weekly", date(2025, 6, 2))

    def test_iter_occurrences_empty_when_range_inverted(self):
        assert list(iter_occurrences("everyday", date(2025, 6, 5), date(2025, 6, 1))) == []

    def test_weekly_iteration(self):
        dates = list(
            iter_occurrences("weekly", date(2025, 6, 1), date(2025, 6, 30), day_of_week="Tuesday")
        )
        assert dates == [date(2025, 6, 3), date(2025, 6, 10), date(2025, 6, 17), date(2025, 6, 24)]
