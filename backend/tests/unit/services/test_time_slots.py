"""Tests for time-of-day parsing and slot overlap."""

from datetime import date, datetime, timezone

import pytest

from fieldsy.core.exceptions import TimeParseError
from fieldsy.services.time_slots import (
    booking_start_instant,
    duration_minutes,
    format_minutes,
    format_time_slot,
    overlaps,
    parse_time,
    slot_overlaps,
    time_to_minutes,
)


class TestParseTime:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("09:00", 540),
            ("9:30", 570),
            ("23:59", 1439),
            ("24:00", 1440),
            ("9:00AM", 540),
            ("2:30 pm", 870),
            ("12:00AM", 0),
            ("12:15AM", 15),
            ("12:00PM", 720),
            ("12:45pm", 765),
        ],
    )
    def test_parses_both_clock_formats(self, value, expected):
        assert parse_time(value) == expected

    @pytest.mark.parametrize("value", ["", "noon", "25:00", "13:00PM", "9:60", "0:30AM", None])
    def test_rejects_malformed_input(self, value):
        with pytest.raises(TimeParseError) as exc_info:
            parse_time(value)
        assert exc_info.value.code == "INVALID_TIME"

    def test_time_to_minutes_default_is_opt_in(self):
        assert time_to_minutes("garbage", default=-1) == -1
        with pytest.raises(TimeParseError):
            time_to_minutes("garbage")


class TestOverlap:
    def test_touching_slots_do_not_conflict(self):
        assert slot_overlaps("09:00", "10:00", "10:00", "11:00") is False
        assert slot_overlaps("10:00", "11:00", "09:00", "10:00") is False

    def test_partial_overlap_conflicts(self):
        assert slot_overlaps("09:00", "10:00", "09:30", "10:30") is True
        assert slot_overlaps("09:30", "10:30", "09:00", "10:00") is True

    def test_containment_conflicts_both_ways(self):
        assert overlaps(540, 660, 570, 600) is True
        assert overlaps(570, 600, 540, 660) is True

    def test_identical_slots_conflict(self):
        assert slot_overlaps("9:00AM", "10:00AM", "09:00", "10:00") is True

    def test_mixed_formats_compare_on_minutes(self):
        assert slot_overlaps("2:00PM", "3:00PM", "14:30", "15:30") is True


class TestFormatting:
    def test_format_minutes(self):
        assert format_minutes(0) == "12:00AM"
        assert format_minutes(540) == "9:00AM"
        assert format_minutes(750) == "12:30PM"
        assert format_minutes(1020) == "5:00PM"

    def test_format_time_slot(self):
        assert format_time_slot("09:00", "10:30") == "9:00AM - 10:30AM"

    def test_duration_minutes(self):
        assert duration_minutes("9:00AM", "10:30AM") == 90


class TestBookingStartInstant:
    def test_summer_time_is_one_hour_ahead_of_utc(self):
        instant = booking_start_instant(date(2025, 6, 10), "09:00", "Europe/London")
        assert instant == datetime(2025, 6, 10, 8, 0, tzinfo=timezone.utc)

    def test_winter_time_matches_utc(self):
        instant = booking_start_instant(date(2025, 1, 14), "9:00AM", "Europe/London")
        assert instant == datetime(2025, 1, 14, 9, 0, tzinfo=timezone.utc)
