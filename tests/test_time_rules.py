from datetime import date

import pytest

from workshop.errors import InvalidTimeFormat, ValidationError
from workshop.services.time_rules import (
    duration_minutes,
    end_time_with_breaks,
    minutes_to_time,
    overlaps,
    parse_date,
    subtract_break,
    to_minutes,
    validate_break_times,
    validate_time_range,
)


class TestParsing:
    """HH:MM parsing and formatting"""

    def test_to_minutes(self):
        assert to_minutes("00:00") == 0
        assert to_minutes("07:30") == 450
        assert to_minutes("23:59") == 1439

    @pytest.mark.parametrize("value", ["7:30", "24:00", "12:60", "noon", "", None, 930])
    def test_to_minutes_rejects_malformed(self, value):
        with pytest.raises(InvalidTimeFormat):
            to_minutes(value)

    def test_minutes_to_time_pads(self):
        assert minutes_to_time(65) == "01:05"
        assert minutes_to_time(840) == "14:00"

    def test_duration_can_be_negative(self):
        assert duration_minutes("09:00", "10:30") == 90
        assert duration_minutes("10:00", "09:00") == -60

    def test_parse_date(self):
        assert parse_date("2024-03-04") == date(2024, 3, 4)
        assert parse_date("2024-03-04T10:00:00") == date(2024, 3, 4)
        with pytest.raises(ValidationError):
            parse_date("04/03/2024")


class TestOverlaps:
    """Half-open interval overlap"""

    def test_touching_ranges_do_not_overlap(self):
        assert not overlaps("08:00", "09:00", "09:00", "10:00")
        assert not overlaps("09:00", "10:00", "08:00", "09:00")

    def test_partial_and_nested_overlap(self):
        assert overlaps("08:00", "09:30", "09:00", "10:00")
        assert overlaps("08:00", "12:00", "09:00", "10:00")

    def test_accepts_minutes(self):
        assert overlaps(480, 540, "08:30", "08:45")


class TestBreaks:
    """Work pauses through breaks"""

    def test_end_skips_through_lunch(self):
        breaks = [{"start_time": "12:00", "end_time": "13:00"}]
        assert end_time_with_breaks("09:00", 240, breaks) == "14:00"

    def test_range_before_break_is_unchanged(self):
        assert subtract_break("08:00", "10:00", "12:00", "13:00") == to_minutes("10:00")

    def test_start_inside_break_only_adds_remaining_break(self):
        assert subtract_break("12:30", "13:30", "12:00", "13:00") == to_minutes("14:00")

    def test_multiple_breaks_in_order(self):
        breaks = [
            {"start_time": "15:00", "end_time": "15:15"},
            {"start_time": "12:00", "end_time": "13:00"},
        ]
        assert end_time_with_breaks("10:00", 300, breaks) == "16:15"

    def test_no_breaks(self):
        assert end_time_with_breaks("09:00", 90) == "10:30"


class TestValidation:
    """Range and break-window validation"""

    def test_time_range_must_move_forward(self):
        validate_time_range("08:00", "08:30")
        with pytest.raises(ValidationError):
            validate_time_range("08:00", "08:00")
        with pytest.raises(ValidationError):
            validate_time_range("23:00", "01:00")

    def test_valid_breaks(self):
        validate_break_times([
            {"description": "Lunch", "start_time": "12:00", "end_time": "13:00"},
            {"description": "Merienda", "start_time": "15:00", "end_time": "15:15"},
        ])

    def test_break_with_bad_format(self):
        with pytest.raises(InvalidTimeFormat):
            validate_break_times([{"start_time": "12", "end_time": "13:00"}])

    def test_break_must_end_after_start(self):
        with pytest.raises(ValidationError):
            validate_break_times([{"start_time": "13:00", "end_time": "12:00"}])

    def test_overlapping_breaks(self):
        with pytest.raises(ValidationError) as exc:
            validate_break_times([
                {"start_time": "12:00", "end_time": "13:00"},
                {"start_time": "12:30", "end_time": "13:30"},
            ])
        assert exc.value.field == "break_times"
