"""
Time rules for the workshop day.
Parses "HH:MM" strings, computes durations and overlaps, and pushes end times past break windows.
"""
import re
from datetime import date, datetime
from typing import Iterable, List, Optional, Union
import pytz
from ..config import settings
from ..errors import InvalidTimeFormat, ValidationError

HHMM_RE = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")

TimeLike = Union[str, int]


def to_minutes(hhmm: str) -> int:
    """
    Parse an "HH:MM" string into minutes since midnight.

    Args:
        hhmm: Time string, 24-hour clock

    Returns:
        Minutes since midnight

    Raises:
        InvalidTimeFormat: If the string is not a valid HH:MM time
    """
    if not isinstance(hhmm, str) or not HHMM_RE.match(hhmm):
        raise InvalidTimeFormat(f"Invalid time format: {hhmm!r}, expected HH:MM", details={"value": str(hhmm)})
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(minutes: int) -> str:
    """Format minutes since midnight as "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _as_minutes(value: TimeLike) -> int:
    return value if isinstance(value, int) else to_minutes(value)


def duration_minutes(start: str, end: str) -> int:
    """
    Duration between two "HH:MM" times.

    Negative when end precedes start; callers validate ranges with validate_time_range.
    """
    return to_minutes(end) - to_minutes(start)


def overlaps(a_start: TimeLike, a_end: TimeLike, b_start: TimeLike, b_end: TimeLike) -> bool:
    """
    Half-open interval overlap test: [a_start, a_end) against [b_start, b_end).

    Accepts "HH:MM" strings or minutes since midnight.
    """
    return _as_minutes(a_start) < _as_minutes(b_end) and _as_minutes(a_end) > _as_minutes(b_start)


def subtract_break(range_start: TimeLike, range_end: TimeLike, break_start: TimeLike, break_end: TimeLike) -> int:
    """
    Push a work range's end past a break window.

    Work pauses through the break rather than losing the break's time, so the
    end moves later by the part of the break from the range start onward.

    Args:
        range_start: Work start
        range_end: Work end before accounting for the break
        break_start: Break window start
        break_end: Break window end

    Returns:
        Extended end in minutes since midnight
    """
    start = _as_minutes(range_start)
    end = _as_minutes(range_end)
    b_start = _as_minutes(break_start)
    b_end = _as_minutes(break_end)
    if not overlaps(start, end, b_start, b_end):
        return end
    return end + (b_end - max(start, b_start))


def end_time_with_breaks(start: str, duration: int, breaks: Optional[Iterable[dict]] = None) -> str:
    """
    Compute the end time of a job that pauses through every break it meets.

    Args:
        start: Start time "HH:MM"
        duration: Working minutes required
        breaks: Break windows as dicts with start_time/end_time

    Returns:
        End time "HH:MM"
    """
    start_min = to_minutes(start)
    end_min = start_min + duration
    for brk in sorted(breaks or [], key=lambda b: to_minutes(b["start_time"])):
        end_min = subtract_break(start_min, end_min, brk["start_time"], brk["end_time"])
    return minutes_to_time(end_min)


def validate_time_range(start: str, end: str, field: str = "time_range") -> None:
    """Reject malformed or empty ranges; ranges never cross midnight."""
    if duration_minutes(start, end) <= 0:
        raise ValidationError(f"End time {end} must be after start time {start}", field=field)


def validate_break_times(breaks: List[dict]) -> None:
    """
    Validate a technician's break windows.

    Each break must use HH:MM times with start before end, and no two breaks may overlap.
    """
    intervals = []
    for idx, brk in enumerate(breaks):
        start = brk.get("start_time")
        end = brk.get("end_time")
        if not isinstance(start, str) or not HHMM_RE.match(start):
            raise InvalidTimeFormat(f"Break {idx + 1}: invalid start time {start!r}", field="break_times")
        if not isinstance(end, str) or not HHMM_RE.match(end):
            raise InvalidTimeFormat(f"Break {idx + 1}: invalid end time {end!r}", field="break_times")
        if to_minutes(start) >= to_minutes(end):
            raise ValidationError(f"Break {idx + 1}: start time must be before end time", field="break_times")
        intervals.append((to_minutes(start), to_minutes(end), idx))

    intervals.sort()
    for (s1, e1, i1), (s2, e2, i2) in zip(intervals, intervals[1:]):
        if overlaps(s1, e1, s2, e2):
            raise ValidationError(f"Break {i1 + 1} overlaps break {i2 + 1}", field="break_times")


def parse_date(value: Union[str, date], field: str = "date") -> date:
    """Parse "YYYY-MM-DD" (a trailing time part is ignored)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).split("T")[0]).date()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date: {value!r}", field=field)


def workshop_now(timezone_str: Optional[str] = None) -> datetime:
    """Current time in the workshop timezone (timezone-aware)."""
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return datetime.now(pytz.UTC).astimezone(tz)


def workshop_today(timezone_str: Optional[str] = None) -> date:
    """Current workshop day."""
    return workshop_now(timezone_str).date()


def current_hhmm(timezone_str: Optional[str] = None) -> str:
    """Current workshop wall-clock time as "HH:MM"."""
    return workshop_now(timezone_str).strftime("%H:%M")
