"""
Technician availability and scheduling conflict detection.
HARD STOP rule: a technician never holds two overlapping job orders or appointments on the same day.
"""
import uuid
from datetime import date
from typing import Dict, List, Optional, Tuple, Union
from sqlalchemy.orm import Session

from ..models.models import Appointment, JobOrder, User
from ..config import settings
from ..errors import ConflictError, InvalidScheduleQuery, ValidationError
from .time_rules import (
    duration_minutes,
    minutes_to_time,
    overlaps,
    parse_date,
    to_minutes,
    validate_time_range,
)

Interval = Tuple[int, int]


def _to_uuid(value: Union[str, uuid.UUID], field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidScheduleQuery(f"Invalid {field}: {value!r}", field=field)


def get_technician(db: Session, technician_id: Union[str, uuid.UUID]) -> User:
    """
    Resolve a technician by id.

    Raises:
        InvalidScheduleQuery: If the id is malformed or does not belong to an active technician
    """
    tech_uuid = _to_uuid(technician_id, "technician_id")
    user = db.query(User).filter(User.id == tech_uuid).first()
    if user is None or user.role != "technician" or not user.is_active:
        raise InvalidScheduleQuery("Unknown technician", field="technician_id", details={"technician_id": str(tech_uuid)})
    return user


def list_technicians(db: Session) -> List[User]:
    return (
        db.query(User)
        .filter(User.role == "technician", User.is_active.is_(True))
        .order_by(User.name.asc())
        .all()
    )


def _parse_query_date(day: Union[str, date]) -> date:
    try:
        return parse_date(day)
    except ValidationError:
        raise InvalidScheduleQuery(f"Invalid date: {day!r}", field="date")


def _job_orders_for(
    db: Session,
    technician_id: uuid.UUID,
    day: date,
    exclude_job_id: Optional[uuid.UUID] = None,
) -> List[JobOrder]:
    query = db.query(JobOrder).filter(
        JobOrder.assigned_technician_id == technician_id,
        JobOrder.date == day,
    )
    if exclude_job_id:
        query = query.filter(JobOrder.id != exclude_job_id)
    return query.all()


def _appointments_for(
    db: Session,
    technician_id: uuid.UUID,
    day: date,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> List[Appointment]:
    query = db.query(Appointment).filter(
        Appointment.assigned_technician_id == technician_id,
        Appointment.date == day,
        Appointment.no_show.is_(False),
    )
    if exclude_appointment_id:
        query = query.filter(Appointment.id != exclude_appointment_id)
    return query.all()


def _break_intervals(technician: User) -> List[Interval]:
    return [
        (to_minutes(b["start_time"]), to_minutes(b["end_time"]))
        for b in (technician.break_times or [])
    ]


def busy_intervals(db: Session, technician: User, day: date) -> List[Interval]:
    """All intervals (minutes) a technician is unavailable on a day: jobs, appointments and breaks."""
    intervals = [(to_minutes(j.time_start), to_minutes(j.time_end)) for j in _job_orders_for(db, technician.id, day)]
    intervals += [(to_minutes(a.time_start), to_minutes(a.time_end)) for a in _appointments_for(db, technician.id, day)]
    intervals += _break_intervals(technician)
    return intervals


def _grid() -> List[int]:
    start = to_minutes(settings.workday_start)
    end = to_minutes(settings.workday_end)
    return list(range(start, end, settings.slot_minutes))


def _slot_occupied(point: int, busy: List[Interval]) -> bool:
    return any(overlaps(point, point + settings.slot_minutes, s, e) for s, e in busy)


def _candidate_starts(busy: List[Interval], duration: int) -> List[int]:
    day_end = to_minutes(settings.workday_end)
    occupied = {p: _slot_occupied(p, busy) for p in _grid()}
    candidates = []
    for point in occupied:
        if point + duration > day_end:
            break
        covered = range(point, point + duration, settings.slot_minutes)
        if not any(occupied.get(p, True) for p in covered):
            candidates.append(point)
    return candidates


def available_start_times(
    db: Session,
    technician_id: Union[str, uuid.UUID],
    day: Union[str, date],
    duration: int,
) -> List[str]:
    """
    Candidate start times for a technician on a day.

    Every returned start S satisfies: [S, S + duration) fits the working window and overlaps
    none of the technician's job orders, appointments or break windows for that day.

    Args:
        db: Database session
        technician_id: Technician user ID
        day: Workshop day (date or "YYYY-MM-DD")
        duration: Required minutes

    Returns:
        Ordered "HH:MM" start times; empty when nothing fits

    Raises:
        InvalidScheduleQuery: Unknown technician, unparsable date or non-positive duration
    """
    day_val = _parse_query_date(day)
    if duration is None or duration <= 0:
        raise InvalidScheduleQuery("Duration must be a positive number of minutes", field="duration")
    technician = get_technician(db, technician_id)
    busy = busy_intervals(db, technician, day_val)
    return [minutes_to_time(p) for p in _candidate_starts(busy, duration)]


def find_conflicts(
    db: Session,
    technician_id: Union[str, uuid.UUID],
    day: date,
    start: str,
    end: str,
    exclude_job_id: Optional[uuid.UUID] = None,
    exclude_appointment_id: Optional[uuid.UUID] = None,
    include_appointments: bool = True,
) -> Dict[str, list]:
    """
    Get job orders and appointments that overlap [start, end) for a technician.

    Returns:
        Dict with "job_orders" and "appointments" lists of conflicting rows
    """
    tech_uuid = _to_uuid(technician_id, "technician_id")
    jobs = [
        j for j in _job_orders_for(db, tech_uuid, day, exclude_job_id)
        if overlaps(start, end, j.time_start, j.time_end)
    ]
    appointments = []
    if include_appointments:
        appointments = [
            a for a in _appointments_for(db, tech_uuid, day, exclude_appointment_id)
            if overlaps(start, end, a.time_start, a.time_end)
        ]
    return {"job_orders": jobs, "appointments": appointments}


def ensure_slot_free(
    db: Session,
    technician_id: Union[str, uuid.UUID],
    day: date,
    start: str,
    end: str,
    exclude_job_id: Optional[uuid.UUID] = None,
    exclude_appointment_id: Optional[uuid.UUID] = None,
    include_appointments: bool = True,
) -> None:
    """Raise ConflictError if the technician is already booked during [start, end)."""
    conflicts = find_conflicts(
        db, technician_id, day, start, end,
        exclude_job_id=exclude_job_id,
        exclude_appointment_id=exclude_appointment_id,
        include_appointments=include_appointments,
    )
    if conflicts["job_orders"] or conflicts["appointments"]:
        raise ConflictError(
            "Technician already has a booking during this time",
            {
                "job_orders": [
                    {"id": str(j.id), "job_number": j.job_number, "time_range": {"start": j.time_start, "end": j.time_end}}
                    for j in conflicts["job_orders"]
                ],
                "appointments": [
                    {"id": str(a.id), "plate_number": a.plate_number, "time_range": {"start": a.time_start, "end": a.time_end}}
                    for a in conflicts["appointments"]
                ],
            },
        )


def daily_hours(
    db: Session,
    technician_id: Union[str, uuid.UUID],
    day: date,
    exclude_job_id: Optional[uuid.UUID] = None,
) -> float:
    """Hours of job-order work booked for a technician on a day."""
    tech_uuid = _to_uuid(technician_id, "technician_id")
    total = sum(
        max(duration_minutes(j.time_start, j.time_end), 0)
        for j in _job_orders_for(db, tech_uuid, day, exclude_job_id)
    )
    return total / 60


def ensure_daily_limit(
    db: Session,
    technician_id: Union[str, uuid.UUID],
    day: date,
    start: str,
    end: str,
    exclude_job_id: Optional[uuid.UUID] = None,
) -> None:
    """Raise ConflictError if adding [start, end) would exceed the technician's daily hour limit."""
    current = daily_hours(db, technician_id, day, exclude_job_id)
    added = duration_minutes(start, end) / 60
    if current + added > settings.daily_hour_limit:
        raise ConflictError(
            f"Technician would exceed the {settings.daily_hour_limit} hour daily limit",
            {
                "current_daily_hours": round(current, 2),
                "requested_hours": round(added, 2),
                "daily_limit": settings.daily_hour_limit,
            },
        )


def walk_in_slots(db: Session, day: Union[str, date], duration: Optional[int] = None) -> List[dict]:
    """
    Walk-in availability for every technician on a day.

    Slots use the fixed walk-in duration and are dropped entirely for technicians whose
    remaining daily-hours budget cannot fit one more walk-in.
    """
    day_val = _parse_query_date(day)
    duration = duration or settings.walk_in_duration_min
    if duration <= 0:
        raise InvalidScheduleQuery("Duration must be a positive number of minutes", field="duration")

    results = []
    for technician in list_technicians(db):
        current = daily_hours(db, technician.id, day_val)
        remaining = max(settings.daily_hour_limit - current, 0)
        slots = []
        if duration / 60 <= remaining:
            busy = busy_intervals(db, technician, day_val)
            slots = [
                {"start_time": minutes_to_time(p), "end_time": minutes_to_time(p + duration)}
                for p in _candidate_starts(busy, duration)
            ]
        results.append({
            "technician": {"id": str(technician.id), "name": technician.name, "level": technician.level},
            "available_slots": slots,
            "current_daily_hours": round(current, 2),
            "daily_hours_remaining": round(remaining, 2),
        })
    return results


def workshop_slots(db: Session, day: Union[str, date]) -> List[dict]:
    """Each grid slot of the day with the technicians free for all of it."""
    day_val = _parse_query_date(day)
    busy_by_tech = [(t, busy_intervals(db, t, day_val)) for t in list_technicians(db)]

    slots = []
    for point in _grid():
        free = [str(t.id) for t, busy in busy_by_tech if not _slot_occupied(point, busy)]
        slots.append({
            "start_time": minutes_to_time(point),
            "end_time": minutes_to_time(point + settings.slot_minutes),
            "available_technicians": free,
            "available_count": len(free),
        })
    return slots


def available_technicians(db: Session, day: Union[str, date], start: str, end: str) -> List[dict]:
    """Technicians free for [start, end) who also stay within the daily hour limit."""
    day_val = _parse_query_date(day)
    validate_time_range(start, end)
    requested = duration_minutes(start, end) / 60

    results = []
    for technician in list_technicians(db):
        busy = busy_intervals(db, technician, day_val)
        if any(overlaps(start, end, s, e) for s, e in busy):
            continue
        current = daily_hours(db, technician.id, day_val)
        if current + requested > settings.daily_hour_limit:
            continue
        results.append({
            "id": str(technician.id),
            "name": technician.name,
            "level": technician.level,
            "current_daily_hours": round(current, 2),
            "daily_hours_remaining": round(settings.daily_hour_limit - current, 2),
        })
    return results
