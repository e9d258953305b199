"""
Job-order status workflow.

Status writes go through an explicit transition table. Guarded actions (QI submission and
review, release, redo) add their own preconditions on top of it. Parts availability drives
the automatic WP and FP moves, and reassignment puts a job back on the schedule as OG.
"""
import uuid
from datetime import date
from typing import Any, Dict, Iterable, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError, InvalidTransition, PreconditionNotMet, ValidationError
from ..models.enums import TERMINAL_STATUSES, JobStatus, PartAvailability, TaskStatus
from ..models.models import JobOrder, User
from .availability import ensure_daily_limit, ensure_slot_free
from .time_rules import (
    HHMM_RE,
    current_hhmm,
    end_time_with_breaks,
    parse_date,
    to_minutes,
    validate_time_range,
    workshop_today,
)

log = structlog.get_logger(__name__)

# Self transitions are always allowed and omitted here
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "OG": frozenset({"WP", "FP", "UA", "QI", "HC", "HW", "HI", "HF", "SU"}),
    "WP": frozenset({"OG", "FP", "UA", "HC", "HW", "HI", "HF", "SU"}),
    "FP": frozenset({"OG", "WP", "UA", "HC", "HW", "HI", "HF", "SU"}),
    "UA": frozenset({"OG", "WP", "FP"}),
    "HC": frozenset({"OG", "WP", "FP", "UA"}),
    "HW": frozenset({"OG", "WP", "FP", "UA"}),
    "HI": frozenset({"OG", "WP", "FP", "UA"}),
    "HF": frozenset({"OG", "WP", "FP", "UA"}),
    "SU": frozenset({"OG", "WP", "FP", "UA"}),
    "QI": frozenset({"FR", "OG"}),
    "FR": frozenset({"FU", "CP", "OG"}),
    "FU": frozenset({"CP"}),
    "CP": frozenset(),
}

_UNSET: Any = object()


def _status_value(status: Union[str, JobStatus]) -> str:
    value = status.value if isinstance(status, JobStatus) else status
    if value not in ALLOWED_TRANSITIONS:
        raise ValidationError(f"Invalid status: {value!r}", field="status")
    return value


def can_transition(current: str, new: str) -> bool:
    return current == new or new in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(current: str, new: Union[str, JobStatus]) -> str:
    """
    Check a status write against the transition table.

    Returns:
        The target status value

    Raises:
        ValidationError: Unknown status
        InvalidTransition: Transition not in the table
    """
    new_value = _status_value(new)
    if not can_transition(current, new_value):
        raise InvalidTransition(
            f"Cannot change status from {current} to {new_value}",
            {"from": current, "to": new_value, "allowed": sorted(ALLOWED_TRANSITIONS.get(current, ()))},
        )
    return new_value


def _set_status(job: JobOrder, new_status: str) -> None:
    job.status = new_status
    if new_status in TERMINAL_STATUSES:
        job.carried_over = False


def has_unavailable_parts(parts: Optional[Iterable[dict]]) -> bool:
    return any(p.get("availability") == PartAvailability.UNAVAILABLE for p in (parts or []))


def all_parts_unavailable(parts: Optional[Iterable[dict]]) -> bool:
    parts = list(parts or [])
    return bool(parts) and all(p.get("availability") == PartAvailability.UNAVAILABLE for p in parts)


def qi_blockers(job: JobOrder) -> Dict[str, list]:
    """Tasks and parts that keep a job out of quality inspection."""
    return {
        "unfinished_tasks": [t.get("description") for t in (job.job_list or []) if t.get("status") != TaskStatus.FINISHED],
        "unavailable_parts": [p.get("name") for p in (job.parts or []) if p.get("availability") != PartAvailability.AVAILABLE],
    }


def _ensure_ready_for_qi(job: JobOrder) -> None:
    blockers = qi_blockers(job)
    if blockers["unfinished_tasks"] or blockers["unavailable_parts"]:
        raise PreconditionNotMet(
            "All tasks must be finished and all parts available before quality inspection",
            blockers,
        )


def submit_for_qi(job: JobOrder) -> JobOrder:
    """Move a working job into quality inspection with qi_status pending."""
    if job.status == "QI":
        raise PreconditionNotMet("Job order is already in quality inspection")
    _ensure_ready_for_qi(job)
    validate_transition(job.status, "QI")
    _set_status(job, "QI")
    job.qi_status = "pending"
    return job


def _ensure_pending_qi(job: JobOrder) -> None:
    if job.status != "QI" or job.qi_status != "pending":
        raise PreconditionNotMet(
            "Job order is not awaiting quality inspection",
            {"status": job.status, "qi_status": job.qi_status},
        )


def approve_qi(job: JobOrder) -> JobOrder:
    _ensure_pending_qi(job)
    _set_status(job, "FR")
    job.qi_status = "approved"
    return job


def reject_qi(job: JobOrder) -> JobOrder:
    """Send a job back to rework."""
    _ensure_pending_qi(job)
    _set_status(job, "OG")
    job.qi_status = "rejected"
    return job


def complete(job: JobOrder) -> JobOrder:
    """Release to the customer: FR or FU to CP."""
    if job.status not in ("FR", "FU"):
        raise PreconditionNotMet("Only jobs for release or finished unclaimed can be completed", {"status": job.status})
    _set_status(job, "CP")
    return job


def mark_unclaimed(job: JobOrder) -> JobOrder:
    """Finished but not yet picked up: FR to FU."""
    if job.status != "FR":
        raise PreconditionNotMet("Only jobs for release can be marked unclaimed", {"status": job.status})
    _set_status(job, "FU")
    return job


def redo(job: JobOrder) -> JobOrder:
    """Send a job for release back to work, clearing its QI result."""
    if job.status != "FR":
        raise PreconditionNotMet("Only jobs for release can be redone", {"status": job.status})
    _set_status(job, "OG")
    job.qi_status = None
    return job


def toggle_important(job: JobOrder) -> JobOrder:
    job.is_important = not job.is_important
    return job


def mark_waiting_parts(job: JobOrder) -> Optional[dict]:
    """
    Put a job on WP because a part became unavailable.

    An on-going job also leaves the schedule: actual_end_time is stamped with the current
    time and the technician is released.

    Returns:
        The freed slot for the caller to reassign, or None if the job held no slot
    """
    freed_slot = None
    if job.status == "OG" and job.assigned_technician_id:
        now = current_hhmm()
        job.actual_end_time = now
        start = now if to_minutes(job.time_start) < to_minutes(now) < to_minutes(job.time_end) else job.time_start
        freed_slot = {
            "technician_id": str(job.assigned_technician_id),
            "date": job.date.isoformat(),
            "start_time": start,
            "end_time": job.time_end,
        }
        job.assigned_technician_id = None
    _set_status(job, "WP")
    return freed_slot


def apply_parts_change(job: JobOrder, parts: list, explicit_status: Optional[str] = None) -> Optional[dict]:
    """
    Store new parts and apply the availability-driven status moves.

    Any unavailable part puts a working job on WP; once the last one is available a WP job
    becomes FP and waits to be replotted. An explicit status other than OG takes precedence.

    Returns:
        Freed slot when an on-going job was taken off the schedule
    """
    job.parts = [dict(p) for p in parts]
    if explicit_status and explicit_status != "OG":
        return None
    if has_unavailable_parts(job.parts):
        if job.status != "WP" and can_transition(job.status, "WP"):
            return mark_waiting_parts(job)
    elif job.status == "WP":
        _set_status(job, "FP")
    return None


def _to_uuid(value: Union[str, uuid.UUID], field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)


def resolve_staff(db: Session, user_id: Union[str, uuid.UUID], role: str, field: str) -> User:
    """Load an active user that must hold a given role."""
    user = db.query(User).filter(User.id == _to_uuid(user_id, field)).first()
    if user is None or not user.is_active:
        raise ValidationError(f"Unknown {field}", field=field)
    if user.role != role:
        raise ValidationError(f"{field} must be a {role}", field=field)
    return user


def scheduled_range(db: Session, technician_id: Any, start: str, duration: int) -> Dict[str, str]:
    """Time range for `duration` working minutes from start, pausing through the technician's breaks."""
    technician = resolve_staff(db, technician_id, "technician", "assigned_technician")
    end = end_time_with_breaks(start, duration, technician.break_times)
    if not HHMM_RE.match(end):
        raise ValidationError("Work would run past midnight", field="duration_minutes")
    return {"start": start, "end": end}


def reassign(
    db: Session,
    job: JobOrder,
    technician_id: Any = _UNSET,
    time_range: Optional[Dict[str, str]] = None,
    day: Optional[Union[str, date]] = None,
) -> JobOrder:
    """
    Replot a job: change its technician, time range or date.

    The new slot is checked against the technician's other bookings and the daily hour limit.
    A job that is still in progress returns to OG and stops being a carry-over; a released
    job keeps its status (the audit trail flags such edits).

    Raises:
        PreconditionNotMet: The job still waits for unavailable parts
        ValidationError: Bad technician, time range or date
        ConflictError: Slot taken or daily limit exceeded
    """
    if has_unavailable_parts(job.parts):
        raise PreconditionNotMet("Cannot schedule a job order that is waiting for parts")

    new_tech = job.assigned_technician_id if technician_id is _UNSET else technician_id
    start = (time_range or {}).get("start", job.time_start)
    end = (time_range or {}).get("end", job.time_end)
    new_day = parse_date(day) if day is not None else job.date
    validate_time_range(start, end)

    if new_tech is not None:
        new_tech = resolve_staff(db, new_tech, "technician", "assigned_technician").id
        ensure_slot_free(db, new_tech, new_day, start, end, exclude_job_id=job.id)
        ensure_daily_limit(db, new_tech, new_day, start, end, exclude_job_id=job.id)

    job.assigned_technician_id = new_tech
    job.time_start = start
    job.time_end = end
    job.date = new_day

    if job.status not in TERMINAL_STATUSES:
        # Leaving inspection this way carries no verdict
        if job.status == "QI":
            job.qi_status = None
        _set_status(job, validate_transition(job.status, "OG"))
        job.carried_over = False
        job.actual_end_time = None
    return job


def _enter_status(job: JobOrder, new_status: str) -> None:
    """Direct status write, keeping qi_status consistent with the QI path."""
    target = validate_transition(job.status, new_status)
    if target == job.status:
        return
    if target == "QI":
        _ensure_ready_for_qi(job)
        job.qi_status = "pending"
    elif job.status == "QI" and target == "FR":
        job.qi_status = "approved"
    elif job.status == "QI" and target == "OG":
        job.qi_status = "rejected"
    elif job.status == "FR" and target == "OG":
        job.qi_status = None
    _set_status(job, target)


def apply_update(db: Session, job: JobOrder, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a general update to a job order.

    Args:
        db: Database session
        job: Job order to modify (not committed here)
        data: Fields set by the caller, as dumped from the update schema

    Returns:
        Dict with "action" (update|status_change|assignment_change) and "freed_slot"
    """
    data = dict(data)
    explicit_status = data.pop("status", None)
    if explicit_status is not None:
        explicit_status = _status_value(explicit_status)
    before_status = job.status
    before_technician = job.assigned_technician_id
    freed_slot = None

    for field in ("plate_number", "vin"):
        if data.get(field):
            setattr(job, field, data[field].strip().upper())
    for field in ("hold_customer_remarks", "sublet_remarks", "actual_end_time"):
        if field in data:
            setattr(job, field, data[field])
    if data.get("is_important") is not None:
        job.is_important = data["is_important"]
    if "job_list" in data and data["job_list"] is not None:
        job.job_list = [dict(t) for t in data["job_list"]]
    if "service_advisor" in data:
        advisor = data["service_advisor"]
        job.service_advisor_id = resolve_staff(db, advisor, "service-advisor", "service_advisor").id if advisor else None

    new_parts = data.get("parts")
    if new_parts is not None:
        job.parts = [dict(p) for p in new_parts]

    assignment_keys = {"assigned_technician", "time_range", "date"} & data.keys()
    unassign = "assigned_technician" in data and data["assigned_technician"] is None
    if unassign:
        job.assigned_technician_id = None
        assignment_keys.discard("assigned_technician")
    if assignment_keys and _assignment_changes(job, data):
        reassign(
            db,
            job,
            technician_id=data["assigned_technician"] if "assigned_technician" in assignment_keys else _UNSET,
            time_range=data.get("time_range"),
            day=data.get("date"),
        )
    elif new_parts is not None:
        freed_slot = apply_parts_change(job, new_parts, explicit_status)
        # OG cannot be forced while parts are missing
        if explicit_status == "OG" and has_unavailable_parts(job.parts):
            explicit_status = None

    if data.get("carried_over") is False:
        job.carried_over = False

    if explicit_status is not None:
        _enter_status(job, explicit_status)

    if job.status != before_status:
        action = "status_change"
    elif job.assigned_technician_id != before_technician:
        action = "assignment_change"
    else:
        action = "update"
    return {"action": action, "freed_slot": freed_slot}


def _assignment_changes(job: JobOrder, data: Dict[str, Any]) -> bool:
    if "assigned_technician" in data and data["assigned_technician"] is not None:
        if str(data["assigned_technician"]) != str(job.assigned_technician_id):
            return True
    if data.get("time_range") is not None:
        tr = data["time_range"]
        if tr.get("start") != job.time_start or tr.get("end") != job.time_end:
            return True
    if data.get("date") is not None and parse_date(data["date"]) != job.date:
        return True
    return False


def create_job_order(
    db: Session,
    data: Dict[str, Any],
    created_by: Optional[User],
    source_type: str = "direct",
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> JobOrder:
    """
    Create and persist a job order.

    Job numbers are stored uppercase and must be unique. A job with unavailable parts starts
    on WP; when none of its parts are available it is left without a technician.

    Raises:
        ConflictError: Duplicate job number, slot taken or daily limit exceeded
        ValidationError: Bad time range, date or staff reference
    """
    job_number = data["job_number"].strip().upper()
    if db.query(JobOrder).filter(JobOrder.job_number == job_number).first():
        raise ConflictError(f"Job number {job_number} already exists", {"job_number": job_number})

    time_range = data["time_range"]
    validate_time_range(time_range["start"], time_range["end"])
    day = parse_date(data["date"])
    parts = [dict(p) for p in (data.get("parts") or [])]
    job_list = [dict(t) for t in (data.get("job_list") or [])]

    technician_id = data.get("assigned_technician")
    if all_parts_unavailable(parts):
        technician_id = None
    if technician_id:
        technician_id = resolve_staff(db, technician_id, "technician", "assigned_technician").id
        ensure_slot_free(
            db, technician_id, day, time_range["start"], time_range["end"],
            exclude_appointment_id=exclude_appointment_id,
        )
        ensure_daily_limit(db, technician_id, day, time_range["start"], time_range["end"])

    advisor_id = data.get("service_advisor")
    if advisor_id:
        advisor_id = resolve_staff(db, advisor_id, "service-advisor", "service_advisor").id

    job = JobOrder(
        job_number=job_number,
        plate_number=data["plate_number"].strip().upper(),
        vin=data["vin"].strip().upper(),
        assigned_technician_id=technician_id,
        service_advisor_id=advisor_id,
        created_by=created_by.id if created_by else None,
        time_start=time_range["start"],
        time_end=time_range["end"],
        job_list=job_list,
        parts=parts,
        status="WP" if has_unavailable_parts(parts) else "OG",
        date=day,
        original_created_date=workshop_today(),
        source_type=source_type,
        carried_over=False,
        carry_over_chain=[],
        is_important=bool(data.get("is_important", False)),
        hold_customer_remarks=data.get("hold_customer_remarks"),
        sublet_remarks=data.get("sublet_remarks"),
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Job number {job_number} already exists", {"job_number": job_number})
    db.refresh(job)
    log.info("job_order_created", job_id=str(job.id), job_number=job.job_number, source_type=source_type)
    return job
