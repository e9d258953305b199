"""
End-of-day carry-over.

Unfinished job orders roll to the next workshop day in place: the job keeps its id and
original_created_date, gets a new date, and records where it came from in carry_over_chain.
A job that keeps its technician is unassigned when its slot is already booked on the new day.
Each job is committed on its own so a failed batch can simply be run again.
"""
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.enums import HOLD_STATUSES, TERMINAL_STATUSES
from ..models.models import JobOrder, User, WorkshopSnapshot
from . import system_log
from .availability import find_conflicts
from .serializers import serialize_job_order
from .time_rules import workshop_today

log = structlog.get_logger(__name__)

# These statuses lose their technician and wait to be replotted on the next day
REASSIGN_ON_CARRY = frozenset({"OG", "WP", "HC", "HW", "HI"})


def already_carried(job: JobOrder, source_day: date) -> bool:
    """True if the latest chain entry already records a carry-over from source_day."""
    chain = job.carry_over_chain or []
    return bool(chain) and chain[-1].get("date") == source_day.isoformat()


def carry_over_job(job: JobOrder, source_day: date, target_day: date) -> bool:
    """
    Roll one job from source_day to target_day.

    Returns:
        False when the job is terminal or was already carried from source_day
    """
    if job.status in TERMINAL_STATUSES or already_carried(job, source_day):
        return False
    entry = {"job_id": str(job.id), "date": source_day.isoformat(), "status": job.status}
    # Reassign the list so the JSON column is flagged dirty
    job.carry_over_chain = [*(job.carry_over_chain or []), entry]
    job.carried_over = True
    job.source_type = "carry-over"
    if job.original_job_id is None:
        job.original_job_id = job.id
    if job.status in REASSIGN_ON_CARRY:
        job.assigned_technician_id = None
    job.date = target_day
    return True


def compute_statistics(jobs: List[JobOrder]) -> Dict[str, int]:
    return {
        "total_jobs": len(jobs),
        "on_going": sum(1 for j in jobs if j.status == "OG"),
        "waiting_parts": sum(1 for j in jobs if j.status == "WP"),
        "for_plotting": sum(1 for j in jobs if j.status == "FP"),
        "for_release": sum(1 for j in jobs if j.status == "FR"),
        "on_hold": sum(1 for j in jobs if j.status in HOLD_STATUSES),
        "carried_over": sum(1 for j in jobs if j.carried_over),
        "important": sum(1 for j in jobs if j.is_important),
        "quality_inspection": sum(1 for j in jobs if j.status == "QI"),
        "finished_unclaimed": sum(1 for j in jobs if j.status == "FU"),
        "complete": sum(1 for j in jobs if j.status == "CP"),
    }


def _take_snapshot(db: Session, day: date, jobs: List[JobOrder], actor: Optional[User]) -> WorkshopSnapshot:
    existing = db.query(WorkshopSnapshot).filter(WorkshopSnapshot.snapshot_date == day).first()
    if existing:
        return existing
    snapshot = WorkshopSnapshot(
        snapshot_date=day,
        created_by=actor.id if actor else None,
        statistics=compute_statistics(jobs),
        job_orders=[serialize_job_order(j) for j in jobs],
        carried_over_job_ids=[str(j.id) for j in jobs if j.status not in TERMINAL_STATUSES],
    )
    db.add(snapshot)
    try:
        db.commit()
    except IntegrityError:
        # Another end-of-day run stored it first
        db.rollback()
        return db.query(WorkshopSnapshot).filter(WorkshopSnapshot.snapshot_date == day).one()
    db.refresh(snapshot)
    return snapshot


def _release_taken_slot(db: Session, job: JobOrder) -> bool:
    """Unassign a carried job whose slot is already booked on its new day."""
    if job.assigned_technician_id is None:
        return False
    conflicts = find_conflicts(db, job.assigned_technician_id, job.date, job.time_start, job.time_end, exclude_job_id=job.id)
    if not conflicts["job_orders"] and not conflicts["appointments"]:
        return False
    job.assigned_technician_id = None
    return True


def _carry_jobs(
    db: Session,
    jobs: List[JobOrder],
    target_day: date,
) -> Dict[str, list]:
    carried, skipped, failed, unassigned = [], [], [], []
    for job in jobs:
        job_id = str(job.id)
        source_day = job.date
        try:
            if not carry_over_job(job, source_day, target_day):
                skipped.append(job_id)
                continue
            released = _release_taken_slot(db, job)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            failed.append(job_id)
            log.error("carry_over_failed", job_id=job_id, error=str(e))
            continue
        carried.append(job_id)
        if released:
            unassigned.append(job_id)
            log.warning("carry_over_slot_taken", job_id=job_id, target_date=target_day.isoformat())
        log.info("carry_over_job", job_id=job_id, job_number=job.job_number, source_date=source_day.isoformat(), target_date=target_day.isoformat())
    return {"carried_over": carried, "skipped": skipped, "failed": failed, "unassigned": unassigned}


def end_of_day(db: Session, closing_day: Optional[date] = None, actor: Optional[User] = None) -> Dict[str, Any]:
    """
    Close a workshop day.

    Snapshots the day (first run wins), then rolls every non-terminal job dated closing_day to
    the next day. Running it again for the same day changes nothing.

    Args:
        db: Database session
        closing_day: Day being closed (defaults to the workshop's today)
        actor: Operator triggering the run

    Returns:
        Summary with the snapshot id and carried/skipped/failed job ids
    """
    closing_day = closing_day or workshop_today()
    next_day = closing_day + timedelta(days=1)
    day_jobs = db.query(JobOrder).filter(JobOrder.date == closing_day).order_by(JobOrder.job_number.asc()).all()
    snapshot = _take_snapshot(db, closing_day, day_jobs, actor)

    open_jobs = [j for j in day_jobs if j.status not in TERMINAL_STATUSES]
    result = _carry_jobs(db, open_jobs, next_day)

    system_log.write(
        db,
        level="info",
        message=f"End of day processed for {closing_day.isoformat()}",
        context={
            "carried_over": len(result["carried_over"]),
            "skipped": len(result["skipped"]),
            "failed": len(result["failed"]),
            "unassigned": len(result["unassigned"]),
        },
        user=actor,
    )
    return {
        "date": closing_day.isoformat(),
        "next_date": next_day.isoformat(),
        "snapshot_id": str(snapshot.id),
        "statistics": snapshot.statistics,
        **result,
    }


def check_carry_over(db: Session, today: Optional[date] = None, actor: Optional[User] = None) -> Dict[str, Any]:
    """Roll every unfinished job from earlier days onto today."""
    today = today or workshop_today()
    stale = (
        db.query(JobOrder)
        .filter(JobOrder.date < today, JobOrder.status.notin_(list(TERMINAL_STATUSES)))
        .order_by(JobOrder.date.asc(), JobOrder.job_number.asc())
        .all()
    )
    result = _carry_jobs(db, stale, today)
    if result["carried_over"] or result["failed"]:
        system_log.write(
            db,
            level="info",
            message=f"Carried over {len(result['carried_over'])} job orders onto {today.isoformat()}",
            context={"failed": result["failed"]},
            user=actor,
        )
    return {"date": today.isoformat(), **result}
