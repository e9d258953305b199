import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..errors import NotFoundError, ValidationError
from ..models.enums import TERMINAL_STATUSES, QIStatus, SourceType
from ..models.models import JobOrder, User, WorkshopSnapshot
from ..schemas.job_orders import EndOfDayRequest, JobOrderCreate, JobOrderUpdate, ReplotRequest
from ..services import audit, availability, carry_over, job_workflow
from ..services.serializers import serialize_job_order
from ..services.time_rules import parse_date, workshop_today

router = APIRouter(prefix="/job-orders", tags=["job-orders"])

CONTROLLERS = ("administrator", "job-controller")


def _get_job(db: Session, job_id: str) -> JobOrder:
    try:
        job_uuid = uuid.UUID(str(job_id))
    except ValueError:
        raise NotFoundError("Job order not found")
    job = db.query(JobOrder).filter(JobOrder.id == job_uuid).first()
    if not job:
        raise NotFoundError("Job order not found")
    return job


def _paginate(query, page: int, limit: int):
    limit = min(max(1, limit), 200)
    page = max(1, page)
    total = query.count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return {
        "items": [serialize_job_order(j) for j in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit if limit > 0 else 0,
    }


@router.get("")
def list_job_orders(
    status: Optional[str] = None,
    technician: Optional[str] = None,
    date: Optional[str] = None,
    carried_over: Optional[bool] = None,
    is_important: Optional[bool] = None,
    qi_status: Optional[QIStatus] = None,
    source_type: Optional[SourceType] = None,
    search: Optional[str] = None,
    assigned_to_me: bool = False,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    List job orders with pagination

    Args:
        status: One status or a comma-separated list
        technician: Assigned technician id
        date: Workshop day (YYYY-MM-DD)
        search: Matches job number or plate number
        assigned_to_me: Only jobs assigned to the caller
    """
    query = db.query(JobOrder)
    if status:
        query = query.filter(JobOrder.status.in_([s.strip().upper() for s in status.split(",") if s.strip()]))
    if technician:
        try:
            query = query.filter(JobOrder.assigned_technician_id == uuid.UUID(technician))
        except ValueError:
            raise ValidationError("Invalid technician id", field="technician")
    if assigned_to_me:
        query = query.filter(JobOrder.assigned_technician_id == user.id)
    if date:
        query = query.filter(JobOrder.date == parse_date(date))
    if carried_over is not None:
        query = query.filter(JobOrder.carried_over.is_(carried_over))
    if is_important is not None:
        query = query.filter(JobOrder.is_important.is_(is_important))
    if qi_status:
        query = query.filter(JobOrder.qi_status == qi_status.value)
    if source_type:
        query = query.filter(JobOrder.source_type == source_type.value)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(JobOrder.job_number.ilike(like) | JobOrder.plate_number.ilike(like))
    query = query.order_by(JobOrder.date.desc(), JobOrder.time_start.asc(), JobOrder.job_number.asc())
    return _paginate(query, page, limit)


@router.post("", status_code=201)
def create_job_order(
    payload: JobOrderCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    """Create a job order. HARD STOP: blocks on duplicate job number or technician overlap."""
    job = job_workflow.create_job_order(db, payload.model_dump(), created_by=user, source_type="direct")
    after = serialize_job_order(job)
    audit.record(db, "create", "JobOrder", job.id, actor=user, after_state=after, request=request, request_body=payload.model_dump(mode="json"))
    return {"job_order": after}


@router.get("/technicians/available")
def get_available_technicians(
    date: str,
    start_time: str,
    end_time: str,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """Technicians free for the whole range and within their daily hour limit"""
    return {"technicians": availability.available_technicians(db, date, start_time, end_time)}


@router.get("/technicians/{technician_id}/availability")
def get_technician_availability(
    technician_id: str,
    date: str,
    duration: int = 60,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    start_times = availability.available_start_times(db, technician_id, date, duration)
    return {"technician_id": technician_id, "date": date, "duration": duration, "available_start_times": start_times}


@router.get("/walk-in-slots")
def get_walk_in_slots(
    date: str,
    duration: Optional[int] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    return {"date": date, "technicians": availability.walk_in_slots(db, date, duration)}


@router.get("/workshop-slots")
def get_workshop_slots(
    date: str,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    return {"date": date, "slots": availability.workshop_slots(db, date)}


@router.get("/queues/by-status")
def get_queues_by_status(
    statuses: str = "WP,FP,HC,HW,HI,HF,SU,QI,FR,FU",
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """Open queues grouped by status, oldest first"""
    wanted = [s.strip().upper() for s in statuses.split(",") if s.strip()]
    jobs = (
        db.query(JobOrder)
        .filter(JobOrder.status.in_(wanted))
        .order_by(JobOrder.date.asc(), JobOrder.job_number.asc())
        .all()
    )
    queues = {s: [] for s in wanted}
    for job in jobs:
        queues[job.status].append(serialize_job_order(job))
    return {"queues": queues, "counts": {s: len(items) for s, items in queues.items()}}


@router.post("/end-of-day")
def end_of_day(
    payload: Optional[EndOfDayRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    """Snapshot the day and carry unfinished job orders to the next day"""
    closing_day = payload.date if payload and payload.date else workshop_today()
    return carry_over.end_of_day(db, closing_day, actor=user)


@router.post("/check-carry-over")
def check_carry_over(
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    return carry_over.check_carry_over(db, actor=user)


@router.get("/snapshots")
def list_snapshots(
    limit: int = 30,
    db: Session = Depends(get_db),
    _=Depends(require_roles(*CONTROLLERS)),
):
    limit = min(max(1, limit), 365)
    rows = db.query(WorkshopSnapshot).order_by(WorkshopSnapshot.snapshot_date.desc()).limit(limit).all()
    return {
        "items": [
            {"id": str(s.id), "date": s.snapshot_date.isoformat(), "statistics": s.statistics, "created_at": s.created_at.isoformat() if s.created_at else None}
            for s in rows
        ]
    }


@router.get("/snapshots/{snapshot_date}")
def get_snapshot(
    snapshot_date: date,
    db: Session = Depends(get_db),
    _=Depends(require_roles(*CONTROLLERS)),
):
    snapshot = db.query(WorkshopSnapshot).filter(WorkshopSnapshot.snapshot_date == snapshot_date).first()
    if not snapshot:
        raise NotFoundError("No snapshot for this date")
    return {
        "id": str(snapshot.id),
        "date": snapshot.snapshot_date.isoformat(),
        "statistics": snapshot.statistics,
        "job_orders": snapshot.job_orders,
        "carried_over_job_ids": snapshot.carried_over_job_ids,
        "created_by": str(snapshot.created_by) if snapshot.created_by else None,
    }


@router.get("/{job_id}")
def get_job_order(job_id: str, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return {"job_order": serialize_job_order(_get_job(db, job_id))}


@router.put("/{job_id}")
def update_job_order(
    job_id: str,
    payload: JobOrderUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    job = _get_job(db, job_id)
    before = serialize_job_order(job)
    result = job_workflow.apply_update(db, job, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(job)
    after = serialize_job_order(job)
    audit.record(db, result["action"], "JobOrder", job.id, actor=user, before_state=before, after_state=after, request=request, request_body=payload.model_dump(mode="json", exclude_unset=True))
    return {"job_order": after, "freed_slot": result["freed_slot"]}


@router.patch("/{job_id}/replot")
def replot_job_order(
    job_id: str,
    payload: ReplotRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    """Give a job (typically FP or carried over) a technician and time slot again"""
    job = _get_job(db, job_id)
    if job.status in TERMINAL_STATUSES:
        raise ValidationError("Released job orders cannot be replotted", field="status")
    if payload.time_range is not None:
        time_range = payload.time_range.model_dump()
    else:
        time_range = job_workflow.scheduled_range(db, payload.assigned_technician, payload.start_time, payload.duration_minutes)
    before = serialize_job_order(job)
    job_workflow.reassign(db, job, technician_id=payload.assigned_technician, time_range=time_range, day=payload.date)
    db.commit()
    db.refresh(job)
    after = serialize_job_order(job)
    audit.record(db, "assignment_change", "JobOrder", job.id, actor=user, before_state=before, after_state=after, request=request, request_body=payload.model_dump(mode="json"))
    return {"job_order": after}


def _transition(db: Session, job_id: str, action, user: User, request: Request):
    job = _get_job(db, job_id)
    before = serialize_job_order(job)
    action(job)
    db.commit()
    db.refresh(job)
    after = serialize_job_order(job)
    audit_action = "status_change" if before["status"] != after["status"] else "update"
    audit.record(db, audit_action, "JobOrder", job.id, actor=user, before_state=before, after_state=after, request=request)
    return {"job_order": after}


@router.patch("/{job_id}/submit-qi")
def submit_qi(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS, "technician")),
):
    return _transition(db, job_id, job_workflow.submit_for_qi, user, request)


@router.patch("/{job_id}/approve-qi")
def approve_qi(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    return _transition(db, job_id, job_workflow.approve_qi, user, request)


@router.patch("/{job_id}/reject-qi")
def reject_qi(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    return _transition(db, job_id, job_workflow.reject_qi, user, request)


@router.patch("/{job_id}/complete")
def complete_job_order(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    return _transition(db, job_id, job_workflow.complete, user, request)


@router.patch("/{job_id}/mark-unclaimed")
def mark_unclaimed(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    return _transition(db, job_id, job_workflow.mark_unclaimed, user, request)


@router.patch("/{job_id}/redo")
def redo_job_order(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    return _transition(db, job_id, job_workflow.redo, user, request)


@router.patch("/{job_id}/toggle-important")
def toggle_important(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*CONTROLLERS)),
):
    return _transition(db, job_id, job_workflow.toggle_important, user, request)


@router.delete("/{job_id}")
def delete_job_order(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("administrator")),
):
    job = _get_job(db, job_id)
    before = serialize_job_order(job)
    db.delete(job)
    db.commit()
    audit.record(db, "delete", "JobOrder", before["id"], actor=user, before_state=before, request=request)
    return {"status": "ok"}
