import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..errors import NotFoundError, ValidationError
from ..models.models import Appointment, User
from ..schemas.appointments import AppointmentConversion, AppointmentCreate, AppointmentUpdate
from ..services import audit, availability, job_workflow
from ..services.serializers import serialize_appointment, serialize_job_order
from ..services.time_rules import parse_date

router = APIRouter(prefix="/appointments", tags=["appointments"])

SCHEDULERS = ("administrator", "job-controller", "service-advisor")


def _get_appointment(db: Session, appointment_id: str) -> Appointment:
    try:
        appointment_uuid = uuid.UUID(str(appointment_id))
    except ValueError:
        raise NotFoundError("Appointment not found")
    appointment = db.query(Appointment).filter(Appointment.id == appointment_uuid).first()
    if not appointment:
        raise NotFoundError("Appointment not found")
    return appointment


def _conflicting_job_orders(db: Session, appointment: Appointment):
    return availability.find_conflicts(
        db,
        appointment.assigned_technician_id,
        appointment.date,
        appointment.time_start,
        appointment.time_end,
        include_appointments=False,
    )["job_orders"]


@router.get("")
def list_appointments(
    date: Optional[str] = None,
    technician: Optional[str] = None,
    no_show: Optional[bool] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    query = db.query(Appointment)
    if date:
        query = query.filter(Appointment.date == parse_date(date))
    if technician:
        try:
            query = query.filter(Appointment.assigned_technician_id == uuid.UUID(technician))
        except ValueError:
            raise ValidationError("Invalid technician id", field="technician")
    if no_show is not None:
        query = query.filter(Appointment.no_show.is_(no_show))
    rows = query.order_by(Appointment.date.asc(), Appointment.time_start.asc()).all()
    return {"items": [serialize_appointment(a) for a in rows], "total": len(rows)}


@router.post("", status_code=201)
def create_appointment(
    payload: AppointmentCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*SCHEDULERS)),
):
    """Create an appointment. HARD STOP: blocks if the technician is already booked."""
    technician = job_workflow.resolve_staff(db, payload.assigned_technician, "technician", "assigned_technician")
    advisor_id = None
    if payload.service_advisor:
        advisor_id = job_workflow.resolve_staff(db, payload.service_advisor, "service-advisor", "service_advisor").id
    availability.ensure_slot_free(db, technician.id, payload.date, payload.time_range.start, payload.time_range.end)

    appointment = Appointment(
        plate_number=payload.plate_number.strip().upper(),
        time_start=payload.time_range.start,
        time_end=payload.time_range.end,
        date=payload.date,
        assigned_technician_id=technician.id,
        service_advisor_id=advisor_id,
        created_by=user.id,
        no_show=False,
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    after = serialize_appointment(appointment)
    audit.record(db, "create", "Appointment", appointment.id, actor=user, after_state=after, request=request, request_body=payload.model_dump(mode="json"))
    return {"appointment": after}


@router.delete("/no-show")
def delete_all_no_show(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*SCHEDULERS)),
):
    rows = db.query(Appointment).filter(Appointment.no_show.is_(True)).all()
    deleted = [serialize_appointment(a) for a in rows]
    for appointment in rows:
        db.delete(appointment)
    db.commit()
    for before in deleted:
        audit.record(db, "delete", "Appointment", before["id"], actor=user, before_state=before, request=request)
    return {"deleted": len(deleted)}


@router.get("/{appointment_id}")
def get_appointment(appointment_id: str, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return {"appointment": serialize_appointment(_get_appointment(db, appointment_id))}


@router.put("/{appointment_id}")
def update_appointment(
    appointment_id: str,
    payload: AppointmentUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*SCHEDULERS)),
):
    appointment = _get_appointment(db, appointment_id)
    before = serialize_appointment(appointment)
    data = payload.model_dump(exclude_unset=True)

    if data.get("plate_number"):
        appointment.plate_number = data["plate_number"].strip().upper()
    if "service_advisor" in data:
        advisor = data["service_advisor"]
        appointment.service_advisor_id = job_workflow.resolve_staff(db, advisor, "service-advisor", "service_advisor").id if advisor else None
    if data.get("no_show") is not None:
        appointment.no_show = data["no_show"]

    if any(data.get(k) is not None for k in ("assigned_technician", "time_range", "date")):
        technician_id = appointment.assigned_technician_id
        if data.get("assigned_technician"):
            technician_id = job_workflow.resolve_staff(db, data["assigned_technician"], "technician", "assigned_technician").id
        time_range = data.get("time_range") or {"start": appointment.time_start, "end": appointment.time_end}
        day = parse_date(data["date"]) if data.get("date") else appointment.date
        availability.ensure_slot_free(
            db, technician_id, day, time_range["start"], time_range["end"],
            exclude_appointment_id=appointment.id,
        )
        appointment.assigned_technician_id = technician_id
        appointment.time_start = time_range["start"]
        appointment.time_end = time_range["end"]
        appointment.date = day

    db.commit()
    db.refresh(appointment)
    after = serialize_appointment(appointment)
    action = "assignment_change" if before["assigned_technician"] != after["assigned_technician"] else "update"
    audit.record(db, action, "Appointment", appointment.id, actor=user, before_state=before, after_state=after, request=request, request_body=payload.model_dump(mode="json", exclude_unset=True))
    return {"appointment": after}


@router.post("/{appointment_id}/check-conflicts")
def check_conflicts(appointment_id: str, db: Session = Depends(get_db), _=Depends(get_current_user)):
    """Job orders overlapping the appointment's slot"""
    appointment = _get_appointment(db, appointment_id)
    conflicts = _conflicting_job_orders(db, appointment)
    return {
        "has_conflicts": bool(conflicts),
        "conflicting_job_orders": [serialize_job_order(j) for j in conflicts],
    }


@router.post("/{appointment_id}/resolve-conflicts")
def resolve_conflicts(
    appointment_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("administrator", "job-controller")),
):
    """Unassign overlapping job orders so the appointment keeps its slot"""
    appointment = _get_appointment(db, appointment_id)
    conflicts = _conflicting_job_orders(db, appointment)
    resolved, skipped = [], []
    for job in conflicts:
        # Jobs in QI or already released keep their slot
        if not job_workflow.can_transition(job.status, "UA"):
            skipped.append(str(job.id))
            continue
        before = serialize_job_order(job)
        job.status = "UA"
        job.assigned_technician_id = None
        db.commit()
        db.refresh(job)
        after = serialize_job_order(job)
        audit.record(db, "status_change", "JobOrder", job.id, actor=user, before_state=before, after_state=after, request=request)
        resolved.append(after)
    return {"resolved": len(resolved), "job_orders": resolved, "skipped": skipped}


@router.post("/{appointment_id}/create-job-order", status_code=201)
def create_job_order_from_appointment(
    appointment_id: str,
    payload: AppointmentConversion,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("administrator", "job-controller")),
):
    """Convert an appointment into a job order, then delete the appointment"""
    appointment = _get_appointment(db, appointment_id)
    appointment_before = serialize_appointment(appointment)
    time_range = payload.time_range.model_dump() if payload.time_range else {"start": appointment.time_start, "end": appointment.time_end}
    advisor = payload.service_advisor or (str(appointment.service_advisor_id) if appointment.service_advisor_id else None)

    data = {
        "job_number": payload.job_number,
        "plate_number": appointment.plate_number,
        "vin": payload.vin,
        "assigned_technician": str(appointment.assigned_technician_id),
        "service_advisor": advisor,
        "time_range": time_range,
        "date": appointment.date,
        "job_list": [t.model_dump() for t in payload.job_list],
        "parts": [p.model_dump() for p in payload.parts],
        "is_important": payload.is_important,
    }
    job = job_workflow.create_job_order(db, data, created_by=user, source_type="appointment", exclude_appointment_id=appointment.id)
    after = serialize_job_order(job)
    audit.record(db, "create", "JobOrder", job.id, actor=user, after_state=after, request=request, request_body=payload.model_dump(mode="json"))

    db.delete(appointment)
    db.commit()
    audit.record(db, "delete", "Appointment", appointment_before["id"], actor=user, before_state=appointment_before, request=request)
    return {"job_order": after}


@router.delete("/{appointment_id}")
def delete_appointment(
    appointment_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*SCHEDULERS)),
):
    appointment = _get_appointment(db, appointment_id)
    before = serialize_appointment(appointment)
    db.delete(appointment)
    db.commit()
    audit.record(db, "delete", "Appointment", before["id"], actor=user, before_state=before, request=request)
    return {"status": "ok"}
