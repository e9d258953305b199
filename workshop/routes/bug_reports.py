import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..errors import NotFoundError
from ..models.models import BugReport, User
from ..schemas.bug_reports import BugReportCreate, BugReportUpdate
from ..services import audit
from ..services.serializers import serialize_bug_report

router = APIRouter(prefix="/bug-reports", tags=["bug-reports"])


def _get_report(db: Session, report_id: str) -> BugReport:
    try:
        report_uuid = uuid.UUID(str(report_id))
    except ValueError:
        raise NotFoundError("Bug report not found")
    report = db.query(BugReport).filter(BugReport.id == report_uuid).first()
    if not report:
        raise NotFoundError("Bug report not found")
    return report


@router.post("", status_code=201)
def create_bug_report(
    payload: BugReportCreate,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    report = BugReport(
        subject=payload.subject.strip(),
        description=payload.description,
        priority=payload.priority.value,
        status="open",
        submitted_by=me.id,
        submitted_by_name=me.name,
        submitted_by_email=me.email,
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    after = serialize_bug_report(report)
    audit.record(db, "create", "BugReport", report.id, actor=me, after_state=after, request=request)
    return {"bug_report": after}


@router.get("")
def list_bug_reports(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    _=Depends(require_roles("administrator")),
):
    query = db.query(BugReport)
    if status:
        query = query.filter(BugReport.status == status)
    if priority:
        query = query.filter(BugReport.priority == priority)
    total = query.count()
    rows = query.order_by(BugReport.created_at.desc()).offset(max(0, offset)).limit(min(max(1, limit), 500)).all()
    return {"items": [serialize_bug_report(r) for r in rows], "total": total}


@router.get("/{report_id}")
def get_bug_report(report_id: str, db: Session = Depends(get_db), _=Depends(require_roles("administrator"))):
    return {"bug_report": serialize_bug_report(_get_report(db, report_id))}


@router.put("/{report_id}")
def update_bug_report(
    report_id: str,
    payload: BugReportUpdate,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("administrator")),
):
    report = _get_report(db, report_id)
    before = serialize_bug_report(report)
    data = payload.model_dump(exclude_unset=True)

    if data.get("priority"):
        report.priority = data["priority"].value
    if "admin_response" in data:
        report.admin_response = data["admin_response"]
    if data.get("status"):
        new_status = data["status"].value
        if new_status == "resolved" and report.status != "resolved":
            report.resolved_by = me.id
            report.resolved_at = datetime.now(timezone.utc)
        elif new_status in ("open", "in-progress"):
            report.resolved_by = None
            report.resolved_at = None
        report.status = new_status

    db.commit()
    db.refresh(report)
    after = serialize_bug_report(report)
    audit.record(db, "update", "BugReport", report.id, actor=me, before_state=before, after_state=after, request=request)
    return {"bug_report": after}


@router.delete("/{report_id}")
def delete_bug_report(
    report_id: str,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("administrator")),
):
    report = _get_report(db, report_id)
    before = serialize_bug_report(report)
    db.delete(report)
    db.commit()
    audit.record(db, "delete", "BugReport", before["id"], actor=me, before_state=before, request=request)
    return {"status": "ok"}
