from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..db import get_db
from ..models.enums import AuditAction, EntityType, LogLevel, Severity
from ..services import audit, system_log
from ..services.serializers import serialize_audit_log, serialize_system_log

router = APIRouter(tags=["logs"])


@router.get("/audit-logs")
def list_audit_logs(
    entity_type: Optional[EntityType] = None,
    entity_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    is_suspicious: Optional[bool] = None,
    severity: Optional[Severity] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    _=Depends(require_roles("administrator")),
):
    """Audit trail, newest first"""
    items, total = audit.get_audit_logs(
        db,
        entity_type=entity_type.value if entity_type else None,
        entity_id=entity_id,
        action=action.value if action else None,
        is_suspicious=is_suspicious,
        severity=severity.value if severity else None,
        limit=min(max(1, limit), 500),
        offset=max(0, offset),
    )
    return {"items": [serialize_audit_log(e) for e in items], "total": total}


@router.get("/system-logs")
def list_system_logs(
    level: Optional[LogLevel] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    _=Depends(require_roles("administrator")),
):
    items, total = system_log.list_logs(
        db,
        level=level.value if level else None,
        search=search,
        limit=min(max(1, limit), 500),
        offset=max(0, offset),
    )
    return {"items": [serialize_system_log(e) for e in items], "total": total}
