"""
Persisted operational log.
Writes are best-effort: a failing write is reported to the process log and never raised.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import SystemLog, User

log = structlog.get_logger(__name__)


def write(
    db: Session,
    level: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    user: Optional[User] = None,
    ip_address: Optional[str] = None,
    method: Optional[str] = None,
    path: Optional[str] = None,
    status_code: Optional[int] = None,
    duration_ms: Optional[int] = None,
) -> Optional[SystemLog]:
    """
    Persist a system log entry.

    Args:
        db: Database session
        level: info|warn|error|audit
        message: Human-readable message
        context: Structured details
        user: Acting user, if any
        ip_address, method, path, status_code, duration_ms: Request metadata

    Returns:
        The stored entry, or None if the write failed
    """
    entry = SystemLog(
        level=level,
        message=message,
        context=context,
        user_id=user.id if user else None,
        user_email=user.email if user else None,
        user_role=user.role if user else None,
        ip_address=ip_address,
        method=method,
        path=path,
        status_code=status_code,
        duration_ms=duration_ms,
    )
    try:
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry
    except Exception as e:
        db.rollback()
        log.error("system_log_write_failed", message=message, error=str(e))
        return None


def list_logs(
    db: Session,
    level: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
):
    """Newest-first system log entries with optional level/message filters, plus the total count."""
    query = db.query(SystemLog)
    if level:
        query = query.filter(SystemLog.level == level)
    if search:
        query = query.filter(SystemLog.message.ilike(f"%{search}%"))
    total = query.count()
    items = query.order_by(SystemLog.timestamp_utc.desc()).offset(offset).limit(limit).all()
    return items, total
