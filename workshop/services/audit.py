"""
Audit logging service.
Append-only audit log with field classification, suspicion heuristics and integrity hashing.
Recording is best-effort: failures are logged and never reach the caller.
"""
import hashlib
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.requests import Request

from ..config import settings
from ..errors import AuditWriteFailure, ValidationError
from ..models.models import AuditLog, User
from . import system_log
from .time_rules import duration_minutes, parse_date, workshop_today

log = structlog.get_logger(__name__)

# Checked in this order; first match wins
FINANCIAL_FIELDS = {
    "time_range",
    "actual_end_time",
    "date",
    "assigned_technician",
    "job_list",
    "parts",
    "status",
    "qi_status",
}
ASSIGNMENT_FIELDS = {"assigned_technician", "service_advisor", "assigned_to"}
STATUS_FIELDS = {"status", "qi_status", "carried_over", "is_important"}
METADATA_FIELDS = {"updated_at", "created_at"}

IGNORED_FIELDS = {"id", "updated_at"}
# Schedule fields that must not move once a job is released
RELEASED_JOB_FIELDS = {"time_range", "date", "assigned_technician"}
SENSITIVE_KEYS = {"password", "password_hash", "token", "secret", "authorization"}


def classify_field(field: str) -> str:
    """Classify a changed field as financial, assignment, status, metadata or other."""
    if field in FINANCIAL_FIELDS:
        return "financial"
    if field in ASSIGNMENT_FIELDS:
        return "assignment"
    if field in STATUS_FIELDS:
        return "status"
    if field.startswith("_") or field in METADATA_FIELDS:
        return "metadata"
    return "other"


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Values are compared by deep JSON equality, so nested arrays such as job_list
    or parts are reported whole when any element differs.

    Args:
        before: Before state
        after: After state

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in sorted(all_keys):
        if key in IGNORED_FIELDS:
            continue
        before_val = before.get(key)
        after_val = after.get(key)

        if _canonical(before_val) != _canonical(after_val):
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff


def extract_changes(before: Optional[Dict], after: Optional[Dict]) -> List[Dict[str, Any]]:
    """Field-level changes with their classification."""
    diff = compute_diff(before or {}, after or {})
    return [
        {
            "field": field,
            "old_value": values["before"],
            "new_value": values["after"],
            "field_type": classify_field(field),
        }
        for field, values in diff.items()
    ]


def _range_minutes(value: Any) -> Optional[int]:
    if not isinstance(value, dict) or not value.get("start") or not value.get("end"):
        return None
    try:
        return duration_minutes(value["start"], value["end"])
    except ValidationError:
        return None


def detect_suspicious_activity(
    entity_type: str,
    before: Optional[Dict],
    after: Optional[Dict],
    changes: List[Dict[str, Any]],
    today: Optional[date] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Apply the job-order suspicion heuristics.

    Returns:
        (is_suspicious, reason) where reason joins every rule that fired
    """
    if entity_type != "JobOrder" or not before or not after:
        return False, None

    reasons = []
    changed = {c["field"]: c for c in changes}
    financial = [c for c in changes if c["field_type"] == "financial"]
    prior_status = before.get("status")

    if prior_status in ("CP", "FR") and RELEASED_JOB_FIELDS & changed.keys():
        fields = ", ".join(sorted(RELEASED_JOB_FIELDS & changed.keys()))
        reasons.append(f"Modified {fields} of a job order in status {prior_status}")

    if financial and before.get("date"):
        try:
            job_date = parse_date(before["date"])
        except ValidationError:
            job_date = None
        if job_date is not None:
            age = ((today or workshop_today()) - job_date).days
            if age > settings.suspicious_job_age_days:
                reasons.append(f"Modified a job order {age} days old")

    if prior_status == "OG" and after.get("status") == "CP":
        reasons.append("Status changed directly from OG to CP, skipping quality inspection")

    if "time_range" in changed:
        old_minutes = _range_minutes(before.get("time_range"))
        new_minutes = _range_minutes(after.get("time_range"))
        if old_minutes is not None and new_minutes is not None:
            delta = abs(new_minutes - old_minutes)
            if delta > settings.suspicious_time_delta_min:
                reasons.append(f"Time range duration changed by {delta} minutes")

    if reasons:
        return True, "; ".join(reasons)
    return False, None


def determine_severity(action: str, entity_type: str, changes: List[Dict[str, Any]], is_suspicious: bool) -> str:
    if is_suspicious:
        return "critical"
    if action == "delete" and entity_type == "JobOrder":
        return "high"
    if any(c["field_type"] == "financial" for c in changes):
        return "high"
    if action == "status_change" and entity_type == "JobOrder":
        return "medium"
    if action == "assignment_change":
        return "medium"
    if any(c["field_type"] in ("status", "assignment") for c in changes):
        return "medium"
    return "low"


def sanitize_request_body(body: Any) -> Any:
    """Redact secrets from a request body before it is stored."""
    if isinstance(body, dict):
        return {
            k: "[REDACTED]" if k.lower() in SENSITIVE_KEYS else sanitize_request_body(v)
            for k, v in body.items()
        }
    if isinstance(body, list):
        return [sanitize_request_body(v) for v in body]
    return body


def _request_context(request: Optional[Request], request_body: Any) -> Optional[Dict[str, Any]]:
    if request is None and request_body is None:
        return None
    context: Dict[str, Any] = {}
    if request is not None:
        context.update({
            "ip_address": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
            "method": request.method,
            "path": request.url.path,
            "request_id": getattr(request.state, "request_id", None),
        })
    if request_body is not None:
        context["request_body"] = sanitize_request_body(request_body)
    return context


def _integrity_hash(canonical_data: Dict[str, Any], integrity_secret: Optional[str]) -> Optional[str]:
    if not integrity_secret:
        return None
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    hash_input = f"{canonical_json}:{integrity_secret}"
    return hashlib.sha256(hash_input.encode()).hexdigest()


def _write_entry(db: Session, entry: AuditLog) -> AuditLog:
    try:
        db.add(entry)
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as e:
        raise AuditWriteFailure("Could not persist audit log", {"error": str(e)}) from e
    return entry


def record(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Any,
    actor: Optional[User] = None,
    before_state: Optional[Dict] = None,
    after_state: Optional[Dict] = None,
    request: Optional[Request] = None,
    request_body: Any = None,
    today: Optional[date] = None,
    integrity_secret: Optional[str] = None,
) -> Optional[AuditLog]:
    """
    Create an append-only audit log entry.

    Args:
        db: Database session
        action: create|update|delete|status_change|assignment_change|financial_change|login|logout|permission_denied
        entity_type: JobOrder|User|Appointment|System
        entity_id: Entity ID
        actor: User who performed the action (None for system)
        before_state: Serialized entity before the change
        after_state: Serialized entity after the change
        request: Incoming request, for ip/user agent/path context
        request_body: Raw request payload, stored with secrets redacted
        today: Override for the workshop day used by the age heuristic
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        Created AuditLog object, or None when recording failed
    """
    try:
        changes = extract_changes(before_state, after_state) if before_state is not None and after_state is not None else []
        is_suspicious, reason = detect_suspicious_activity(entity_type, before_state, after_state, changes, today=today)
        severity = determine_severity(action, entity_type, changes, is_suspicious)
        context = _request_context(request, request_body)
        timestamp_utc = datetime.utcnow().replace(tzinfo=None)

        if integrity_secret is None:
            integrity_secret = settings.jwt_secret
        integrity_hash = _integrity_hash(
            {
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "actor_id": str(actor.id) if actor else None,
                "actor_role": actor.role if actor else "system",
                "timestamp_utc": timestamp_utc.isoformat(),
                "changes": changes,
                "context": context,
            },
            integrity_secret,
        )

        entry = _write_entry(db, AuditLog(
            timestamp_utc=timestamp_utc,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_id=actor.id if actor else None,
            actor_email=actor.email if actor else None,
            actor_name=actor.name if actor else "system",
            actor_role=actor.role if actor else "system",
            changes=changes,
            before_state=before_state,
            after_state=after_state,
            context=context,
            is_suspicious=is_suspicious,
            suspicious_reason=reason,
            severity=severity,
            integrity_hash=integrity_hash,
        ))
    except Exception as e:
        failure = e if isinstance(e, AuditWriteFailure) else AuditWriteFailure(str(e))
        db.rollback()
        log.error("audit_write_failed", action=action, entity_type=entity_type, entity_id=str(entity_id), error=failure.message)
        return None

    if is_suspicious or severity in ("high", "critical"):
        system_log.write(
            db,
            level="error" if is_suspicious else "warn",
            message=f"[SECURITY] {action} {entity_type} {entity_id}",
            context={
                "audit_log_id": str(entry.id),
                "severity": severity,
                "suspicious_reason": reason,
                "changed_fields": [c["field"] for c in changes],
            },
            user=actor,
            ip_address=(context or {}).get("ip_address"),
            method=(context or {}).get("method"),
            path=(context or {}).get("path"),
        )
    return entry


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    is_suspicious: Optional[bool] = None,
    severity: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
):
    """
    Get audit logs with optional filtering.

    Args:
        db: Database session
        entity_type: Filter by entity type
        entity_id: Filter by entity ID
        action: Filter by action
        is_suspicious: Filter by suspicion flag
        severity: Filter by severity
        limit: Maximum number of results
        offset: Offset for pagination

    Returns:
        Tuple of (AuditLog list, total count)
    """
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))

    if action:
        query = query.filter(AuditLog.action == action)

    if is_suspicious is not None:
        query = query.filter(AuditLog.is_suspicious.is_(is_suspicious))

    if severity:
        query = query.filter(AuditLog.severity == severity)

    total = query.count()
    query = query.order_by(AuditLog.timestamp_utc.desc())
    query = query.limit(limit).offset(offset)

    return query.all(), total
