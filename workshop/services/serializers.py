"""
JSON-ready views of ORM rows.
The same dicts feed API responses and audit before/after snapshots.
"""
from typing import Any, Dict, Optional

from ..models.models import Appointment, AuditLog, BugReport, JobOrder, SystemLog, User


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


def serialize_job_order(job: JobOrder) -> Dict[str, Any]:
    return {
        "id": str(job.id),
        "job_number": job.job_number,
        "plate_number": job.plate_number,
        "vin": job.vin,
        "assigned_technician": _str(job.assigned_technician_id),
        "service_advisor": _str(job.service_advisor_id),
        "created_by": _str(job.created_by),
        "time_range": {"start": job.time_start, "end": job.time_end},
        "actual_end_time": job.actual_end_time,
        "job_list": list(job.job_list or []),
        "parts": list(job.parts or []),
        "status": job.status,
        "date": _iso(job.date),
        "original_created_date": _iso(job.original_created_date),
        "source_type": job.source_type,
        "carried_over": bool(job.carried_over),
        "carry_over_chain": list(job.carry_over_chain or []),
        "original_job_id": _str(job.original_job_id),
        "is_important": bool(job.is_important),
        "qi_status": job.qi_status,
        "hold_customer_remarks": job.hold_customer_remarks,
        "sublet_remarks": job.sublet_remarks,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }


def serialize_appointment(appointment: Appointment) -> Dict[str, Any]:
    return {
        "id": str(appointment.id),
        "plate_number": appointment.plate_number,
        "time_range": {"start": appointment.time_start, "end": appointment.time_end},
        "date": _iso(appointment.date),
        "assigned_technician": _str(appointment.assigned_technician_id),
        "service_advisor": _str(appointment.service_advisor_id),
        "created_by": _str(appointment.created_by),
        "no_show": bool(appointment.no_show),
        "created_at": _iso(appointment.created_at),
        "updated_at": _iso(appointment.updated_at),
    }


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "name": user.name,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "level": user.level,
        "break_times": list(user.break_times or []),
        "is_active": bool(user.is_active),
        "created_at": _iso(user.created_at),
        "updated_at": _iso(user.updated_at),
    }


def serialize_audit_log(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "timestamp": _iso(entry.timestamp_utc),
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "actor": {
            "id": _str(entry.actor_id),
            "email": entry.actor_email,
            "name": entry.actor_name,
            "role": entry.actor_role,
        },
        "changes": entry.changes or [],
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "context": entry.context,
        "is_suspicious": bool(entry.is_suspicious),
        "suspicious_reason": entry.suspicious_reason,
        "severity": entry.severity,
        "integrity_hash": entry.integrity_hash,
    }


def serialize_system_log(entry: SystemLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "timestamp": _iso(entry.timestamp_utc),
        "level": entry.level,
        "message": entry.message,
        "context": entry.context,
        "user_id": _str(entry.user_id),
        "user_email": entry.user_email,
        "user_role": entry.user_role,
        "ip_address": entry.ip_address,
        "method": entry.method,
        "path": entry.path,
        "status_code": entry.status_code,
        "duration_ms": entry.duration_ms,
    }


def serialize_bug_report(report: BugReport) -> Dict[str, Any]:
    return {
        "id": str(report.id),
        "subject": report.subject,
        "description": report.description,
        "submitted_by": _str(report.submitted_by),
        "submitted_by_name": report.submitted_by_name,
        "submitted_by_email": report.submitted_by_email,
        "status": report.status,
        "priority": report.priority,
        "admin_response": report.admin_response,
        "resolved_by": _str(report.resolved_by),
        "resolved_at": _iso(report.resolved_at),
        "created_at": _iso(report.created_at),
        "updated_at": _iso(report.updated_at),
    }
