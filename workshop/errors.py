"""
Domain errors for the workshop service.

Business operations raise these; the HTTP layer renders them through a single
exception handler registered in ``main.create_app``.
"""
from typing import Any, Dict, Optional


class WorkshopError(Exception):
    """Base class for all domain errors."""

    status_code = 400
    error_type = "workshop_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "detail": self.message,
            "type": self.error_type,
            "details": self.details,
        }


class ValidationError(WorkshopError):
    """Malformed input: bad time format, missing field, invalid enum value."""

    error_type = "validation"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class InvalidTimeFormat(ValidationError):
    error_type = "invalid_time_format"


class InvalidScheduleQuery(ValidationError):
    error_type = "invalid_schedule_query"


class PreconditionNotMet(WorkshopError):
    """A business-rule guard failed; no state was changed."""

    error_type = "precondition_not_met"


class InvalidTransition(PreconditionNotMet):
    error_type = "invalid_transition"


class NotFoundError(WorkshopError):
    status_code = 404
    error_type = "not_found"


class ConflictError(WorkshopError):
    """Uniqueness violation or scheduling overlap."""

    status_code = 409
    error_type = "conflict"


class UpstreamUnavailable(WorkshopError):
    """External API-key validator unreachable or timed out."""

    status_code = 503
    error_type = "upstream_unavailable"


class AuditWriteFailure(WorkshopError):
    """Audit logging failed. Never propagated to the triggering operation."""

    status_code = 500
    error_type = "audit_write_failure"


class ImmutabilityViolation(WorkshopError):
    """Attempt to update or delete an audit log record."""

    status_code = 409
    error_type = "immutability_violation"
