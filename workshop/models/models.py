import re
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
    CheckConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Mapped, mapped_column, Session

from ..db import Base
from ..errors import ImmutabilityViolation


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False, index=True)  # administrator|job-controller|technician|service-advisor
    level: Mapped[Optional[str]] = mapped_column(String(20))  # technicians only: untrained|level-0..3
    break_times: Mapped[Optional[list]] = mapped_column(JSON, default=list)  # [{description, start_time, end_time}]
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class JobOrder(Base):
    """One vehicle visit tracked through the repair lifecycle"""
    __tablename__ = "job_orders"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)  # stored uppercase
    plate_number: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    vin: Mapped[str] = mapped_column(String(50), nullable=False)
    assigned_technician_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    service_advisor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    time_start: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    time_end: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    actual_end_time: Mapped[Optional[str]] = mapped_column(String(5))  # set when work is interrupted
    job_list: Mapped[list] = mapped_column(JSON, default=list)  # [{description, status: Finished|Unfinished}]
    parts: Mapped[list] = mapped_column(JSON, default=list)  # [{name, availability: Available|Unavailable}]
    status: Mapped[str] = mapped_column(String(4), nullable=False, default="OG", index=True)
    date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)  # workshop day, moves on replot/carry-over
    original_created_date: Mapped[Date] = mapped_column(Date, nullable=False)  # never changes
    source_type: Mapped[str] = mapped_column(String(20), nullable=False, default="direct")  # appointment|carry-over|direct
    carried_over: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    carry_over_chain: Mapped[list] = mapped_column(JSON, default=list)  # [{job_id, date, status}]
    original_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))  # lookup only, no FK
    is_important: Mapped[bool] = mapped_column(Boolean, default=False)
    qi_status: Mapped[Optional[str]] = mapped_column(String(20))  # pending|approved|rejected
    hold_customer_remarks: Mapped[Optional[str]] = mapped_column(Text)
    sublet_remarks: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    # Indexes for schedule lookups
    __table_args__ = (
        Index('idx_job_orders_technician_date', 'assigned_technician_id', 'date'),
        Index('idx_job_orders_date_status', 'date', 'status'),
    )


class Appointment(Base):
    """Scheduled future visit, convertible into a job order"""
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = uuid_pk()
    plate_number: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    time_start: Mapped[str] = mapped_column(String(5), nullable=False)
    time_end: Mapped[str] = mapped_column(String(5), nullable=False)
    date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    assigned_technician_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    service_advisor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    no_show: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_appointments_technician_date', 'assigned_technician_id', 'date'),
    )


class AuditLog(Base):
    """Append-only audit trail; rows reject update and delete"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # JobOrder|User|Appointment|System
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)  # no FK: survives user deletion
    actor_email: Mapped[Optional[str]] = mapped_column(String(255))
    actor_name: Mapped[Optional[str]] = mapped_column(String(255))
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    changes: Mapped[Optional[list]] = mapped_column(JSON)  # [{field, old_value, new_value, field_type}]
    before_state: Mapped[Optional[dict]] = mapped_column(JSON)
    after_state: Mapped[Optional[dict]] = mapped_column(JSON)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {ip_address, user_agent, method, path, request_body}
    is_suspicious: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    suspicious_reason: Mapped[Optional[str]] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(10), default="low", index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


class SystemLog(Base):
    """Operational log persisted for administrators"""
    __tablename__ = "system_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False, index=True)  # info|warn|error|audit
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    user_email: Mapped[Optional[str]] = mapped_column(String(255))
    user_role: Mapped[Optional[str]] = mapped_column(String(50))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    method: Mapped[Optional[str]] = mapped_column(String(10))
    path: Mapped[Optional[str]] = mapped_column(String(500))
    status_code: Mapped[Optional[int]] = mapped_column(Integer)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)


class MaintenanceSettings(Base):
    """Singleton row (id is always 1)"""
    __tablename__ = "maintenance_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    is_under_maintenance: Mapped[bool] = mapped_column(Boolean, default=False)
    maintenance_message: Mapped[str] = mapped_column(
        Text, default="The system is currently under maintenance. Please try again later."
    )
    api_key: Mapped[Optional[str]] = mapped_column(String(255))
    last_api_key_validation_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_api_key_validation_success: Mapped[Optional[bool]] = mapped_column(Boolean)
    enabled_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    enabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    disabled_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    disabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_maintenance_settings_singleton"),
    )


class WorkshopSnapshot(Base):
    """End-of-day picture of the workshop, one per closing day"""
    __tablename__ = "workshop_snapshots"

    id: Mapped[uuid.UUID] = uuid_pk()
    snapshot_date: Mapped[Date] = mapped_column(Date, unique=True, nullable=False, index=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    statistics: Mapped[dict] = mapped_column(JSON, default=dict)
    job_orders: Mapped[list] = mapped_column(JSON, default=list)
    carried_over_job_ids: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class BugReport(Base):
    __tablename__ = "bug_reports"

    id: Mapped[uuid.UUID] = uuid_pk()
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    submitted_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    submitted_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    submitted_by_email: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)  # open|in-progress|resolved|closed
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low|medium|high|critical
    admin_response: Mapped[Optional[str]] = mapped_column(Text)
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)


# Audit log immutability, enforced for unit-of-work flushes, bulk statements and raw SQL
@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ImmutabilityViolation("Audit logs cannot be modified", {"audit_log_id": str(target.id)})


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ImmutabilityViolation("Audit logs cannot be deleted", {"audit_log_id": str(target.id)})


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_audit_writes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    if any(m.class_ is AuditLog for m in orm_execute_state.all_mappers):
        raise ImmutabilityViolation("Audit logs cannot be modified or deleted")


_AUDIT_WRITE_RE = re.compile(r"^\s*(update|delete\s+from|truncate(\s+table)?)\s+[\"`]?audit_logs\b", re.IGNORECASE)


@event.listens_for(Engine, "before_cursor_execute")
def _reject_raw_audit_writes(conn, cursor, statement, parameters, context, executemany):
    # Catches textual SQL that bypasses the ORM
    if _AUDIT_WRITE_RE.match(statement):
        raise ImmutabilityViolation("Audit logs cannot be modified or deleted")
