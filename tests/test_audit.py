from datetime import date

import pytest
from sqlalchemy import delete, text, update

from conftest import WORK_DAY, make_job
from workshop.errors import ImmutabilityViolation
from workshop.models.models import AuditLog, SystemLog
from workshop.services import audit
from workshop.services.serializers import serialize_job_order


def _job_state(**overrides):
    state = {
        "id": "job-1",
        "status": "OG",
        "date": WORK_DAY.isoformat(),
        "time_range": {"start": "08:00", "end": "09:00"},
        "assigned_technician": "tech-1",
        "job_list": [{"description": "Oil change", "status": "Unfinished"}],
        "plate_number": "ABC1234",
    }
    state.update(overrides)
    return state


class TestDiff:
    """Change extraction"""

    def test_classifies_fields(self):
        assert audit.classify_field("time_range") == "financial"
        assert audit.classify_field("service_advisor") == "assignment"
        assert audit.classify_field("is_important") == "status"
        assert audit.classify_field("created_at") == "metadata"
        assert audit.classify_field("plate_number") == "other"

    def test_nested_arrays_diff_as_a_whole(self):
        before = _job_state()
        after = _job_state(job_list=[{"description": "Oil change", "status": "Finished"}])
        changes = audit.extract_changes(before, after)
        assert [c["field"] for c in changes] == ["job_list"]
        assert changes[0]["old_value"] == before["job_list"]
        assert changes[0]["new_value"] == after["job_list"]

    def test_ignores_id_and_updated_at(self):
        changes = audit.extract_changes(_job_state(updated_at="a"), _job_state(id="other", updated_at="b"))
        assert changes == []

    def test_redacts_secrets(self):
        body = {"password": "x", "nested": [{"token": "y", "name": "z"}]}
        assert audit.sanitize_request_body(body) == {"password": "[REDACTED]", "nested": [{"token": "[REDACTED]", "name": "z"}]}


class TestSuspicion:
    """Suspicion heuristics"""

    def _detect(self, before, after, today=WORK_DAY):
        changes = audit.extract_changes(before, after)
        return audit.detect_suspicious_activity("JobOrder", before, after, changes, today=today)

    def test_time_range_edit_on_completed_job(self):
        suspicious, reason = self._detect(
            _job_state(status="CP"),
            _job_state(status="CP", time_range={"start": "08:00", "end": "08:30"}),
        )
        assert suspicious
        assert "CP" in reason

    def test_normal_release_is_not_suspicious(self):
        suspicious, _ = self._detect(_job_state(status="FR"), _job_state(status="CP"))
        assert not suspicious

    def test_skipping_quality_inspection(self):
        suspicious, reason = self._detect(_job_state(status="OG"), _job_state(status="CP"))
        assert suspicious
        assert "OG to CP" in reason

    def test_old_job_financial_edit(self):
        before = _job_state(date="2024-01-01")
        after = _job_state(date="2024-01-01", job_list=[])
        suspicious, reason = self._detect(before, after, today=date(2024, 3, 4))
        assert suspicious
        assert "days old" in reason

    def test_large_duration_change(self):
        suspicious, reason = self._detect(_job_state(), _job_state(time_range={"start": "08:00", "end": "12:00"}))
        assert suspicious
        assert "180 minutes" in reason

    def test_small_duration_change(self):
        suspicious, _ = self._detect(_job_state(), _job_state(time_range={"start": "08:00", "end": "10:00"}))
        assert not suspicious

    def test_only_job_orders_are_checked(self):
        before = {"status": "CP", "date": WORK_DAY.isoformat()}
        after = {"status": "OG", "date": "2020-01-01"}
        assert audit.detect_suspicious_activity("Appointment", before, after, audit.extract_changes(before, after)) == (False, None)


class TestRecord:
    """Persisting audit entries"""

    def test_suspicious_edit_is_critical(self, db, technician, admin):
        job = make_job(db, "JO-1", technician, status="CP")
        before = serialize_job_order(job)
        job.time_end = "08:30"
        db.commit()
        after = serialize_job_order(job)

        entry = audit.record(db, "update", "JobOrder", job.id, actor=admin, before_state=before, after_state=after, today=WORK_DAY)

        assert entry.is_suspicious is True
        assert entry.severity == "critical"
        assert entry.actor_role == "administrator"
        assert entry.integrity_hash is not None
        security = db.query(SystemLog).filter(SystemLog.message.like("[SECURITY]%")).one()
        assert security.level == "error"

    def test_plain_update_is_low(self, db, admin):
        entry = audit.record(db, "update", "User", admin.id, actor=admin, before_state={"name": "A"}, after_state={"name": "B"})
        assert entry.severity == "low"
        assert entry.changes == [{"field": "name", "old_value": "A", "new_value": "B", "field_type": "other"}]
        assert db.query(SystemLog).count() == 0

    def test_system_actor(self, db):
        entry = audit.record(db, "delete", "JobOrder", "job-1", before_state={"status": "OG"})
        assert entry.actor_name == "system"
        assert entry.severity == "high"

    def test_failed_write_returns_none(self, db):
        # Non-serializable state cannot be stored in a JSON column
        entry = audit.record(db, "update", "User", "u-1", before_state={"x": object()}, after_state={"x": 1})
        assert entry is None
        assert db.query(AuditLog).count() == 0

    def test_filtering(self, db, admin):
        audit.record(db, "update", "User", admin.id, actor=admin, before_state={"name": "A"}, after_state={"name": "B"})
        audit.record(db, "delete", "JobOrder", "job-1", before_state={"status": "OG"})
        items, total = audit.get_audit_logs(db, entity_type="JobOrder")
        assert total == 1
        assert items[0].entity_id == "job-1"


class TestImmutability:
    """Audit rows cannot be changed once written"""

    def _entry(self, db):
        return audit.record(db, "create", "JobOrder", "job-1", after_state={"status": "OG"})

    def test_update_is_rejected(self, db):
        entry = self._entry(db)
        entry.action = "delete"
        with pytest.raises(ImmutabilityViolation):
            db.commit()
        db.rollback()
        assert db.get(AuditLog, entry.id).action == "create"

    def test_delete_is_rejected(self, db):
        entry = self._entry(db)
        db.delete(entry)
        with pytest.raises(ImmutabilityViolation):
            db.commit()
        db.rollback()
        assert db.query(AuditLog).count() == 1

    def test_bulk_statements_are_rejected(self, db):
        self._entry(db)
        with pytest.raises(ImmutabilityViolation):
            db.execute(update(AuditLog).values(severity="low"))
        with pytest.raises(ImmutabilityViolation):
            db.execute(delete(AuditLog))
        db.rollback()
        assert db.query(AuditLog).count() == 1

    def test_raw_sql_is_rejected(self, db):
        self._entry(db)
        with pytest.raises(ImmutabilityViolation):
            db.execute(text("DELETE FROM audit_logs"))
        with pytest.raises(ImmutabilityViolation):
            db.connection().exec_driver_sql("UPDATE audit_logs SET action = 'tampered'")
        db.rollback()
        assert db.query(AuditLog).count() == 1
        assert db.query(AuditLog).one().action == "create"
