from datetime import date

import pytest

from conftest import WORK_DAY, make_job
from workshop.errors import ConflictError, InvalidTransition, PreconditionNotMet, ValidationError
from workshop.models.models import JobOrder
from workshop.services import job_workflow


def _create_data(job_number="jo-100", technician=None, start="08:00", end="09:00", parts=None):
    return {
        "job_number": job_number,
        "plate_number": "abc 123",
        "vin": "vin123",
        "assigned_technician": str(technician.id) if technician else None,
        "time_range": {"start": start, "end": end},
        "date": WORK_DAY,
        "job_list": [{"description": "Brake pads", "status": "Unfinished"}],
        "parts": parts or [],
    }


class TestTransitions:
    """Transition table"""

    def test_allowed_and_disallowed(self):
        assert job_workflow.can_transition("OG", "QI")
        assert job_workflow.can_transition("FR", "CP")
        assert job_workflow.can_transition("CP", "CP")
        assert not job_workflow.can_transition("CP", "OG")
        assert not job_workflow.can_transition("OG", "CP")
        assert not job_workflow.can_transition("QI", "WP")

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidTransition) as exc:
            job_workflow.validate_transition("CP", "OG")
        assert exc.value.details["from"] == "CP"

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            job_workflow.validate_transition("OG", "XX")


class TestQualityInspection:
    """QI gating and review"""

    def test_unfinished_task_blocks_qi(self, db, technician):
        job = make_job(db, "JO-1", technician, job_list=[{"description": "Align", "status": "Unfinished"}])
        with pytest.raises(PreconditionNotMet) as exc:
            job_workflow.submit_for_qi(job)
        assert exc.value.details["unfinished_tasks"] == ["Align"]
        assert job.status == "OG"

    def test_unavailable_part_blocks_qi(self, db, technician):
        job = make_job(db, "JO-1", technician, parts=[{"name": "Rotor", "availability": "Unavailable"}], status="WP")
        with pytest.raises(PreconditionNotMet):
            job_workflow.submit_for_qi(job)
        assert job.status == "WP"

    def test_submit_approve_complete(self, db, technician):
        job = make_job(db, "JO-1", technician)
        job_workflow.submit_for_qi(job)
        assert (job.status, job.qi_status) == ("QI", "pending")
        job_workflow.approve_qi(job)
        assert (job.status, job.qi_status) == ("FR", "approved")
        job_workflow.complete(job)
        assert job.status == "CP"

    def test_reject_sends_back_to_work(self, db, technician):
        job = make_job(db, "JO-1", technician)
        job_workflow.submit_for_qi(job)
        job_workflow.reject_qi(job)
        assert (job.status, job.qi_status) == ("OG", "rejected")

    def test_approve_requires_pending_qi(self, db, technician):
        job = make_job(db, "JO-1", technician)
        with pytest.raises(PreconditionNotMet):
            job_workflow.approve_qi(job)

    def test_unclaimed_and_redo(self, db, technician):
        job = make_job(db, "JO-1", technician, status="FR", qi_status="approved")
        job_workflow.mark_unclaimed(job)
        assert job.status == "FU"
        with pytest.raises(PreconditionNotMet):
            job_workflow.redo(job)

        other = make_job(db, "JO-2", technician, start="10:00", end="11:00", status="FR", qi_status="approved")
        job_workflow.redo(other)
        assert other.status == "OG" and other.qi_status is None

    def test_status_write_from_release_clears_verdict(self, db, technician):
        job = make_job(db, "JO-1", technician, status="FR", qi_status="approved")
        result = job_workflow.apply_update(db, job, {"status": "OG"})
        assert job.status == "OG"
        assert job.qi_status is None
        assert result["action"] == "status_change"

    def test_terminal_status_clears_carried_over(self, db, technician):
        job = make_job(db, "JO-1", technician, status="FR", carried_over=True)
        job_workflow.complete(job)
        assert job.carried_over is False


class TestParts:
    """Availability-driven status moves"""

    def test_unavailable_part_takes_ongoing_job_off_schedule(self, db, technician):
        job = make_job(db, "JO-1", technician, start="08:00", end="10:00")
        freed = job_workflow.apply_parts_change(job, [{"name": "Pump", "availability": "Unavailable"}])
        assert job.status == "WP"
        assert job.assigned_technician_id is None
        assert job.actual_end_time is not None
        assert freed["technician_id"] == str(technician.id)
        assert freed["end_time"] == "10:00"

    def test_parts_arriving_moves_to_for_plotting(self, db):
        job = make_job(db, "JO-1", status="WP", parts=[{"name": "Pump", "availability": "Unavailable"}])
        job_workflow.apply_parts_change(job, [{"name": "Pump", "availability": "Available"}])
        assert job.status == "FP"

    def test_quality_inspection_keeps_status(self, db, technician):
        job = make_job(db, "JO-1", technician, status="QI", qi_status="pending")
        job_workflow.apply_parts_change(job, [{"name": "Pump", "availability": "Unavailable"}])
        assert job.status == "QI"

    def test_explicit_hold_wins(self, db, technician):
        job = make_job(db, "JO-1", technician)
        result = job_workflow.apply_update(db, job, {
            "parts": [{"name": "Pump", "availability": "Unavailable"}],
            "status": "HC",
        })
        assert job.status == "HC"
        assert result["action"] == "status_change"


class TestReassign:
    """Replotting"""

    def test_replot_returns_job_to_ongoing(self, db, technician, other_technician):
        job = make_job(db, "JO-1", status="FP", carried_over=True, actual_end_time="09:30")
        job_workflow.reassign(db, job, technician_id=str(other_technician.id), time_range={"start": "13:00", "end": "14:00"})
        assert job.status == "OG"
        assert job.assigned_technician_id == other_technician.id
        assert job.carried_over is False
        assert job.actual_end_time is None

    def test_replot_into_taken_slot(self, db, technician):
        make_job(db, "JO-1", technician, "08:00", "10:00")
        job = make_job(db, "JO-2", status="FP")
        with pytest.raises(ConflictError):
            job_workflow.reassign(db, job, technician_id=technician.id, time_range={"start": "09:00", "end": "10:00"})

    def test_replot_with_missing_parts(self, db, technician):
        job = make_job(db, "JO-1", status="WP", parts=[{"name": "Pump", "availability": "Unavailable"}])
        with pytest.raises(PreconditionNotMet):
            job_workflow.reassign(db, job, technician_id=technician.id)

    def test_released_job_keeps_status(self, db, technician):
        job = make_job(db, "JO-1", technician, status="CP")
        job_workflow.reassign(db, job, time_range={"start": "08:00", "end": "12:00"})
        assert job.status == "CP"
        assert job.time_end == "12:00"

    def test_replot_out_of_inspection_clears_pending(self, db, technician):
        job = make_job(db, "JO-1", technician, status="QI", qi_status="pending")
        job_workflow.apply_update(db, job, {"time_range": {"start": "10:00", "end": "11:00"}})
        assert job.status == "OG"
        assert job.qi_status is None
        assert job.time_start == "10:00"


class TestCreate:
    """Job order creation"""

    def test_job_number_stored_uppercase(self, db, technician, controller):
        job = job_workflow.create_job_order(db, _create_data(technician=technician), created_by=controller)
        assert job.job_number == "JO-100"
        assert job.plate_number == "ABC 123"
        assert job.status == "OG"
        assert job.source_type == "direct"
        assert job.created_by == controller.id
        assert isinstance(job.original_created_date, date)

    def test_duplicate_job_number_is_case_insensitive(self, db, technician, controller):
        job_workflow.create_job_order(db, _create_data("jo-100", technician), created_by=controller)
        with pytest.raises(ConflictError):
            job_workflow.create_job_order(db, _create_data("JO-100", technician, "10:00", "11:00"), created_by=controller)
        assert db.query(JobOrder).count() == 1

    def test_unavailable_parts_start_waiting(self, db, technician, controller):
        parts = [
            {"name": "Belt", "availability": "Unavailable"},
            {"name": "Oil", "availability": "Available"},
        ]
        job = job_workflow.create_job_order(db, _create_data(technician=technician, parts=parts), created_by=controller)
        assert job.status == "WP"
        assert job.assigned_technician_id == technician.id

    def test_all_parts_unavailable_leaves_job_unassigned(self, db, technician, controller):
        parts = [{"name": "Belt", "availability": "Unavailable"}]
        job = job_workflow.create_job_order(db, _create_data(technician=technician, parts=parts), created_by=controller)
        assert job.status == "WP"
        assert job.assigned_technician_id is None

    def test_rejects_non_technician(self, db, advisor, controller):
        with pytest.raises(ValidationError):
            job_workflow.create_job_order(db, _create_data(technician=advisor), created_by=controller)

    def test_rejects_overlap(self, db, technician, controller):
        make_job(db, "JO-1", technician, "08:30", "09:30")
        with pytest.raises(ConflictError):
            job_workflow.create_job_order(db, _create_data(technician=technician), created_by=controller)
