from conftest import WORK_DAY, make_job
from workshop.models.models import Appointment, JobOrder


def _appointment(technician, start="09:00", end="10:00"):
    return {
        "plate_number": "abc 777",
        "time_range": {"start": start, "end": end},
        "date": WORK_DAY.isoformat(),
        "assigned_technician": str(technician.id),
    }


class TestAppointments:
    """Appointment booking and conversion"""

    def test_create_and_block_overlap(self, client, db, maintenance, technician, controller_headers):
        first = client.post("/appointments", json=_appointment(technician), headers=controller_headers)
        assert first.status_code == 201
        assert first.json()["appointment"]["plate_number"] == "ABC 777"

        second = client.post("/appointments", json=_appointment(technician, "09:30", "10:30"), headers=controller_headers)
        assert second.status_code == 409

    def test_conflict_check_and_resolution(self, client, db, maintenance, technician, controller_headers):
        job = make_job(db, "JO-1", technician, "09:00", "10:00")
        released = make_job(db, "JO-2", technician, "09:30", "10:00", status="FR")
        appointment = Appointment(
            plate_number="ABC777", time_start="09:00", time_end="10:00", date=WORK_DAY, assigned_technician_id=technician.id,
        )
        db.add(appointment)
        db.commit()

        check = client.post(f"/appointments/{appointment.id}/check-conflicts", headers=controller_headers).json()
        assert check["has_conflicts"] is True
        assert len(check["conflicting_job_orders"]) == 2

        resolved = client.post(f"/appointments/{appointment.id}/resolve-conflicts", headers=controller_headers).json()
        assert resolved["resolved"] == 1
        assert resolved["skipped"] == [str(released.id)]
        db.refresh(job)
        assert job.status == "UA"
        assert job.assigned_technician_id is None

    def test_convert_to_job_order(self, client, db, maintenance, technician, controller_headers):
        created = client.post("/appointments", json=_appointment(technician), headers=controller_headers).json()
        appointment_id = created["appointment"]["id"]

        response = client.post(
            f"/appointments/{appointment_id}/create-job-order",
            json={"job_number": "jo-500", "vin": "VIN500", "job_list": [{"description": "Tune up"}]},
            headers=controller_headers,
        )
        assert response.status_code == 201
        job = response.json()["job_order"]
        assert job["source_type"] == "appointment"
        assert job["time_range"] == {"start": "09:00", "end": "10:00"}
        assert db.query(Appointment).count() == 0
        assert db.query(JobOrder).count() == 1

    def test_no_show_cleanup(self, client, db, maintenance, technician, controller_headers):
        created = client.post("/appointments", json=_appointment(technician), headers=controller_headers).json()
        appointment_id = created["appointment"]["id"]
        client.put(f"/appointments/{appointment_id}", json={"no_show": True}, headers=controller_headers)

        response = client.delete("/appointments/no-show", headers=controller_headers)
        assert response.json() == {"deleted": 1}

    def test_technicians_cannot_book(self, client, maintenance, technician, technician_headers):
        response = client.post("/appointments", json=_appointment(technician), headers=technician_headers)
        assert response.status_code == 403
