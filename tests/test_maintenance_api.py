import httpx

from conftest import PASSWORD, TestSession, VALIDATOR_URL
from workshop.models.models import MaintenanceSettings
from workshop.services.api_key_gate import ApiKeyGate, ApiKeyValidator


class TestFailClosed:
    """Requests without a configured key are rejected"""

    def test_no_settings_row(self, client, admin_headers):
        response = client.get("/job-orders", headers=admin_headers)
        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "Service Unavailable"
        assert body["is_under_maintenance"] is True

    def test_empty_api_key(self, client, db, admin_headers):
        db.add(MaintenanceSettings(id=1, api_key=None))
        db.commit()
        assert client.get("/users", headers=admin_headers).status_code == 503

    def test_invalid_key(self, client, db, maintenance, admin_headers):
        client.app.state.api_key_gate = ApiKeyGate(
            TestSession,
            validator=ApiKeyValidator(
                url=VALIDATOR_URL,
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"valid": False})),
            ),
        )
        assert client.get("/job-orders", headers=admin_headers).status_code == 503

    def test_exempt_paths_still_served(self, client, admin):
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/maintenance/settings/public").status_code == 200
        response = client.post("/auth/login", json={"identifier": admin.username, "password": PASSWORD})
        assert response.status_code == 200


class TestMaintenanceMode:
    """Toggling maintenance"""

    def test_enable_blocks_non_admins(self, client, db, maintenance, admin, admin_headers, controller_headers):
        response = client.put(
            "/maintenance/settings",
            json={"is_under_maintenance": True, "maintenance_message": "Back at noon"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["is_under_maintenance"] is True
        assert body["enabled_by"] == str(admin.id)
        assert body["enabled_at"] is not None

        blocked = client.get("/job-orders", headers=controller_headers)
        assert blocked.status_code == 503
        assert blocked.json()["message"] == "Back at noon"

        public = client.get("/maintenance/settings/public").json()
        assert public == {"is_under_maintenance": True, "maintenance_message": "Back at noon"}

        assert client.get("/job-orders", headers=admin_headers).status_code == 200

    def test_disable_stamps_actor(self, client, db, maintenance, admin, admin_headers, controller_headers):
        client.put("/maintenance/settings", json={"is_under_maintenance": True}, headers=admin_headers)
        response = client.put("/maintenance/settings", json={"is_under_maintenance": False}, headers=admin_headers)
        assert response.json()["disabled_by"] == str(admin.id)
        assert client.get("/job-orders", headers=controller_headers).status_code == 200

    def test_api_key_is_masked(self, client, maintenance, admin_headers):
        body = client.get("/maintenance/settings", headers=admin_headers).json()
        assert body["has_api_key"] is True
        assert body["api_key"] == "****-key"

    def test_changing_key_resets_validation(self, client, db, maintenance, admin_headers):
        client.get("/job-orders", headers=admin_headers)
        response = client.put("/maintenance/settings", json={"api_key": "new-key-1234"}, headers=admin_headers)
        assert response.json()["last_api_key_validation_success"] is None
        db.expire_all()
        assert db.get(MaintenanceSettings, 1).api_key == "new-key-1234"

    def test_settings_require_admin(self, client, maintenance, controller_headers):
        assert client.get("/maintenance/settings", headers=controller_headers).status_code == 403
