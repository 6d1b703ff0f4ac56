"""
Tests for API key authentication and admin key management.
"""

from unittest.mock import patch

from fhirlink.core.config import settings


class TestAPIKeyAuthentication:
    def test_missing_key(self, client):
        response = client.get("/api/v1/webhooks")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_API_KEY"
        assert body["metadata"]["request_id"] == response.headers["X-Request-ID"]

    def test_unknown_key(self, client):
        response = client.get("/api/v1/webhooks", headers={"X-API-Key": "fl_k_" + "0" * 48})
        assert response.status_code == 401

    def test_valid_key(self, client, api_headers):
        response = client.get("/api/v1/webhooks", headers=api_headers)

        assert response.status_code == 200
        assert response.json()["data"] == []


class TestKeyManagement:
    def test_admin_token_not_configured(self, client):
        with patch.object(settings, "ADMIN_API_TOKEN", None):
            response = client.get("/api/v1/keys", params={"api_user_id": "dev-1"})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"

    def test_wrong_admin_token(self, client, admin_headers):
        response = client.get(
            "/api/v1/keys",
            params={"api_user_id": "dev-1"},
            headers={"Authorization": "Bearer nope"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_create_list_revoke(self, client, admin_headers):
        created = client.post(
            "/api/v1/keys",
            json={"api_user_id": "dev-1", "name": "CI", "expires_in_days": 30},
            headers=admin_headers,
        )
        assert created.status_code == 201
        data = created.json()["data"]
        assert data["key"].startswith("fl_k_")
        assert data["expires_at"] is not None

        listed = client.get("/api/v1/keys", params={"api_user_id": "dev-1"}, headers=admin_headers).json()
        assert listed["metadata"]["total"] == 1
        assert "key" not in listed["data"][0]

        revoked = client.post(f"/api/v1/keys/{data['id']}/revoke", headers=admin_headers)
        assert revoked.status_code == 200

        response = client.get("/api/v1/webhooks", headers={"X-API-Key": data["key"]})
        assert response.status_code == 401

    def test_revoke_unknown_key(self, client, admin_headers):
        response = client.post("/api/v1/keys/missing/revoke", headers=admin_headers)
        assert response.status_code == 404
