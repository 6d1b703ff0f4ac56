"""
Tests for webhook management endpoints.
"""

import pytest


@pytest.fixture
def webhook(client, api_headers):
    response = client.post(
        "/api/v1/webhooks",
        json={"url": "https://dev.example.com/hooks", "events": ["connection.created"], "description": "prod"},
        headers=api_headers,
    )
    assert response.status_code == 201
    return response.json()["data"]


class TestWebhookCrud:
    def test_create_returns_secret_once(self, client, api_headers, webhook):
        assert webhook["secret"].startswith("whsec_")
        assert webhook["events"] == ["connection.created"]

        listed = client.get("/api/v1/webhooks", headers=api_headers).json()
        assert listed["metadata"]["total"] == 1
        assert "secret" not in listed["data"][0]

    def test_default_subscription_is_wildcard(self, client, api_headers):
        response = client.post("/api/v1/webhooks", json={"url": "https://dev.example.com/all"}, headers=api_headers)
        assert response.json()["data"]["events"] == ["*"]

    def test_invalid_event(self, client, api_headers):
        response = client.post(
            "/api/v1/webhooks",
            json={"url": "https://dev.example.com/hooks", "events": ["patient.exploded"]},
            headers=api_headers,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "events"

    def test_invalid_url(self, client, api_headers):
        response = client.post("/api/v1/webhooks", json={"url": "ftp://nope"}, headers=api_headers)
        assert response.status_code == 400

    def test_update(self, client, api_headers, webhook):
        response = client.patch(f"/api/v1/webhooks/{webhook['id']}", json={"enabled": False}, headers=api_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["enabled"] is False
        assert data["url"] == "https://dev.example.com/hooks"

    def test_regenerate_secret(self, client, api_headers, webhook):
        response = client.post(f"/api/v1/webhooks/{webhook['id']}/regenerate-secret", headers=api_headers)

        secret = response.json()["data"]["secret"]
        assert secret.startswith("whsec_")
        assert secret != webhook["secret"]

    def test_delete(self, client, api_headers, webhook):
        response = client.delete(f"/api/v1/webhooks/{webhook['id']}", headers=api_headers)
        assert response.status_code == 200

        response = client.get(f"/api/v1/webhooks/{webhook['id']}/deliveries", headers=api_headers)
        assert response.status_code == 404

    def test_other_developer_cannot_touch(self, client, other_api_headers, webhook):
        response = client.delete(f"/api/v1/webhooks/{webhook['id']}", headers=other_api_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

        listed = client.get("/api/v1/webhooks", headers=other_api_headers).json()
        assert listed["data"] == []

    def test_event_catalogue(self, client):
        events = {e["type"] for e in client.get("/api/v1/webhooks/events").json()["data"]}
        assert {"connection.created", "connection.deleted", "test", "*"} <= events
