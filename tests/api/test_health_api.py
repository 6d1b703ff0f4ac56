"""
Tests for health, readiness and rate-limit status endpoints.
"""


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert "version" in body

    def test_ready_without_redis(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"]["redis"] is False
        assert body["checks"]["storage"] is True

    def test_security_and_tracing_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_request_id_is_generated(self, client):
        response = client.get("/health")
        assert response.headers["X-Request-ID"]


class TestRateLimitStatus:
    def test_reports_budget_without_consuming(self, client):
        first = client.get("/api/v1/rate-limit/status", params={"category": "widget"}).json()["data"]
        second = client.get("/api/v1/rate-limit/status", params={"category": "widget"}).json()["data"]

        assert first["limit"] == 100
        assert first["remaining"] == second["remaining"] == 100
        assert first["window"] == 60
        assert first["backend"] == "memory"
        assert first["enforced"] is True
        assert first["reset"] is None
