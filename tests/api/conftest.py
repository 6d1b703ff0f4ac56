from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from fhirlink.core.config import settings
from fhirlink.main import app
from fhirlink.services.rate_limiter import InMemorySlidingWindow, get_rate_limiter

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def client():
    # No context manager: startup hooks (Redis, background workers) stay off
    return TestClient(app)


@pytest.fixture(autouse=True)
def fresh_rate_limits():
    limiter = get_rate_limiter()
    limiter._memory = InMemorySlidingWindow()
    yield
    limiter._memory = InMemorySlidingWindow()


@pytest.fixture
def admin_headers():
    with patch.object(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN):
        yield {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def issue_api_key(client, admin_headers, api_user_id):
    response = client.post(
        "/api/v1/keys",
        json={"api_user_id": api_user_id, "name": f"{api_user_id} key"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    return response.json()["data"]["key"]


@pytest.fixture
def api_headers(client, admin_headers):
    return {"X-API-Key": issue_api_key(client, admin_headers, "dev-1")}


@pytest.fixture
def other_api_headers(client, admin_headers):
    return {"X-API-Key": issue_api_key(client, admin_headers, "dev-2")}
