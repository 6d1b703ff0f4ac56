"""
Tests for the connect widget endpoints, the OAuth callback and the
connections that come out of them.
"""

import os
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fhirlink.integrations.fhir.fhir_client import FetchAllResult, ResourceError
from fhirlink.integrations.fhir.oauth_engine import OAuthFlowEngine
from fhirlink.integrations.fhir.providers import ProviderRegistry
from fhirlink.services.connect_service import get_connect_service
from fhirlink.services.connection_service import get_connection_service
from fhirlink.services.state_store import StateStore

EPIC_ENV = {
    "EPIC_FHIR_BASE_URL": "https://fhir.epic.example/api/FHIR/R4",
    "EPIC_AUTHORIZATION_URL": "https://fhir.epic.example/oauth2/authorize",
    "EPIC_TOKEN_URL": "https://fhir.epic.example/oauth2/token",
    "EPIC_CLIENT_ID": "epic-client",
}


@pytest.fixture
def widget_token(client, api_headers):
    response = client.post(
        "/api/v1/widget/token",
        json={"client_user_id": "user-1", "redirect_uri": "https://app.example.com/connected"},
        headers=api_headers,
    )
    assert response.status_code == 200
    return response.json()["data"]["widget_token"]


@pytest.fixture
def engine():
    """Engine whose token endpoint always issues the same token triple."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600, "patient": "patient-1"},
        )

    engine = OAuthFlowEngine(
        registry=ProviderRegistry(environ=EPIC_ENV),
        state_store=StateStore(),
        transport=httpx.MockTransport(handler),
    )
    with patch("fhirlink.api.widget.get_oauth_engine", return_value=engine), patch.object(
        get_connect_service(), "_engine", engine
    ):
        yield engine


class TestWidgetToken:
    def test_create_widget_token(self, client, api_headers):
        response = client.post("/api/v1/widget/token", json={"client_user_id": "user-1"}, headers=api_headers)

        assert response.status_code == 200
        assert response.json()["data"]["widget_token"].startswith("wt_")
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"

    def test_budget_is_per_authenticated_key(self, client, api_headers, other_api_headers):
        client.post("/api/v1/widget/token", json={"client_user_id": "user-1"}, headers=api_headers)
        second = client.post("/api/v1/widget/token", json={"client_user_id": "user-1"}, headers=api_headers)
        other = client.post("/api/v1/widget/token", json={"client_user_id": "user-2"}, headers=other_api_headers)

        assert second.headers["X-RateLimit-Remaining"] == "98"
        assert other.headers["X-RateLimit-Remaining"] == "99"

    def test_requires_api_key(self, client):
        response = client.post("/api/v1/widget/token", json={"client_user_id": "user-1"})
        assert response.status_code == 401

    def test_sessions(self, client, api_headers, widget_token):
        sessions = client.get("/api/v1/widget/sessions", headers=api_headers).json()

        assert sessions["metadata"]["total"] == 1
        assert sessions["data"][0]["client_user_id"] == "user-1"
        assert "token" not in sessions["data"][0]


class TestProviders:
    def test_lists_configured_first(self, client):
        with patch.dict(os.environ, EPIC_ENV):
            providers = client.get("/api/v1/widget/providers").json()["data"]["providers"]

        assert providers[0]["id"] == "epic"
        assert providers[0]["configured"] is True


class TestInitiate:
    def test_redirects_to_provider(self, client, widget_token):
        with patch.dict(os.environ, EPIC_ENV):
            response = client.get(
                "/api/v1/widget/initiate/epic",
                params={"widget_token": widget_token},
                follow_redirects=False,
            )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://fhir.epic.example/oauth2/authorize?")
        query = parse_qs(urlparse(location).query)
        assert query["code_challenge_method"] == ["S256"]
        assert query["aud"] == ["https://fhir.epic.example/api/FHIR/R4"]
        assert query["state"]

    def test_rotating_api_key_header_does_not_reset_budget(self, client):
        """The unauthenticated initiate route is bucketed by client address."""
        statuses = [
            client.get(
                "/api/v1/widget/initiate/epic",
                headers={"X-API-Key": f"fl_k_junk{i:04d}"},
                follow_redirects=False,
            ).status_code
            for i in range(51)
        ]

        assert statuses[:50] == [400] * 50
        assert statuses[50] == 429

    def test_missing_widget_token(self, client):
        response = client.get("/api/v1/widget/initiate/epic", follow_redirects=False)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_WIDGET_TOKEN"

    def test_invalid_widget_token(self, client):
        response = client.get(
            "/api/v1/widget/initiate/epic",
            params={"widget_token": "wt_nope"},
            follow_redirects=False,
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_WIDGET_TOKEN"

    def test_unknown_provider(self, client, widget_token):
        response = client.get(
            "/api/v1/widget/initiate/myspace",
            params={"widget_token": widget_token},
            follow_redirects=False,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNKNOWN_PROVIDER"

    def test_unconfigured_provider(self, client, widget_token):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("CIGNA_CLIENT_ID", None)
            response = client.get(
                "/api/v1/widget/initiate/cigna",
                params={"widget_token": widget_token},
                follow_redirects=False,
            )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PROVIDER_NOT_CONFIGURED"


class TestCallback:
    def test_provider_error(self, client):
        response = client.get(
            "/callback",
            params={"error": "access_denied", "error_description": "User declined"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "AUTHORIZATION_DENIED"

    def test_invalid_state(self, client):
        response = client.get("/callback", params={"code": "c", "state": "garbage"}, follow_redirects=False)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_STATE"


class TestConnectFlow:
    """Widget token to connection, end to end."""

    def test_full_widget_flow(self, client, api_headers, other_api_headers, widget_token, engine):
        initiate = client.get(
            "/api/v1/widget/initiate/epic",
            params={"widget_token": widget_token},
            follow_redirects=False,
        )
        state = parse_qs(urlparse(initiate.headers["location"]).query)["state"][0]

        callback = client.get("/callback", params={"code": "auth-code", "state": state}, follow_redirects=False)
        assert callback.status_code == 302
        redirect = urlparse(callback.headers["location"])
        assert f"{redirect.scheme}://{redirect.netloc}{redirect.path}" == "https://app.example.com/connected"
        public_token = parse_qs(redirect.query)["public_token"][0]

        # The state cannot be replayed
        replay = client.get("/callback", params={"code": "auth-code", "state": state}, follow_redirects=False)
        assert replay.status_code == 400

        # The widget token cannot start another flow
        again = client.get(
            "/api/v1/widget/initiate/epic",
            params={"widget_token": widget_token},
            follow_redirects=False,
        )
        assert again.status_code == 401

        foreign = client.post("/api/v1/widget/exchange", json={"public_token": public_token}, headers=other_api_headers)
        assert foreign.status_code == 401

        # The rejected attempt did not consume the token
        owner = client.post("/api/v1/widget/exchange", json={"public_token": public_token}, headers=api_headers)
        assert owner.status_code == 200

    def test_exchange_and_read_records(self, client, api_headers, widget_token, engine):
        initiate = client.get(
            "/api/v1/widget/initiate/epic",
            params={"widget_token": widget_token},
            follow_redirects=False,
        )
        state = parse_qs(urlparse(initiate.headers["location"]).query)["state"][0]
        callback = client.get("/callback", params={"code": "auth-code", "state": state}, follow_redirects=False)
        public_token = parse_qs(urlparse(callback.headers["location"]).query)["public_token"][0]

        exchange = client.post("/api/v1/widget/exchange", json={"public_token": public_token}, headers=api_headers)
        assert exchange.status_code == 200
        exchanged = exchange.json()["data"]
        assert exchanged["client_user_id"] == "user-1"
        assert exchanged["patient_id"] == "patient-1"
        connection_id = exchanged["connection_id"]

        listed = client.get("/api/v1/connections", headers=api_headers).json()
        assert [c["id"] for c in listed["data"]] == [connection_id]
        assert "access_token" not in listed["data"][0]

        fetched = FetchAllResult(
            resources={"Patient": [{"resourceType": "Patient", "id": "patient-1"}], "Condition": []},
            errors=[ResourceError("Observation", "Server error: 503", 503)],
        )
        fetch_all = AsyncMock(return_value=fetched)
        with patch.object(get_connection_service().fetcher, "fetch_all", fetch_all):
            records = client.get(
                f"/api/v1/connections/{connection_id}/records",
                params={"resource_types": "Patient,Condition,Observation"},
                headers=api_headers,
            )

        assert records.status_code == 200
        data = records.json()["data"]
        assert data["counts"] == {"Patient": 1, "Condition": 0}
        assert data["errors"] == [{"resourceType": "Observation", "message": "Server error: 503", "status": 503}]
        target = fetch_all.call_args.args[0]
        assert target.access_token == "at-1"
        assert fetch_all.call_args.kwargs["resource_types"] == ["Patient", "Condition", "Observation"]

        deleted = client.delete(f"/api/v1/connections/{connection_id}", headers=api_headers)
        assert deleted.status_code == 200
        assert client.get(f"/api/v1/connections/{connection_id}", headers=api_headers).status_code == 404

    def test_direct_authorize(self, client, api_headers, engine):
        with patch("fhirlink.api.oauth.get_oauth_engine", return_value=engine):
            response = client.get(
                "/api/v1/oauth/epic/authorize",
                params={"return_url": "https://app.example.com/back"},
                headers=api_headers,
            )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["provider"] == "epic"
        state = parse_qs(urlparse(data["authorization_url"]).query)["state"][0]

        callback = client.get("/callback", params={"code": "auth-code", "state": state}, follow_redirects=False)
        assert callback.status_code == 302
        redirect = urlparse(callback.headers["location"])
        assert f"{redirect.scheme}://{redirect.netloc}{redirect.path}" == "https://app.example.com/back"
        query = parse_qs(redirect.query)
        assert query["provider"] == ["epic"]
        assert "connection_id" not in query

        exchange = client.post(
            "/api/v1/widget/exchange",
            json={"public_token": query["public_token"][0]},
            headers=api_headers,
        )
        assert exchange.status_code == 200
        assert exchange.json()["data"]["provider"] == "epic"

    def test_direct_callback_without_return_url_hides_connection_id(self, client, api_headers, engine):
        with patch("fhirlink.api.oauth.get_oauth_engine", return_value=engine):
            authorize = client.get("/api/v1/oauth/epic/authorize", headers=api_headers)
        state = parse_qs(urlparse(authorize.json()["data"]["authorization_url"]).query)["state"][0]

        callback = client.get("/callback", params={"code": "auth-code", "state": state})

        assert callback.status_code == 200
        data = callback.json()["data"]
        assert data["public_token"].startswith("pt_")
        assert "connection_id" not in data
