"""
Unit tests for the FHIR fetch layer.

``_fetch_json`` or the aiohttp session is replaced per test, so no request
leaves the process.
"""

import json
from unittest.mock import AsyncMock

import pytest
from fhirlink.core.exceptions import PatientFetchError, ProviderMisconfigured
from fhirlink.integrations.fhir.fhir_client import (
    FetchTarget,
    FhirFetchLayer,
    FHIRAuthenticationError,
    FHIRError,
    FHIRNotFoundError,
    FHIRServerError,
    bundle_resources,
    get_next_link,
    queries_for,
)
from fhirlink.integrations.fhir.providers import ProviderRegistry

BASE = "https://fhir.epic.example/api/FHIR/R4"


def bundle(resource_type, count, next_url=None, start=0):
    data = {
        "resourceType": "Bundle",
        "entry": [{"resource": {"resourceType": resource_type, "id": f"{resource_type}-{start + i}"}} for i in range(count)],
    }
    if next_url:
        data["link"] = [{"relation": "self", "url": "ignored"}, {"relation": "next", "url": next_url}]
    return data


@pytest.fixture
def layer():
    return FhirFetchLayer(registry=ProviderRegistry(environ={"EPIC_FHIR_BASE_URL": BASE + "/"}))


@pytest.fixture
def target():
    return FetchTarget(provider="epic", patient_id="p-1", access_token="at-1", connection_id="conn-1")


def route(responses):
    """side_effect serving responses keyed by URL; exceptions are raised."""

    async def fetch(session, url, access_token, params=None):
        outcome = responses[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return fetch


class TestFetchAll:
    """Concurrent multi-resource fetch with partial failure."""

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported_not_raised(self, layer, target):
        layer._fetch_json = AsyncMock(
            side_effect=route(
                {
                    f"{BASE}/Patient/p-1": {"resourceType": "Patient", "id": "p-1"},
                    f"{BASE}/MedicationRequest": bundle("MedicationRequest", 2),
                    f"{BASE}/Observation": FHIRServerError("Server error: 503", 503),
                    f"{BASE}/Condition": bundle("Condition", 1),
                    f"{BASE}/Encounter": bundle("Encounter", 0),
                    f"{BASE}/ExplanationOfBenefit": FHIRNotFoundError("Resource not found", 404),
                }
            )
        )

        result = await layer.fetch_all(target)

        assert result.patient == {"resourceType": "Patient", "id": "p-1"}
        assert len(result.resources["MedicationRequest"]) == 2
        assert len(result.resources["Condition"]) == 1
        assert result.resources["Encounter"] == []
        assert "Observation" not in result.resources
        # Claims are optional on most providers: dropped without an error entry
        assert result.resources["ExplanationOfBenefit"] == []
        assert [(e.resource_type, e.status_code) for e in result.errors] == [("Observation", 503)]

    @pytest.mark.asyncio
    async def test_patient_failure_is_escalated(self, layer, target):
        layer._fetch_json = AsyncMock(
            side_effect=route(
                {
                    f"{BASE}/Patient/p-1": FHIRAuthenticationError("Authentication failed", 401),
                    f"{BASE}/Condition": bundle("Condition", 1),
                }
            )
        )

        with pytest.raises(PatientFetchError) as exc_info:
            await layer.fetch_all(target, resource_types=["Patient", "Condition"])
        assert exc_info.value.details["upstream_status"] == 401

    @pytest.mark.asyncio
    async def test_bearer_token_and_params_are_passed(self, layer, target):
        layer._fetch_json = AsyncMock(return_value=bundle("Condition", 0))

        await layer.fetch_all(target, resource_types=["Condition"])

        session, url, token, params = layer._fetch_json.call_args.args
        assert url == f"{BASE}/Condition"
        assert token == "at-1"
        assert params["patient"] == "p-1"

    @pytest.mark.asyncio
    async def test_missing_base_url(self, target):
        layer = FhirFetchLayer(registry=ProviderRegistry(environ={}))
        with pytest.raises(ProviderMisconfigured):
            await layer.fetch_all(target)


class TestFetchPaginated:
    """Following next links up to the page cap."""

    @pytest.mark.asyncio
    async def test_stops_at_max_pages(self, layer, target):
        layer._fetch_json = AsyncMock(
            side_effect=route(
                {
                    f"{BASE}/Observation": bundle("Observation", 2, next_url=f"{BASE}/Observation?page=2"),
                    f"{BASE}/Observation?page=2": bundle(
                        "Observation", 2, next_url=f"{BASE}/Observation?page=3", start=2
                    ),
                    f"{BASE}/Observation?page=3": bundle("Observation", 2, start=4),
                }
            )
        )

        result = await layer.fetch_paginated(target, "Observation", {"category": "laboratory"}, max_pages=2)

        assert result.pages_fetched == 2
        assert result.has_more is True
        assert [r["id"] for r in result.resources] == ["Observation-0", "Observation-1", "Observation-2", "Observation-3"]

        first_params = layer._fetch_json.call_args_list[0].args[3]
        assert first_params == {"category": "laboratory", "patient": "p-1", "_count": 100}
        # next links already carry their query
        assert layer._fetch_json.call_args_list[1].args[3] is None

    @pytest.mark.asyncio
    async def test_follows_until_no_next_link(self, layer, target):
        layer._fetch_json = AsyncMock(
            side_effect=route(
                {
                    f"{BASE}/Condition": bundle("Condition", 1, next_url=f"{BASE}/Condition?page=2"),
                    f"{BASE}/Condition?page=2": bundle("Condition", 1, start=1),
                }
            )
        )

        result = await layer.fetch_paginated(target, "Condition", max_pages=10)

        assert result.pages_fetched == 2
        assert result.has_more is False
        assert result.error is None

    @pytest.mark.asyncio
    async def test_later_page_failure_keeps_earlier_pages(self, layer, target):
        layer._fetch_json = AsyncMock(
            side_effect=route(
                {
                    f"{BASE}/Encounter": bundle("Encounter", 3, next_url=f"{BASE}/Encounter?page=2"),
                    f"{BASE}/Encounter?page=2": FHIRServerError("Server error: 500", 500),
                }
            )
        )

        result = await layer.fetch_paginated(target, "Encounter", max_pages=5)

        assert result.pages_fetched == 1
        assert len(result.resources) == 3
        assert "500" in result.error

    @pytest.mark.asyncio
    async def test_first_page_failure_returns_empty_result(self, layer, target):
        layer._fetch_json = AsyncMock(side_effect=FHIRServerError("Server error: 502", 502))

        result = await layer.fetch_paginated(target, "Encounter")

        assert result.resources == []
        assert result.pages_fetched == 0
        assert "502" in result.error


class TestHelpers:
    def test_get_next_link(self):
        assert get_next_link(bundle("Condition", 0, next_url="https://x/next")) == "https://x/next"
        assert get_next_link(bundle("Condition", 0)) is None

    def test_queries_for_narrows_and_extends(self):
        queries = queries_for("p-1", ["Patient", "Immunization"])
        assert [q.resource_type for q in queries] == ["Patient", "Immunization"]
        assert queries[0].core is True
        assert queries[1].params == {"patient": "p-1", "_count": 100}


class StubResponse:
    """Minimal stand-in for an aiohttp response context."""

    def __init__(self, status=200, payload=None, error=None):
        self.status = status
        self._payload = payload
        self._error = error

    async def json(self, content_type=None):
        if self._error:
            raise self._error
        return self._payload

    async def text(self):
        return ""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class StubSession:
    """Serves StubResponses by URL and records requested URLs."""

    def __init__(self, responses):
        self.responses = responses
        self.requested = []

    def get(self, url, params=None, headers=None):
        self.requested.append(url)
        return self.responses[url]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class TestMalformedResponses:
    """Unparseable or non-object bodies surface as FHIRError."""

    @pytest.mark.asyncio
    async def test_non_json_body(self, layer):
        session = StubSession({f"{BASE}/Condition": StubResponse(error=json.JSONDecodeError("bad", "<html>", 0))})

        with pytest.raises(FHIRError) as exc_info:
            await layer._fetch_json(session, f"{BASE}/Condition", "at-1")
        assert "Malformed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_object_body(self, layer):
        session = StubSession({f"{BASE}/Condition": StubResponse(payload=["not", "a", "bundle"])})

        with pytest.raises(FHIRError):
            await layer._fetch_json(session, f"{BASE}/Condition", "at-1")

    @pytest.mark.asyncio
    async def test_unparseable_later_page_keeps_earlier_pages(self, layer, target):
        session = StubSession(
            {
                f"{BASE}/Condition": StubResponse(payload=bundle("Condition", 1, next_url=f"{BASE}/Condition?page=2")),
                f"{BASE}/Condition?page=2": StubResponse(error=ValueError("Expecting value")),
            }
        )
        layer._session = lambda: session

        result = await layer.fetch_paginated(target, "Condition", max_pages=5)

        assert session.requested == [f"{BASE}/Condition", f"{BASE}/Condition?page=2"]
        assert result.pages_fetched == 1
        assert [r["id"] for r in result.resources] == ["Condition-0"]
        assert "Malformed" in result.error

    def test_malformed_entries_are_skipped(self):
        data = {"entry": ["junk", {"resource": {"id": "c-1"}}, {"search": {}}], "link": ["junk"]}

        assert bundle_resources(data) == [{"id": "c-1"}]
        assert get_next_link(data) is None
