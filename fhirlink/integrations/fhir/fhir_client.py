"""
FHIR Fetch Layer

Reads FHIR R4 resources for a live connection:
- fetch_all(): a bundle of resource types fetched concurrently, with
  per-resource-type partial failure
- fetch_paginated(): one search followed across "next" links up to a page cap

Only a failure to read the core Patient resource is escalated; every other
failure is reported in the result. Weak resources (claims) are expected to
be unsupported on many providers and are dropped quietly.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from fhirlink.core.config import settings
from fhirlink.core.exceptions import PatientFetchError, ProviderMisconfigured
from fhirlink.core.logging import get_logger
from fhirlink.core.resilience import retry_upstream_operation
from fhirlink.integrations.fhir.providers import ProviderRegistry, get_provider_registry

logger = get_logger(__name__)

FHIR_JSON = "application/fhir+json"
DEFAULT_PAGE_SIZE = 100


# ==============================================================================
# Exceptions
# ==============================================================================


class FHIRError(Exception):
    """Base FHIR error"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FHIRAuthenticationError(FHIRError):
    """Authentication failed"""


class FHIRNotFoundError(FHIRError):
    """Resource not found"""


class FHIRServerError(FHIRError):
    """Server error"""


class FHIRTimeoutError(FHIRError):
    """Request timeout"""


# ==============================================================================
# Queries and results
# ==============================================================================


@dataclass
class ResourceQuery:
    """One resource type to fetch for a patient."""

    resource_type: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    core: bool = False  # failure is a hard error
    weak: bool = False  # failure is expected on some providers

    @property
    def is_read(self) -> bool:
        return "/" in self.path


def default_queries(patient_id: str) -> List[ResourceQuery]:
    """The standard connection bundle."""
    return [
        ResourceQuery("Patient", f"Patient/{patient_id}", core=True),
        ResourceQuery(
            "MedicationRequest",
            "MedicationRequest",
            {"patient": patient_id, "_sort": "-authoredon", "_count": DEFAULT_PAGE_SIZE},
        ),
        ResourceQuery(
            "Observation",
            "Observation",
            {"patient": patient_id, "category": "laboratory", "_sort": "-date", "_count": DEFAULT_PAGE_SIZE},
        ),
        ResourceQuery("Condition", "Condition", {"patient": patient_id, "_count": DEFAULT_PAGE_SIZE}),
        ResourceQuery("Encounter", "Encounter", {"patient": patient_id, "_sort": "-date", "_count": DEFAULT_PAGE_SIZE}),
        ResourceQuery(
            "ExplanationOfBenefit",
            "ExplanationOfBenefit",
            {"patient": patient_id, "_count": DEFAULT_PAGE_SIZE},
            weak=True,
        ),
    ]


def queries_for(patient_id: str, resource_types: Optional[List[str]] = None) -> List[ResourceQuery]:
    """Default queries, optionally narrowed (or extended) to the given types."""
    defaults = default_queries(patient_id)
    if not resource_types:
        return defaults
    by_type = {q.resource_type: q for q in defaults}
    return [
        by_type.get(rt) or ResourceQuery(rt, rt, {"patient": patient_id, "_count": DEFAULT_PAGE_SIZE})
        for rt in resource_types
    ]


@dataclass
class ResourceError:
    resource_type: str
    message: str
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"resourceType": self.resource_type, "message": self.message, "status": self.status_code}


@dataclass
class FetchAllResult:
    """Success-with-errors aggregate of a multi-resource fetch."""

    resources: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    errors: List[ResourceError] = field(default_factory=list)

    @property
    def patient(self) -> Optional[Dict[str, Any]]:
        patients = self.resources.get("Patient") or []
        return patients[0] if patients else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resources": self.resources,
            "errors": [e.to_dict() for e in self.errors],
            "counts": {rt: len(items) for rt, items in self.resources.items()},
        }


@dataclass
class PaginatedResult:
    resource_type: str
    resources: List[Dict[str, Any]] = field(default_factory=list)
    pages_fetched: int = 0
    has_more: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "resources": self.resources,
            "total": len(self.resources),
            "pages_fetched": self.pages_fetched,
            "has_more": self.has_more,
            "error": self.error,
        }


@dataclass
class FetchTarget:
    """Where and how to read: the decrypted, in-memory view of a connection."""

    provider: str
    patient_id: str
    access_token: str
    connection_id: Optional[str] = None

    def __repr__(self) -> str:
        return f"FetchTarget(provider={self.provider!r}, connection_id={self.connection_id!r})"


def get_next_link(bundle: Dict[str, Any]) -> Optional[str]:
    """Get next page URL from bundle"""
    for link in bundle.get("link", []) or []:
        if isinstance(link, dict) and link.get("relation") == "next":
            return link.get("url")
    return None


def bundle_resources(bundle: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        entry["resource"]
        for entry in bundle.get("entry", []) or []
        if isinstance(entry, dict) and entry.get("resource")
    ]


class FhirFetchLayer:
    """
    Aggregating FHIR reader.

    Usage:
        layer = FhirFetchLayer()
        result = await layer.fetch_all(target)
        labs = await layer.fetch_paginated(target, "Observation", {"category": "laboratory"})
    """

    def __init__(self, registry: Optional[ProviderRegistry] = None, timeout_seconds: Optional[float] = None):
        self.registry = registry or get_provider_registry()
        self.timeout_seconds = timeout_seconds or settings.HTTP_TIMEOUT_SECONDS

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            headers={"Accept": FHIR_JSON},
        )

    def _base_url(self, provider_id: str) -> str:
        provider = self.registry.get(provider_id)
        if not provider.fhir_base_url:
            raise ProviderMisconfigured(provider_id, ["fhir_base_url"])
        return provider.fhir_base_url.rstrip("/")

    @retry_upstream_operation((FHIRServerError, FHIRTimeoutError))
    async def _fetch_json(
        self,
        session: aiohttp.ClientSession,
        url: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """GET one FHIR URL, mapping HTTP outcomes onto the FHIRError hierarchy."""
        headers = {"Authorization": f"Bearer {access_token}", "Accept": FHIR_JSON}
        try:
            async with session.get(url, params=params, headers=headers) as response:
                if response.status == 200:
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        raise FHIRError("Malformed response: body is not JSON", response.status)
                    if not isinstance(payload, dict):
                        raise FHIRError("Malformed response: expected a JSON object", response.status)
                    return payload
                if response.status == 401:
                    raise FHIRAuthenticationError("Authentication failed", response.status)
                if response.status == 404:
                    raise FHIRNotFoundError("Resource not found", response.status)
                if response.status >= 500:
                    raise FHIRServerError(f"Server error: {response.status}", response.status)
                text = await response.text()
                raise FHIRError(f"Unexpected response {response.status}: {text[:200]}", response.status)
        except asyncio.TimeoutError:
            raise FHIRTimeoutError("Request timeout")
        except aiohttp.ClientError as e:
            raise FHIRError(f"Network error: {type(e).__name__}")

    async def _collect_pages(
        self,
        session: aiohttp.ClientSession,
        target: FetchTarget,
        url: str,
        params: Optional[Dict[str, Any]],
        resource_type: str,
        max_pages: int,
    ) -> PaginatedResult:
        result = PaginatedResult(resource_type=resource_type)
        next_url: Optional[str] = url
        next_params = params
        while next_url and result.pages_fetched < max_pages:
            try:
                bundle = await self._fetch_json(session, next_url, target.access_token, next_params)
            except FHIRError as e:
                result.error = str(e)
                if result.pages_fetched == 0:
                    raise
                logger.warning(
                    "fhir_page_fetch_failed",
                    provider=target.provider,
                    connection_id=target.connection_id,
                    resource_type=resource_type,
                    page=result.pages_fetched + 1,
                    error=str(e),
                )
                return result
            result.pages_fetched += 1
            result.resources.extend(bundle_resources(bundle))
            next_url = get_next_link(bundle)
            # next links already carry the query
            next_params = None
        result.has_more = next_url is not None
        return result

    # =========================================================================
    # Public operations
    # =========================================================================

    async def fetch_resource(self, target: FetchTarget, path: str, params: Optional[Dict[str, Any]] = None):
        """Read a single resource or raw bundle by relative path."""
        url = f"{self._base_url(target.provider)}/{path.lstrip('/')}"
        async with self._session() as session:
            return await self._fetch_json(session, url, target.access_token, params)

    async def fetch_paginated(
        self,
        target: FetchTarget,
        resource_type: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> PaginatedResult:
        """
        Search one resource type and follow "next" links.

        Stops at ``max_pages`` or on the first page error; pages already read
        are always returned.
        """
        max_pages = max_pages or settings.FHIR_MAX_PAGES
        query = dict(params or {})
        query.setdefault("patient", target.patient_id)
        query.setdefault("_count", DEFAULT_PAGE_SIZE)
        url = f"{self._base_url(target.provider)}/{resource_type}"

        async with self._session() as session:
            try:
                result = await self._collect_pages(session, target, url, query, resource_type, max_pages)
            except FHIRError as e:
                logger.warning(
                    "fhir_search_failed",
                    provider=target.provider,
                    connection_id=target.connection_id,
                    resource_type=resource_type,
                    error=str(e),
                )
                return PaginatedResult(resource_type=resource_type, error=str(e))

        logger.info(
            "fhir_search_completed",
            provider=target.provider,
            connection_id=target.connection_id,
            resource_type=resource_type,
            pages=result.pages_fetched,
            count=len(result.resources),
        )
        return result

    async def _run_query(
        self,
        session: aiohttp.ClientSession,
        target: FetchTarget,
        base_url: str,
        query: ResourceQuery,
        max_pages: int,
    ) -> Tuple[ResourceQuery, List[Dict[str, Any]]]:
        url = f"{base_url}/{query.path}"
        if query.is_read:
            resource = await self._fetch_json(session, url, target.access_token, query.params or None)
            return query, [resource]
        result = await self._collect_pages(session, target, url, query.params, query.resource_type, max_pages)
        return query, result.resources

    async def fetch_all(
        self,
        target: FetchTarget,
        resource_types: Optional[List[str]] = None,
        queries: Optional[List[ResourceQuery]] = None,
        max_pages: Optional[int] = None,
    ) -> FetchAllResult:
        """
        Fetch several resource types concurrently.

        Raises:
            PatientFetchError: only when the core Patient read fails
        """
        queries = queries or queries_for(target.patient_id, resource_types)
        max_pages = max_pages or settings.FHIR_MAX_PAGES
        base_url = self._base_url(target.provider)

        async with self._session() as session:
            outcomes = await asyncio.gather(
                *(self._run_query(session, target, base_url, q, max_pages) for q in queries),
                return_exceptions=True,
            )

        result = FetchAllResult()
        for query, outcome in zip(queries, outcomes):
            if not isinstance(outcome, BaseException):
                result.resources[query.resource_type] = outcome[1]
                continue

            if not isinstance(outcome, Exception):
                raise outcome
            status_code = getattr(outcome, "status_code", None)
            if query.core:
                logger.error(
                    "fhir_patient_fetch_failed",
                    provider=target.provider,
                    connection_id=target.connection_id,
                    status_code=status_code,
                    error=str(outcome),
                )
                raise PatientFetchError(
                    f"Failed to fetch Patient from {target.provider}",
                    {"provider": target.provider, "upstream_status": status_code},
                )
            if query.weak:
                logger.debug(
                    "fhir_optional_resource_unavailable",
                    provider=target.provider,
                    resource_type=query.resource_type,
                    error=str(outcome),
                )
                result.resources[query.resource_type] = []
                continue

            logger.warning(
                "fhir_resource_fetch_failed",
                provider=target.provider,
                connection_id=target.connection_id,
                resource_type=query.resource_type,
                status_code=status_code,
                error=str(outcome),
            )
            result.errors.append(ResourceError(query.resource_type, str(outcome), status_code))

        logger.info(
            "fhir_fetch_all_completed",
            provider=target.provider,
            connection_id=target.connection_id,
            resource_types=len(queries),
            errors=len(result.errors),
        )
        return result


# Global fetch layer instance
fhir_fetch_layer = FhirFetchLayer()


def get_fhir_fetch_layer() -> FhirFetchLayer:
    return fhir_fetch_layer


__all__ = [
    "FHIRAuthenticationError",
    "FHIRError",
    "FHIRNotFoundError",
    "FHIRServerError",
    "FHIRTimeoutError",
    "FetchAllResult",
    "FetchTarget",
    "FhirFetchLayer",
    "PaginatedResult",
    "ResourceError",
    "ResourceQuery",
    "default_queries",
    "fhir_fetch_layer",
    "get_fhir_fetch_layer",
    "get_next_link",
    "queries_for",
]
