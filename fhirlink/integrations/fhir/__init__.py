"""
FHIR Integration Package

Components:
- ProviderRegistry: declarative catalogue of supported providers
- OAuthFlowEngine: initiate/complete/refresh against any provider
- FhirFetchLayer: fetch_all / fetch_paginated for a live connection

Usage:
    from fhirlink.integrations.fhir import get_oauth_engine, get_fhir_fetch_layer

    request = get_oauth_engine().initiate("epic", subject_id="dev_123")
    # redirect the user to request.url
"""

from .fhir_client import (
    FetchAllResult,
    FetchTarget,
    FHIRAuthenticationError,
    FHIRError,
    FhirFetchLayer,
    FHIRNotFoundError,
    FHIRServerError,
    FHIRTimeoutError,
    PaginatedResult,
    ResourceError,
    ResourceQuery,
    get_fhir_fetch_layer,
)
from .oauth_engine import (
    AuthorizationRequest,
    CompletedAuthorization,
    OAuthFlowEngine,
    TokenResult,
    WidgetContext,
    get_oauth_engine,
)
from .providers import AuthStrategy, ProviderCategory, ProviderConfig, ProviderRegistry, get_provider_registry

__all__ = [
    # Registry
    "AuthStrategy",
    "ProviderCategory",
    "ProviderConfig",
    "ProviderRegistry",
    "get_provider_registry",
    # OAuth
    "AuthorizationRequest",
    "CompletedAuthorization",
    "OAuthFlowEngine",
    "TokenResult",
    "WidgetContext",
    "get_oauth_engine",
    # Fetch
    "FHIRError",
    "FHIRAuthenticationError",
    "FHIRNotFoundError",
    "FHIRServerError",
    "FHIRTimeoutError",
    "FetchAllResult",
    "FetchTarget",
    "FhirFetchLayer",
    "PaginatedResult",
    "ResourceError",
    "ResourceQuery",
    "get_fhir_fetch_layer",
]
