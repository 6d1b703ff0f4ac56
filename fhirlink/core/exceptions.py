"""
Error taxonomy for the provider integration core.

Every error carries a stable machine-readable code and the HTTP status the
API layer renders it with. Messages never contain token material.
"""

from typing import Any, Dict, Optional

from fhirlink.core.api_envelope import ErrorCodes


class FhirLinkError(Exception):
    """Base error with a stable code and HTTP status."""

    code: str = ErrorCodes.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


# ==============================================================================
# Configuration errors (fatal at the operation boundary, never retried)
# ==============================================================================


class ConfigurationError(FhirLinkError):
    code = ErrorCodes.CONFIGURATION_ERROR
    status_code = 500


class UnknownProvider(FhirLinkError):
    code = ErrorCodes.UNKNOWN_PROVIDER
    status_code = 400

    def __init__(self, provider_id: str):
        super().__init__(f"Unknown provider: {provider_id}", {"provider": provider_id})
        self.provider_id = provider_id


class ProviderMisconfigured(FhirLinkError):
    code = ErrorCodes.PROVIDER_NOT_CONFIGURED
    status_code = 400

    def __init__(self, provider_id: str, missing: Optional[list] = None):
        super().__init__(
            f"Provider {provider_id} is not configured",
            {"provider": provider_id, "missing": missing or []},
        )
        self.provider_id = provider_id


# ==============================================================================
# Protocol errors (surfaced to the caller, the user restarts the flow)
# ==============================================================================


class InvalidOrExpiredState(FhirLinkError):
    code = ErrorCodes.INVALID_STATE
    status_code = 400

    def __init__(self, message: str = "Invalid or expired OAuth state"):
        super().__init__(message)


class AuthorizationDenied(FhirLinkError):
    code = ErrorCodes.AUTHORIZATION_DENIED
    status_code = 400


class TokenExchangeFailed(FhirLinkError):
    code = ErrorCodes.TOKEN_EXCHANGE_FAILED
    status_code = 502

    def __init__(self, provider_id: str, reason: str, upstream_status: Optional[int] = None):
        super().__init__(
            f"Token exchange with {provider_id} failed: {reason}",
            {"provider": provider_id, "upstream_status": upstream_status},
        )
        self.provider_id = provider_id
        self.upstream_status = upstream_status


class InvalidWidgetToken(FhirLinkError):
    code = ErrorCodes.INVALID_WIDGET_TOKEN
    status_code = 401

    def __init__(self, message: str = "Invalid or expired widget token"):
        super().__init__(message)


class InvalidPublicToken(FhirLinkError):
    code = ErrorCodes.INVALID_PUBLIC_TOKEN
    status_code = 401

    def __init__(self, message: str = "Invalid or expired public token"):
        super().__init__(message)


# ==============================================================================
# Transient upstream errors and exhaustion
# ==============================================================================


class TokenRefreshFailed(FhirLinkError):
    code = ErrorCodes.TOKEN_REFRESH_FAILED
    status_code = 502

    def __init__(self, provider_id: str, reason: str, upstream_status: Optional[int] = None):
        super().__init__(
            f"Token refresh with {provider_id} failed: {reason}",
            {"provider": provider_id, "upstream_status": upstream_status},
        )
        self.provider_id = provider_id
        self.upstream_status = upstream_status


class ReauthorizationRequired(FhirLinkError):
    """The refresh token is absent or revoked; only the user can recover."""

    code = ErrorCodes.REAUTHORIZATION_REQUIRED
    status_code = 401

    def __init__(self, connection_id: Optional[str] = None, provider_id: Optional[str] = None):
        super().__init__(
            "Connection requires re-authorization",
            {"connection_id": connection_id, "provider": provider_id},
        )
        self.connection_id = connection_id
        self.provider_id = provider_id


class TokenDecryptionError(FhirLinkError):
    code = ErrorCodes.TOKEN_DECRYPTION_FAILED
    status_code = 500


class PatientFetchError(FhirLinkError):
    code = ErrorCodes.PATIENT_FETCH_FAILED
    status_code = 502


class ValidationError(FhirLinkError):
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400


class MissingWidgetToken(ValidationError):
    code = ErrorCodes.MISSING_WIDGET_TOKEN

    def __init__(self, message: str = "widget_token is required"):
        super().__init__(message)


class AuthenticationError(FhirLinkError):
    code = ErrorCodes.UNAUTHORIZED
    status_code = 401


class InvalidAPIKey(AuthenticationError):
    code = ErrorCodes.INVALID_API_KEY

    def __init__(self, message: str = "Invalid or missing API key"):
        super().__init__(message)


class NotFoundError(FhirLinkError):
    code = ErrorCodes.NOT_FOUND
    status_code = 404


class RateLimitExceeded(FhirLinkError):
    code = ErrorCodes.RATE_LIMIT_EXCEEDED
    status_code = 429

    def __init__(self, message: str, retry_after: int, headers: Optional[Dict[str, str]] = None):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after
        self.headers = headers or {}
