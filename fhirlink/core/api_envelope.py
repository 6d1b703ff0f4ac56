"""
Response envelope shared by every developer-facing endpoint.

Shape: {success, data, error, metadata, timestamp}. Errors carry a stable
code from ErrorCodes so SDKs can branch without parsing messages.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error body: stable code plus a human-readable message."""

    code: str  # Machine-readable error code (e.g., "INVALID_STATE")
    message: str  # Human-readable error message
    details: Optional[Dict[str, Any]] = None  # Additional error details
    field: Optional[str] = None  # Field name if validation error


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def success_response(
    data: Any,
    request_id: Optional[str] = None,
    version: str = "1.0.0",
    **extra_metadata
) -> Dict[str, Any]:
    """
    Create a successful API response.

    Args:
        data: Response data
        request_id: Request correlation ID
        version: API version
        extra_metadata: Additional metadata fields

    Returns:
        API envelope dictionary
    """
    metadata = {
        "version": version,
        **({"request_id": request_id} if request_id else {}),
        **extra_metadata,
    }

    return {
        "success": True,
        "data": data,
        "error": None,
        "metadata": metadata,
        "timestamp": _utc_timestamp(),
    }


def error_response(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
    version: str = "1.0.0",
    **extra_metadata
) -> Dict[str, Any]:
    """
    Create an error API response.

    Args:
        code: Machine-readable error code (e.g., "TOKEN_EXCHANGE_FAILED")
        message: Human-readable error message
        details: Additional error details
        field: Field name if validation error
        request_id: Request correlation ID
        version: API version
        extra_metadata: Additional metadata fields

    Returns:
        API envelope dictionary
    """
    metadata = {
        "version": version,
        **({"request_id": request_id} if request_id else {}),
        **extra_metadata,
    }

    error = ErrorDetail(code=code, message=message, details=details, field=field).model_dump()

    return {
        "success": False,
        "data": None,
        "error": error,
        "metadata": metadata,
        "timestamp": _utc_timestamp(),
    }


class ErrorCodes:
    """Stable error codes rendered in the envelope and mapped by FhirLinkError subclasses."""

    # Authentication errors (401)
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_API_KEY = "INVALID_API_KEY"
    INVALID_WIDGET_TOKEN = "INVALID_WIDGET_TOKEN"
    INVALID_PUBLIC_TOKEN = "INVALID_PUBLIC_TOKEN"
    REAUTHORIZATION_REQUIRED = "REAUTHORIZATION_REQUIRED"

    # Validation / protocol errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    INVALID_STATE = "INVALID_STATE"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    MISSING_WIDGET_TOKEN = "MISSING_WIDGET_TOKEN"

    # Resource errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Rate limiting (429)
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Upstream errors (502)
    TOKEN_EXCHANGE_FAILED = "TOKEN_EXCHANGE_FAILED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    PATIENT_FETCH_FAILED = "PATIENT_FETCH_FAILED"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    TOKEN_DECRYPTION_FAILED = "TOKEN_DECRYPTION_FAILED"
