"""
FastAPI dependencies for authentication

- Developer endpoints: X-API-Key: fl_k_<key>
- Key management: Authorization: Bearer <ADMIN_API_TOKEN>
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fhirlink.core.config import settings
from fhirlink.core.exceptions import AuthenticationError, ConfigurationError
from fhirlink.core.logging import get_logger
from fhirlink.repositories.base import APIKeyRecord
from fhirlink.services.api_key_service import get_api_key_service

logger = get_logger(__name__)

# Optional Bearer token so the admin guard can render its own error
security = HTTPBearer(auto_error=False)


async def get_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> APIKeyRecord:
    """
    Authenticate a developer by API key.

    Sets ``request.state.api_key_id`` and ``request.state.api_user_id`` so
    rate limiting and audit logging can attribute the request.
    """
    record = await get_api_key_service().authenticate(x_api_key)
    request.state.api_key_id = record.id
    request.state.api_user_id = record.api_user_id
    return record


async def get_api_user_id(api_key: APIKeyRecord = Depends(get_api_key)) -> str:
    return api_key.api_user_id


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Guard for API key management."""
    if not settings.ADMIN_API_TOKEN:
        raise ConfigurationError("Admin API token is not configured")
    presented = credentials.credentials if credentials else ""
    if not hmac.compare_digest(presented.encode(), settings.ADMIN_API_TOKEN.encode()):
        logger.warning("admin_auth_failed")
        raise AuthenticationError("Invalid admin credentials")
