"""
API key management endpoints (admin only)
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fhirlink.core.api_envelope import success_response
from fhirlink.core.dependencies import require_admin
from fhirlink.core.middleware import get_request_id
from fhirlink.repositories.base import utcnow
from fhirlink.services.api_key_service import get_api_key_service
from fhirlink.services.audit_service import client_ip
from pydantic import BaseModel, Field

router = APIRouter(prefix="/api/v1/keys", tags=["api-keys"], dependencies=[Depends(require_admin)])


class APIKeyCreate(BaseModel):
    """Request to create a new API key."""

    api_user_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255, description="Name for the API key")
    expires_in_days: Optional[int] = Field(
        None,
        ge=1,
        le=365,
        description="Days until expiration (null = never expires)",
    )


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_api_key(body: APIKeyCreate, request: Request):
    """
    Create a new API key.

    IMPORTANT: The full key value is only returned once in this response.
    """
    expires_at = utcnow() + timedelta(days=body.expires_in_days) if body.expires_in_days else None
    created = await get_api_key_service().create(
        body.api_user_id,
        body.name,
        expires_at=expires_at,
        ip_address=client_ip(request),
    )
    data = created.record.to_dict()
    data["key"] = created.key
    return success_response(data, request_id=get_request_id(request))


@router.get("", response_model=dict)
async def list_api_keys(request: Request, api_user_id: str = Query(..., min_length=1)):
    keys = await get_api_key_service().list(api_user_id)
    return success_response(
        [k.to_dict() for k in keys],
        request_id=get_request_id(request),
        total=len(keys),
    )


@router.post("/{key_id}/revoke", response_model=dict)
async def revoke_api_key(key_id: str, request: Request):
    await get_api_key_service().revoke(key_id, ip_address=client_ip(request))
    return success_response(
        {"message": "API key revoked successfully", "key_id": key_id},
        request_id=get_request_id(request),
    )
