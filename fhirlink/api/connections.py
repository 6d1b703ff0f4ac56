"""
Connection endpoints: stored connections and their FHIR records
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fhirlink.core.api_envelope import success_response
from fhirlink.core.dependencies import get_api_user_id
from fhirlink.core.middleware import get_request_id
from fhirlink.services.audit_service import client_ip
from fhirlink.services.connection_service import get_connection_service

router = APIRouter(prefix="/api/v1/connections", tags=["connections"])


@router.get("", response_model=dict)
async def list_connections(request: Request, api_user_id: str = Depends(get_api_user_id)):
    records = await get_connection_service().list(api_user_id)
    return success_response(
        [r.to_public_dict() for r in records],
        request_id=get_request_id(request),
        total=len(records),
    )


@router.get("/{connection_id}", response_model=dict)
async def get_connection(connection_id: str, request: Request, api_user_id: str = Depends(get_api_user_id)):
    record = await get_connection_service().get(api_user_id, connection_id)
    return success_response(record.to_public_dict(), request_id=get_request_id(request))


@router.delete("/{connection_id}", response_model=dict)
async def delete_connection(connection_id: str, request: Request, api_user_id: str = Depends(get_api_user_id)):
    await get_connection_service().delete(api_user_id, connection_id, ip_address=client_ip(request))
    return success_response({"deleted": True, "connection_id": connection_id}, request_id=get_request_id(request))


@router.get("/{connection_id}/records", response_model=dict)
async def get_records(
    connection_id: str,
    request: Request,
    resource_types: Optional[str] = Query(None, description="Comma-separated resource types"),
    api_user_id: str = Depends(get_api_user_id),
):
    """
    Fetch the patient's records across resource types.

    Individual resource failures come back in ``errors``; only a failed
    Patient read fails the request.
    """
    types = [t.strip() for t in resource_types.split(",") if t.strip()] if resource_types else None
    result = await get_connection_service().fetch_records(api_user_id, connection_id, types)
    return success_response(result.to_dict(), request_id=get_request_id(request))


@router.get("/{connection_id}/resources/{resource_type}", response_model=dict)
async def get_resource_pages(
    connection_id: str,
    resource_type: str,
    request: Request,
    max_pages: Optional[int] = Query(None, ge=1, le=100),
    api_user_id: str = Depends(get_api_user_id),
):
    result = await get_connection_service().fetch_resource_pages(
        api_user_id, connection_id, resource_type, max_pages=max_pages
    )
    return success_response(result.to_dict(), request_id=get_request_id(request))
