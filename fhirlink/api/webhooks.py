"""
Webhook management endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fhirlink.core.api_envelope import success_response
from fhirlink.core.dependencies import get_api_user_id
from fhirlink.core.middleware import get_request_id
from fhirlink.services.audit_service import client_ip
from fhirlink.services.webhook_dispatcher import EVENT_DESCRIPTIONS, WILDCARD_EVENT
from fhirlink.services.webhook_service import get_webhook_service
from pydantic import BaseModel, Field

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


class WebhookCreate(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)
    events: Optional[List[str]] = None
    description: Optional[str] = Field(None, max_length=500)


class WebhookUpdate(BaseModel):
    url: Optional[str] = Field(None, min_length=1, max_length=2048)
    events: Optional[List[str]] = None
    description: Optional[str] = Field(None, max_length=500)
    enabled: Optional[bool] = None


@router.get("", response_model=dict)
async def list_webhooks(request: Request, api_user_id: str = Depends(get_api_user_id)):
    webhooks = await get_webhook_service().list(api_user_id)
    return success_response(
        [w.to_dict() for w in webhooks],
        request_id=get_request_id(request),
        total=len(webhooks),
    )


@router.get("/events", response_model=dict)
async def list_event_types(request: Request):
    events = [{"type": name, "description": text} for name, text in EVENT_DESCRIPTIONS.items()]
    events.append({"type": WILDCARD_EVENT, "description": "Subscribe to all events"})
    return success_response(events, request_id=get_request_id(request))


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_webhook(body: WebhookCreate, request: Request, api_user_id: str = Depends(get_api_user_id)):
    """
    Create a webhook.

    The signing secret is only returned here and by regenerate-secret.
    """
    webhook = await get_webhook_service().create(
        api_user_id,
        url=body.url,
        events=body.events,
        description=body.description,
        ip_address=client_ip(request),
    )
    return success_response(webhook.to_dict(include_secret=True), request_id=get_request_id(request))


@router.patch("/{webhook_id}", response_model=dict)
async def update_webhook(
    webhook_id: str,
    body: WebhookUpdate,
    request: Request,
    api_user_id: str = Depends(get_api_user_id),
):
    webhook = await get_webhook_service().update(api_user_id, webhook_id, **body.model_dump(exclude_unset=True))
    return success_response(webhook.to_dict(), request_id=get_request_id(request))


@router.delete("/{webhook_id}", response_model=dict)
async def delete_webhook(webhook_id: str, request: Request, api_user_id: str = Depends(get_api_user_id)):
    await get_webhook_service().delete(api_user_id, webhook_id, ip_address=client_ip(request))
    return success_response({"deleted": True, "webhook_id": webhook_id}, request_id=get_request_id(request))


@router.post("/{webhook_id}/regenerate-secret", response_model=dict)
async def regenerate_secret(webhook_id: str, request: Request, api_user_id: str = Depends(get_api_user_id)):
    webhook = await get_webhook_service().regenerate_secret(api_user_id, webhook_id)
    return success_response(
        {"webhook_id": webhook.id, "secret": webhook.secret},
        request_id=get_request_id(request),
    )


@router.post("/{webhook_id}/test", response_model=dict)
async def send_test_event(webhook_id: str, request: Request, api_user_id: str = Depends(get_api_user_id)):
    """Deliver a test event synchronously and report the attempt."""
    delivery = await get_webhook_service().send_test(api_user_id, webhook_id)
    return success_response(delivery.to_dict(), request_id=get_request_id(request))


@router.get("/{webhook_id}/deliveries", response_model=dict)
async def list_deliveries(
    webhook_id: str,
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    api_user_id: str = Depends(get_api_user_id),
):
    deliveries = await get_webhook_service().list_deliveries(api_user_id, webhook_id, limit)
    return success_response(
        [d.to_dict() for d in deliveries],
        request_id=get_request_id(request),
        total=len(deliveries),
    )
