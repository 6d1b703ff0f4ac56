"""
Connect widget endpoints

Embeddable flow: the developer mints a widget token, the widget sends the
user to a provider, and the developer exchanges the resulting public token.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from fhirlink.core.api_envelope import success_response
from fhirlink.core.dependencies import get_api_key, get_api_user_id
from fhirlink.core.exceptions import MissingWidgetToken
from fhirlink.core.logging import get_logger
from fhirlink.core.middleware import get_request_id
from fhirlink.integrations.fhir.oauth_engine import WidgetContext, get_oauth_engine
from fhirlink.integrations.fhir.providers import get_provider_registry
from fhirlink.services.audit_service import client_ip
from fhirlink.services.rate_limiter import RateLimit
from fhirlink.services.widget_service import get_widget_service
from pydantic import BaseModel, Field

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/widget", tags=["widget"])


class WidgetTokenCreate(BaseModel):
    client_user_id: str = Field(..., min_length=1, max_length=255)
    redirect_uri: Optional[str] = None
    products: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class PublicTokenExchangeRequest(BaseModel):
    public_token: str = Field(..., min_length=1)


@router.post("/token", response_model=dict, dependencies=[Depends(get_api_key), Depends(RateLimit("widget"))])
async def create_widget_token(
    body: WidgetTokenCreate,
    request: Request,
    api_user_id: str = Depends(get_api_user_id),
):
    """Mint a widget token for one end user."""
    record = await get_widget_service().create_widget_token(
        api_user_id=api_user_id,
        client_user_id=body.client_user_id,
        redirect_uri=body.redirect_uri,
        products=body.products,
        metadata=body.metadata,
    )
    return success_response(
        {"widget_token": record.token, "expiration": record.expires_at.isoformat()},
        request_id=get_request_id(request),
    )


@router.get("/providers", response_model=dict)
async def list_providers(request: Request):
    """Provider catalogue, configured providers first."""
    providers = get_provider_registry().list_for_display()
    return success_response({"providers": providers}, request_id=get_request_id(request))


@router.get("/initiate/{provider}", dependencies=[Depends(RateLimit("oauth"))])
async def initiate_widget_flow(provider: str, widget_token: Optional[str] = None):
    """Validate the widget token and redirect the user to the provider."""
    if not widget_token:
        raise MissingWidgetToken()

    widget = await get_widget_service().validate_widget_token(widget_token)
    authorization = get_oauth_engine().initiate(
        provider,
        subject_id=widget.api_user_id,
        widget_context=WidgetContext(
            widget_token_id=widget.id,
            client_user_id=widget.client_user_id,
            redirect_uri=widget.redirect_uri,
        ),
    )
    logger.info("widget_flow_initiated", provider=provider, widget_token_id=widget.id)
    return RedirectResponse(authorization.url, status_code=status.HTTP_302_FOUND)


@router.post(
    "/exchange",
    response_model=dict,
    dependencies=[Depends(get_api_key), Depends(RateLimit("sensitive"))],
)
async def exchange_public_token(
    body: PublicTokenExchangeRequest,
    request: Request,
    api_user_id: str = Depends(get_api_user_id),
):
    """Trade a public token for its connection id."""
    result = await get_widget_service().exchange_public_token(
        body.public_token,
        api_user_id=api_user_id,
        ip_address=client_ip(request),
    )
    return success_response(result.to_dict(), request_id=get_request_id(request))


@router.get("/sessions", response_model=dict)
async def list_widget_sessions(request: Request, api_user_id: str = Depends(get_api_user_id)):
    records = await get_widget_service().list_widget_tokens(api_user_id)
    return success_response(
        [r.to_dict() for r in records],
        request_id=get_request_id(request),
        total=len(records),
    )
