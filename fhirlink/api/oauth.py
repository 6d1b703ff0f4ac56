"""
OAuth endpoints: direct authorization and the shared provider callback
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from fhirlink.core.api_envelope import success_response
from fhirlink.core.dependencies import get_api_key, get_api_user_id
from fhirlink.core.middleware import get_request_id
from fhirlink.integrations.fhir.oauth_engine import get_oauth_engine
from fhirlink.services.audit_service import client_ip
from fhirlink.services.connect_service import get_connect_service
from fhirlink.services.rate_limiter import RateLimit

router = APIRouter(prefix="/api/v1/oauth", tags=["oauth"])

# Registered with every provider as the redirect URI, so it has no prefix
callback_router = APIRouter(tags=["oauth"])


@router.get(
    "/{provider}/authorize",
    response_model=dict,
    dependencies=[Depends(get_api_key), Depends(RateLimit("oauth"))],
)
async def authorize(
    provider: str,
    request: Request,
    return_url: Optional[str] = None,
    api_user_id: str = Depends(get_api_user_id),
):
    """Build an authorization URL for the calling developer."""
    authorization = get_oauth_engine().initiate(provider, subject_id=api_user_id, return_url=return_url)
    return success_response(
        {"authorization_url": authorization.url, "provider": authorization.provider},
        request_id=get_request_id(request),
    )


@callback_router.get("/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    """
    Provider redirect target.

    Redirects to the widget (or caller-supplied) return URL with
    ``public_token`` and ``provider``; without one, answers in JSON.
    """
    outcome = await get_connect_service().handle_callback(
        code=code,
        state=state,
        error=error,
        error_description=error_description,
        ip_address=client_ip(request),
    )
    if outcome.redirect_url:
        return RedirectResponse(outcome.redirect_url, status_code=status.HTTP_302_FOUND)
    return success_response(outcome.to_dict(), request_id=get_request_id(request))
