"""
OAuth callback orchestration.

Turns a completed authorization into a stored connection and a short-lived
public token. Widget-started flows also consume the widget token. The
connection id never leaves through the callback; the developer backend gets
it by exchanging the public token, which also emits connection.created.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from fhirlink.core.exceptions import AuthorizationDenied
from fhirlink.core.logging import get_logger
from fhirlink.integrations.fhir.oauth_engine import OAuthFlowEngine, get_oauth_engine
from fhirlink.services.audit_service import AuditAction, AuditService, get_audit_service
from fhirlink.services.token_vault import TokenVault, get_token_vault
from fhirlink.services.widget_service import WidgetService, get_widget_service

logger = get_logger(__name__)


@dataclass
class ConnectOutcome:
    connection_id: str
    provider: str
    patient_id: str
    public_token: Optional[str] = None
    redirect_url: Optional[str] = None
    widget: bool = False

    def to_dict(self):
        return {
            "provider": self.provider,
            "patient_id": self.patient_id,
            "public_token": self.public_token,
        }


def append_query(url: str, **params: str) -> str:
    """Add query parameters to a URL, keeping any it already has."""
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


class ConnectService:
    def __init__(
        self,
        engine: Optional[OAuthFlowEngine] = None,
        vault: Optional[TokenVault] = None,
        widgets: Optional[WidgetService] = None,
        audit: Optional[AuditService] = None,
    ):
        self._engine = engine
        self.vault = vault or get_token_vault()
        self.widgets = widgets or get_widget_service()
        self.audit = audit or get_audit_service()

    @property
    def engine(self) -> OAuthFlowEngine:
        return self._engine or get_oauth_engine()

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ConnectOutcome:
        """
        Finish an authorization redirect.

        Raises:
            AuthorizationDenied: the provider reported an error, or no code came back
            InvalidOrExpiredState: state did not verify or was already used
            TokenExchangeFailed: the token endpoint rejected the code
            InvalidWidgetToken: the widget token was used by a concurrent flow
        """
        if error:
            logger.warning("oauth_authorization_denied", error=error)
            raise AuthorizationDenied(
                f"Authorization error: {error_description or error}",
                {"error": error},
            )
        if not code:
            raise AuthorizationDenied("Missing authorization code")

        completed = await self.engine.complete(state or "", code)
        tokens = completed.tokens

        record = await self.vault.put(
            subject_id=completed.subject_id,
            provider=completed.provider,
            patient_id=tokens.patient_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            client_user_id=completed.client_user_id,
            scope=tokens.scope,
        )

        outcome = ConnectOutcome(
            connection_id=record.id,
            provider=record.provider,
            patient_id=record.patient_id,
            redirect_url=completed.return_url,
        )

        if completed.widget_token_id:
            outcome.widget = True
            widget = await self.widgets.get_widget_token_by_id(completed.widget_token_id)
            await self.widgets.mark_widget_token_used(completed.widget_token_id, record.id)
            if widget and widget.redirect_uri:
                outcome.redirect_url = widget.redirect_uri
            action = AuditAction.WIDGET_CONNECT
        else:
            action = AuditAction.OAUTH_CONNECT

        public = await self.widgets.create_public_token(record.id, completed.widget_token_id)
        outcome.public_token = public.token

        await self.audit.log(
            action,
            subject_id=completed.subject_id,
            resource_type="connection",
            resource_id=record.id,
            details={"provider": record.provider},
            ip_address=ip_address,
        )

        if outcome.redirect_url:
            outcome.redirect_url = append_query(
                outcome.redirect_url,
                public_token=outcome.public_token,
                provider=outcome.provider,
            )

        logger.info(
            "connect_completed",
            connection_id=record.id,
            provider=record.provider,
            subject_id=completed.subject_id,
            widget=outcome.widget,
        )
        return outcome


# Global connect service instance
connect_service = ConnectService()


def get_connect_service() -> ConnectService:
    return connect_service
