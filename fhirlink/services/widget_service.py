"""
Connect widget handshake.

A developer mints a widget token for one of their end users, the widget
drives the OAuth flow with it, and the callback turns the resulting
connection into a public token. The developer's backend exchanges the
public token for the connection id. Both tokens are short-lived and
single-use.
"""

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fhirlink.core.config import settings
from fhirlink.core.exceptions import InvalidPublicToken, InvalidWidgetToken
from fhirlink.core.logging import get_logger
from fhirlink.repositories import get_repositories
from fhirlink.repositories.base import (
    ConnectionRepository,
    PublicTokenRecord,
    WidgetTokenRecord,
    WidgetTokenRepository,
    new_id,
    utcnow,
)
from fhirlink.services.audit_service import AuditAction, AuditService, get_audit_service

logger = get_logger(__name__)

WIDGET_TOKEN_PREFIX = "wt_"
PUBLIC_TOKEN_PREFIX = "pt_"
DEFAULT_PRODUCTS = ["health_records"]
CLEANUP_GRACE = timedelta(hours=1)


@dataclass
class PublicTokenExchange:
    connection_id: str
    api_user_id: str
    client_user_id: Optional[str]
    patient_id: str
    provider: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "api_user_id": self.api_user_id,
            "client_user_id": self.client_user_id,
            "patient_id": self.patient_id,
            "provider": self.provider,
        }


class WidgetService:
    def __init__(
        self,
        widget_tokens: Optional[WidgetTokenRepository] = None,
        connections: Optional[ConnectionRepository] = None,
        audit: Optional[AuditService] = None,
        dispatcher=None,
    ):
        self._widget_tokens = widget_tokens
        self._connections = connections
        self.audit = audit or get_audit_service()
        self._dispatcher = dispatcher

    @property
    def widget_tokens(self) -> WidgetTokenRepository:
        return self._widget_tokens or get_repositories().widget_tokens

    @property
    def connections(self) -> ConnectionRepository:
        return self._connections or get_repositories().connections

    @property
    def dispatcher(self):
        if self._dispatcher is None:
            from fhirlink.services.webhook_dispatcher import get_webhook_dispatcher

            self._dispatcher = get_webhook_dispatcher()
        return self._dispatcher

    async def create_widget_token(
        self,
        api_user_id: str,
        client_user_id: str,
        redirect_uri: Optional[str] = None,
        products: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WidgetTokenRecord:
        now = utcnow()
        record = WidgetTokenRecord(
            id=new_id(),
            token=f"{WIDGET_TOKEN_PREFIX}{secrets.token_hex(24)}",
            api_user_id=api_user_id,
            client_user_id=client_user_id,
            redirect_uri=redirect_uri,
            products=list(products or DEFAULT_PRODUCTS),
            metadata=metadata or {},
            expires_at=now + timedelta(minutes=settings.WIDGET_TOKEN_TTL_MINUTES),
            created_at=now,
        )
        created = await self.widget_tokens.create_widget_token(record)
        logger.info(
            "widget_token_created",
            api_user_id=api_user_id,
            client_user_id=client_user_id,
            widget_token_id=created.id,
        )
        return created

    async def validate_widget_token(self, token: Optional[str]) -> WidgetTokenRecord:
        """
        Look up a widget token that can still start a flow.

        Raises:
            InvalidWidgetToken: unknown, expired or already used
        """
        record = await self.widget_tokens.get_widget_token(token) if token else None
        if record is None or record.used_at is not None or record.expires_at <= utcnow():
            raise InvalidWidgetToken()
        return record

    async def get_widget_token_by_id(self, token_id: str) -> Optional[WidgetTokenRecord]:
        return await self.widget_tokens.get_widget_token_by_id(token_id)

    async def mark_widget_token_used(self, token_id: str, connection_id: str) -> None:
        """
        Raises:
            InvalidWidgetToken: the token was already used or has expired
        """
        if not await self.widget_tokens.mark_widget_token_used(token_id, connection_id, utcnow()):
            logger.warning("widget_token_reuse_rejected", widget_token_id=token_id)
            raise InvalidWidgetToken("Widget token has already been used")

    async def create_public_token(self, connection_id: str, widget_token_id: Optional[str] = None) -> PublicTokenRecord:
        now = utcnow()
        record = PublicTokenRecord(
            id=new_id(),
            token=f"{PUBLIC_TOKEN_PREFIX}{secrets.token_hex(24)}",
            connection_id=connection_id,
            widget_token_id=widget_token_id,
            expires_at=now + timedelta(minutes=settings.PUBLIC_TOKEN_TTL_MINUTES),
            created_at=now,
        )
        return await self.widget_tokens.create_public_token(record)

    async def exchange_public_token(
        self,
        public_token: Optional[str],
        api_user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> PublicTokenExchange:
        """
        Trade a public token for the connection it stands for.

        Raises:
            InvalidPublicToken: unknown, expired, already exchanged, or the
                connection belongs to another developer
        """
        if not public_token:
            raise InvalidPublicToken()

        # Ownership is checked inside the atomic update so a foreign caller
        # cannot burn the owner's token.
        exchanged = await self.widget_tokens.exchange_public_token(public_token, utcnow(), owner_id=api_user_id)
        if exchanged is None:
            logger.warning("public_token_exchange_rejected", api_user_id=api_user_id)
            raise InvalidPublicToken()

        connection = await self.connections.get_by_id(exchanged.connection_id)
        if connection is None:
            logger.warning(
                "public_token_exchange_rejected",
                connection_id=exchanged.connection_id,
                reason="connection_missing",
            )
            raise InvalidPublicToken()

        client_user_id = connection.client_user_id
        if client_user_id is None and exchanged.widget_token_id:
            widget = await self.widget_tokens.get_widget_token_by_id(exchanged.widget_token_id)
            client_user_id = widget.client_user_id if widget else None

        result = PublicTokenExchange(
            connection_id=connection.id,
            api_user_id=connection.subject_id,
            client_user_id=client_user_id,
            patient_id=connection.patient_id,
            provider=connection.provider,
        )
        await self.audit.log(
            AuditAction.PUBLIC_TOKEN_EXCHANGED,
            subject_id=result.api_user_id,
            resource_type="connection",
            resource_id=result.connection_id,
            details={"provider": result.provider},
            ip_address=ip_address,
        )
        logger.info(
            "public_token_exchanged",
            connection_id=result.connection_id,
            provider=result.provider,
            api_user_id=result.api_user_id,
        )
        await self._notify_created(result)
        return result

    async def _notify_created(self, result: PublicTokenExchange) -> None:
        from fhirlink.services.webhook_dispatcher import EventType

        try:
            await self.dispatcher.dispatch(
                EventType.CONNECTION_CREATED,
                {
                    "connection_id": result.connection_id,
                    "provider": result.provider,
                    "patient_id": result.patient_id,
                    "client_user_id": result.client_user_id,
                },
                owner_id=result.api_user_id,
            )
        except Exception as e:
            logger.warning("connection_created_dispatch_failed", connection_id=result.connection_id, error=str(e))

    async def list_widget_tokens(self, api_user_id: str) -> List[WidgetTokenRecord]:
        return await self.widget_tokens.list_widget_tokens(api_user_id)

    async def cleanup_expired(self, grace: timedelta = CLEANUP_GRACE) -> int:
        """Delete widget and public tokens that expired more than ``grace`` ago."""
        deleted = await self.widget_tokens.delete_expired(utcnow() - grace)
        if deleted:
            logger.info("widget_tokens_cleaned_up", deleted=deleted)
        return deleted


# Global widget service instance
widget_service = WidgetService()


def get_widget_service() -> WidgetService:
    return widget_service
