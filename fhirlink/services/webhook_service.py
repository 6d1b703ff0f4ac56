"""
Webhook management for developers: CRUD, secret rotation, test events.
"""

import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from fhirlink.core.exceptions import NotFoundError, ValidationError
from fhirlink.core.logging import get_logger
from fhirlink.repositories import get_repositories
from fhirlink.repositories.base import WebhookDeliveryRecord, WebhookRecord, WebhookRepository, new_id, utcnow
from fhirlink.services.audit_service import AuditAction, AuditService, get_audit_service
from fhirlink.services.webhook_dispatcher import (
    WILDCARD_EVENT,
    WebhookDispatcher,
    get_webhook_dispatcher,
    valid_event_names,
)

logger = get_logger(__name__)

SECRET_PREFIX = "whsec_"


class WebhookValidationError(ValidationError):
    pass


def generate_webhook_secret() -> str:
    return f"{SECRET_PREFIX}{secrets.token_hex(24)}"


def validate_url(url: str) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise WebhookValidationError("Invalid URL format", {"field": "url"})
    return url


def validate_events(events: List[str]) -> List[str]:
    valid = valid_event_names()
    invalid = [e for e in events if e not in valid]
    if invalid:
        raise WebhookValidationError(
            f"Invalid events: {', '.join(invalid)}",
            {"field": "events", "valid_events": valid},
        )
    return list(events)


class WebhookService:
    def __init__(
        self,
        repository: Optional[WebhookRepository] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        audit: Optional[AuditService] = None,
    ):
        self._repository = repository
        self._dispatcher = dispatcher
        self.audit = audit or get_audit_service()

    @property
    def repository(self) -> WebhookRepository:
        return self._repository or get_repositories().webhooks

    @property
    def dispatcher(self) -> WebhookDispatcher:
        return self._dispatcher or get_webhook_dispatcher()

    async def _owned(self, owner_id: str, webhook_id: str) -> WebhookRecord:
        webhook = await self.repository.get(webhook_id)
        if webhook is None or webhook.owner_id != owner_id:
            raise NotFoundError("Webhook not found")
        return webhook

    async def create(
        self,
        owner_id: str,
        url: str,
        events: Optional[List[str]] = None,
        description: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> WebhookRecord:
        """Create a webhook. The returned record is the only place the secret is shown."""
        now = utcnow()
        webhook = WebhookRecord(
            id=new_id(),
            owner_id=owner_id,
            url=validate_url(url),
            secret=generate_webhook_secret(),
            events=validate_events(events or [WILDCARD_EVENT]),
            description=description,
            created_at=now,
            updated_at=now,
        )
        await self.repository.create(webhook)
        await self.audit.log(
            AuditAction.WEBHOOK_CREATED,
            subject_id=owner_id,
            resource_type="webhook",
            resource_id=webhook.id,
            ip_address=ip_address,
        )
        logger.info("webhook_created", owner_id=owner_id, webhook_id=webhook.id, events=webhook.events)
        return webhook

    async def list(self, owner_id: str) -> List[WebhookRecord]:
        return await self.repository.list_by_owner(owner_id)

    async def get(self, owner_id: str, webhook_id: str) -> WebhookRecord:
        return await self._owned(owner_id, webhook_id)

    async def update(self, owner_id: str, webhook_id: str, **changes: Any) -> WebhookRecord:
        await self._owned(owner_id, webhook_id)
        fields: Dict[str, Any] = {}
        if changes.get("url") is not None:
            fields["url"] = validate_url(changes["url"])
        if changes.get("events") is not None:
            fields["events"] = validate_events(changes["events"])
        if changes.get("description") is not None:
            fields["description"] = changes["description"]
        if changes.get("enabled") is not None:
            fields["enabled"] = bool(changes["enabled"])

        updated = await self.repository.update(webhook_id, **fields)
        if updated is None:
            raise NotFoundError("Webhook not found")
        logger.info("webhook_updated", owner_id=owner_id, webhook_id=webhook_id, fields=sorted(fields))
        return updated

    async def delete(self, owner_id: str, webhook_id: str, ip_address: Optional[str] = None) -> None:
        await self._owned(owner_id, webhook_id)
        await self.repository.delete(webhook_id)
        await self.audit.log(
            AuditAction.WEBHOOK_DELETED,
            subject_id=owner_id,
            resource_type="webhook",
            resource_id=webhook_id,
            ip_address=ip_address,
        )
        logger.info("webhook_deleted", owner_id=owner_id, webhook_id=webhook_id)

    async def regenerate_secret(self, owner_id: str, webhook_id: str) -> WebhookRecord:
        await self._owned(owner_id, webhook_id)
        updated = await self.repository.update(webhook_id, secret=generate_webhook_secret())
        logger.info("webhook_secret_regenerated", owner_id=owner_id, webhook_id=webhook_id)
        return updated

    async def send_test(self, owner_id: str, webhook_id: str) -> WebhookDeliveryRecord:
        webhook = await self._owned(owner_id, webhook_id)
        return await self.dispatcher.send_test_event(webhook)

    async def list_deliveries(self, owner_id: str, webhook_id: str, limit: int = 50) -> List[WebhookDeliveryRecord]:
        await self._owned(owner_id, webhook_id)
        return await self.dispatcher.deliveries.list_for_webhook(webhook_id, limit)


# Global webhook service instance
webhook_service = WebhookService()


def get_webhook_service() -> WebhookService:
    return webhook_service
