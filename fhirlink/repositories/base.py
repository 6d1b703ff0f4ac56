"""
Repository interfaces for the relational persistence layer.

The integration core only talks to storage through these async interfaces.
``memory`` provides an in-process implementation; ``sql`` maps them onto
Postgres with SQLAlchemy.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ==============================================================================
# Records
# ==============================================================================


@dataclass
class ConnectionRecord:
    """A stored connection. Token fields hold ciphertext only."""

    id: str
    subject_id: str
    provider: str
    patient_id: str
    access_token_encrypted: str
    refresh_token_encrypted: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    client_user_id: Optional[str] = None
    scope: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token_encrypted)

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view without token material."""
        return {
            "id": self.id,
            "provider": self.provider,
            "patient_id": self.patient_id,
            "client_user_id": self.client_user_id,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "has_refresh_token": self.has_refresh_token,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class WidgetTokenRecord:
    id: str
    token: str
    api_user_id: str
    client_user_id: str
    expires_at: datetime
    redirect_uri: Optional[str] = None
    products: List[str] = field(default_factory=lambda: ["health_records"])
    metadata: Optional[Dict[str, Any]] = None
    used_at: Optional[datetime] = None
    connection_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "client_user_id": self.client_user_id,
            "redirect_uri": self.redirect_uri,
            "products": list(self.products),
            "metadata": self.metadata,
            "expires_at": self.expires_at.isoformat(),
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "connection_id": self.connection_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class PublicTokenRecord:
    id: str
    token: str
    connection_id: str
    expires_at: datetime
    widget_token_id: Optional[str] = None
    exchanged_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class WebhookRecord:
    id: str
    owner_id: str
    url: str
    secret: str
    events: List[str] = field(default_factory=lambda: ["*"])
    enabled: bool = True
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def subscribes_to(self, event_type: str) -> bool:
        return "*" in self.events or event_type in self.events

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "url": self.url,
            "events": list(self.events),
            "enabled": self.enabled,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_secret:
            data["secret"] = self.secret
        return data


@dataclass
class WebhookDeliveryRecord:
    id: str
    webhook_id: str
    event_type: str
    payload: Dict[str, Any]
    status: str = "pending"
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "status": self.status,
            "http_status": self.http_status,
            "response_body": self.response_body,
            "attempt_count": self.attempt_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AuditLogRecord:
    id: str
    action: str
    subject_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class APIKeyRecord:
    id: str
    api_user_id: str
    key_prefix: str
    key_hash: str
    name: str
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_valid(self) -> bool:
        """Not revoked and not expired."""
        if self.is_revoked:
            return False
        if self.expires_at and utcnow() > self.expires_at:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "api_user_id": self.api_user_id,
            "key_prefix": self.key_prefix,
            "name": self.name,
            "is_revoked": self.is_revoked,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "created_at": self.created_at.isoformat(),
        }


# ==============================================================================
# Interfaces
# ==============================================================================


class ConnectionRepository(ABC):
    @abstractmethod
    async def upsert(
        self,
        subject_id: str,
        provider: str,
        patient_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        token_expires_at: Optional[datetime],
        client_user_id: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> ConnectionRecord:
        """Insert or replace tokens for (subject, provider, patient)."""

    @abstractmethod
    async def get(self, subject_id: str, provider: str, patient_id: str) -> Optional[ConnectionRecord]:
        ...

    @abstractmethod
    async def get_by_id(self, connection_id: str) -> Optional[ConnectionRecord]:
        ...

    @abstractmethod
    async def list_by_subject(self, subject_id: str) -> List[ConnectionRecord]:
        ...

    @abstractmethod
    async def list_all(self) -> List[ConnectionRecord]:
        ...

    @abstractmethod
    async def list_due_for_refresh(self, expires_before: datetime) -> List[ConnectionRecord]:
        """Connections expiring before the cutoff that carry a refresh token."""

    @abstractmethod
    async def update_tokens(
        self,
        connection_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        token_expires_at: Optional[datetime],
    ) -> Optional[ConnectionRecord]:
        """Replace both tokens and the expiry in one write (last writer wins)."""

    @abstractmethod
    async def delete(self, connection_id: str) -> bool:
        ...


class WidgetTokenRepository(ABC):
    @abstractmethod
    async def create_widget_token(self, record: WidgetTokenRecord) -> WidgetTokenRecord:
        ...

    @abstractmethod
    async def get_widget_token(self, token: str) -> Optional[WidgetTokenRecord]:
        ...

    @abstractmethod
    async def get_widget_token_by_id(self, token_id: str) -> Optional[WidgetTokenRecord]:
        ...

    @abstractmethod
    async def mark_widget_token_used(self, token_id: str, connection_id: str, now: datetime) -> bool:
        """Set used_at only if unused and unexpired. Returns False otherwise."""

    @abstractmethod
    async def list_widget_tokens(self, api_user_id: str) -> List[WidgetTokenRecord]:
        ...

    @abstractmethod
    async def create_public_token(self, record: PublicTokenRecord) -> PublicTokenRecord:
        ...

    @abstractmethod
    async def exchange_public_token(
        self, token: str, now: datetime, owner_id: Optional[str] = None
    ) -> Optional[PublicTokenRecord]:
        """
        Set exchanged_at only if unexchanged, unexpired and, when ``owner_id``
        is given, the connection belongs to that owner. A foreign owner leaves
        the token untouched.
        """

    @abstractmethod
    async def delete_expired(self, expired_before: datetime) -> int:
        ...


class WebhookRepository(ABC):
    @abstractmethod
    async def create(self, record: WebhookRecord) -> WebhookRecord:
        ...

    @abstractmethod
    async def get(self, webhook_id: str) -> Optional[WebhookRecord]:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> List[WebhookRecord]:
        ...

    @abstractmethod
    async def list_subscribed(self, event_type: str, owner_id: Optional[str] = None) -> List[WebhookRecord]:
        """Enabled webhooks subscribed to the event (exact or wildcard)."""

    @abstractmethod
    async def update(self, webhook_id: str, **fields: Any) -> Optional[WebhookRecord]:
        ...

    @abstractmethod
    async def delete(self, webhook_id: str) -> bool:
        ...


class WebhookDeliveryRepository(ABC):
    @abstractmethod
    async def create(self, record: WebhookDeliveryRecord) -> WebhookDeliveryRecord:
        ...

    @abstractmethod
    async def get(self, delivery_id: str) -> Optional[WebhookDeliveryRecord]:
        ...

    @abstractmethod
    async def record_attempt(
        self,
        delivery_id: str,
        status: str,
        http_status: Optional[int],
        response_body: Optional[str],
        attempt_count: int,
        next_retry_at: Optional[datetime],
        attempted_at: datetime,
    ) -> Optional[WebhookDeliveryRecord]:
        ...

    @abstractmethod
    async def claim_due(
        self, now: datetime, max_attempts: int, limit: int, lease_until: datetime
    ) -> List[WebhookDeliveryRecord]:
        """
        Pending/failed deliveries with retries left whose ``next_retry_at`` has
        come, pushed to ``lease_until`` in the same step so no other caller
        claims them. A null ``next_retry_at`` marks a finished delivery.
        """

    @abstractmethod
    async def list_for_webhook(self, webhook_id: str, limit: int = 50) -> List[WebhookDeliveryRecord]:
        ...


class AuditLogRepository(ABC):
    @abstractmethod
    async def add(self, record: AuditLogRecord) -> AuditLogRecord:
        ...

    @abstractmethod
    async def list(self, subject_id: Optional[str] = None, limit: int = 100) -> List[AuditLogRecord]:
        ...


class ApiKeyRepository(ABC):
    @abstractmethod
    async def create(self, record: APIKeyRecord) -> APIKeyRecord:
        ...

    @abstractmethod
    async def find_by_prefix(self, key_prefix: str) -> List[APIKeyRecord]:
        ...

    @abstractmethod
    async def list_by_user(self, api_user_id: str) -> List[APIKeyRecord]:
        ...

    @abstractmethod
    async def revoke(self, key_id: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def touch(self, key_id: str, now: datetime) -> None:
        ...


@dataclass
class Repositories:
    """Bundle of repository implementations for one storage backend."""

    connections: ConnectionRepository
    widget_tokens: WidgetTokenRepository
    webhooks: WebhookRepository
    deliveries: WebhookDeliveryRepository
    audit_logs: AuditLogRepository
    api_keys: ApiKeyRepository
