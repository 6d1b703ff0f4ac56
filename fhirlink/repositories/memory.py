"""
In-process repository implementations.

Used for tests and single-instance local runs. Atomic test-and-set
operations complete without yielding to the event loop, which makes them
safe under asyncio's single-threaded concurrency.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from fhirlink.repositories.base import (
    APIKeyRecord,
    ApiKeyRepository,
    AuditLogRecord,
    AuditLogRepository,
    ConnectionRecord,
    ConnectionRepository,
    PublicTokenRecord,
    Repositories,
    WebhookDeliveryRecord,
    WebhookDeliveryRepository,
    WebhookRecord,
    WebhookRepository,
    WidgetTokenRecord,
    WidgetTokenRepository,
    new_id,
    utcnow,
)


class InMemoryConnectionRepository(ConnectionRepository):
    def __init__(self):
        self._rows: Dict[str, ConnectionRecord] = {}

    def _find(self, subject_id: str, provider: str, patient_id: str) -> Optional[ConnectionRecord]:
        for row in self._rows.values():
            if row.subject_id == subject_id and row.provider == provider and row.patient_id == patient_id:
                return row
        return None

    async def upsert(
        self,
        subject_id,
        provider,
        patient_id,
        access_token_encrypted,
        refresh_token_encrypted,
        token_expires_at,
        client_user_id=None,
        scope=None,
    ) -> ConnectionRecord:
        existing = self._find(subject_id, provider, patient_id)
        now = utcnow()
        if existing:
            existing.access_token_encrypted = access_token_encrypted
            if refresh_token_encrypted:
                existing.refresh_token_encrypted = refresh_token_encrypted
            existing.token_expires_at = token_expires_at
            existing.client_user_id = client_user_id or existing.client_user_id
            existing.scope = scope or existing.scope
            existing.updated_at = now
            return replace(existing)

        row = ConnectionRecord(
            id=new_id(),
            subject_id=subject_id,
            provider=provider,
            patient_id=patient_id,
            access_token_encrypted=access_token_encrypted,
            refresh_token_encrypted=refresh_token_encrypted,
            token_expires_at=token_expires_at,
            client_user_id=client_user_id,
            scope=scope,
            created_at=now,
            updated_at=now,
        )
        self._rows[row.id] = row
        return replace(row)

    async def get(self, subject_id, provider, patient_id):
        row = self._find(subject_id, provider, patient_id)
        return replace(row) if row else None

    async def get_by_id(self, connection_id):
        row = self._rows.get(connection_id)
        return replace(row) if row else None

    async def list_by_subject(self, subject_id):
        rows = [replace(r) for r in self._rows.values() if r.subject_id == subject_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    async def list_all(self):
        return [replace(r) for r in self._rows.values()]

    async def list_due_for_refresh(self, expires_before):
        return [
            replace(r)
            for r in self._rows.values()
            if r.refresh_token_encrypted and r.token_expires_at is not None and r.token_expires_at < expires_before
        ]

    async def update_tokens(self, connection_id, access_token_encrypted, refresh_token_encrypted, token_expires_at):
        row = self._rows.get(connection_id)
        if not row:
            return None
        row.access_token_encrypted = access_token_encrypted
        row.refresh_token_encrypted = refresh_token_encrypted
        row.token_expires_at = token_expires_at
        row.updated_at = utcnow()
        return replace(row)

    async def delete(self, connection_id):
        return self._rows.pop(connection_id, None) is not None


class InMemoryWidgetTokenRepository(WidgetTokenRepository):
    def __init__(self, connections: Optional[InMemoryConnectionRepository] = None):
        self._widget_tokens: Dict[str, WidgetTokenRecord] = {}
        self._public_tokens: Dict[str, PublicTokenRecord] = {}
        self._connections = connections or InMemoryConnectionRepository()

    async def create_widget_token(self, record):
        self._widget_tokens[record.id] = replace(record)
        return replace(record)

    async def get_widget_token(self, token):
        for row in self._widget_tokens.values():
            if row.token == token:
                return replace(row)
        return None

    async def get_widget_token_by_id(self, token_id):
        row = self._widget_tokens.get(token_id)
        return replace(row) if row else None

    async def mark_widget_token_used(self, token_id, connection_id, now):
        row = self._widget_tokens.get(token_id)
        if not row or row.used_at is not None or row.expires_at <= now:
            return False
        row.used_at = now
        row.connection_id = connection_id
        return True

    async def list_widget_tokens(self, api_user_id):
        rows = [replace(r) for r in self._widget_tokens.values() if r.api_user_id == api_user_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    async def create_public_token(self, record):
        self._public_tokens[record.id] = replace(record)
        return replace(record)

    async def exchange_public_token(self, token, now, owner_id=None):
        for row in self._public_tokens.values():
            if row.token != token:
                continue
            if row.exchanged_at is not None or row.expires_at <= now:
                return None
            if owner_id is not None:
                connection = self._connections._rows.get(row.connection_id)
                if connection is None or connection.subject_id != owner_id:
                    return None
            row.exchanged_at = now
            return replace(row)
        return None

    async def delete_expired(self, expired_before):
        widget_ids = [k for k, r in self._widget_tokens.items() if r.expires_at < expired_before]
        public_ids = [k for k, r in self._public_tokens.items() if r.expires_at < expired_before]
        for key in widget_ids:
            del self._widget_tokens[key]
        for key in public_ids:
            del self._public_tokens[key]
        return len(widget_ids) + len(public_ids)


class InMemoryWebhookRepository(WebhookRepository):
    def __init__(self):
        self._rows: Dict[str, WebhookRecord] = {}

    async def create(self, record):
        self._rows[record.id] = replace(record)
        return replace(record)

    async def get(self, webhook_id):
        row = self._rows.get(webhook_id)
        return replace(row) if row else None

    async def list_by_owner(self, owner_id):
        rows = [replace(r) for r in self._rows.values() if r.owner_id == owner_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    async def list_subscribed(self, event_type, owner_id=None):
        return [
            replace(r)
            for r in self._rows.values()
            if r.enabled and r.subscribes_to(event_type) and (owner_id is None or r.owner_id == owner_id)
        ]

    async def update(self, webhook_id, **fields: Any):
        row = self._rows.get(webhook_id)
        if not row:
            return None
        for key, value in fields.items():
            setattr(row, key, value)
        row.updated_at = utcnow()
        return replace(row)

    async def delete(self, webhook_id):
        return self._rows.pop(webhook_id, None) is not None


class InMemoryWebhookDeliveryRepository(WebhookDeliveryRepository):
    def __init__(self):
        self._rows: Dict[str, WebhookDeliveryRecord] = {}

    async def create(self, record):
        self._rows[record.id] = replace(record)
        return replace(record)

    async def get(self, delivery_id):
        row = self._rows.get(delivery_id)
        return replace(row) if row else None

    async def record_attempt(
        self, delivery_id, status, http_status, response_body, attempt_count, next_retry_at, attempted_at
    ):
        row = self._rows.get(delivery_id)
        if not row:
            return None
        row.status = status
        row.http_status = http_status
        row.response_body = response_body
        row.attempt_count = attempt_count
        row.next_retry_at = next_retry_at
        row.last_attempt_at = attempted_at
        if status == "delivered":
            row.delivered_at = attempted_at
        return replace(row)

    async def claim_due(self, now, max_attempts, limit, lease_until):
        due = [
            r
            for r in self._rows.values()
            if r.status in ("pending", "failed")
            and r.attempt_count < max_attempts
            and r.next_retry_at is not None
            and r.next_retry_at <= now
        ]
        due.sort(key=lambda r: r.next_retry_at)
        claimed = []
        for row in due[:limit]:
            row.next_retry_at = lease_until
            claimed.append(replace(row))
        return claimed

    async def list_for_webhook(self, webhook_id, limit=50):
        rows = [replace(r) for r in self._rows.values() if r.webhook_id == webhook_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]


class InMemoryAuditLogRepository(AuditLogRepository):
    def __init__(self):
        self._rows: List[AuditLogRecord] = []

    async def add(self, record):
        self._rows.append(record)
        return record

    async def list(self, subject_id=None, limit=100):
        rows = [r for r in self._rows if subject_id is None or r.subject_id == subject_id]
        return list(reversed(rows))[:limit]


class InMemoryApiKeyRepository(ApiKeyRepository):
    def __init__(self):
        self._rows: Dict[str, APIKeyRecord] = {}

    async def create(self, record):
        self._rows[record.id] = replace(record)
        return replace(record)

    async def find_by_prefix(self, key_prefix):
        return [replace(r) for r in self._rows.values() if r.key_prefix == key_prefix]

    async def list_by_user(self, api_user_id):
        return [replace(r) for r in self._rows.values() if r.api_user_id == api_user_id]

    async def revoke(self, key_id, now: datetime):
        row = self._rows.get(key_id)
        if not row or row.is_revoked:
            return False
        row.is_revoked = True
        row.revoked_at = now
        return True

    async def touch(self, key_id, now: datetime):
        row = self._rows.get(key_id)
        if row:
            row.last_used_at = now


def create_memory_repositories() -> Repositories:
    connections = InMemoryConnectionRepository()
    return Repositories(
        connections=connections,
        widget_tokens=InMemoryWidgetTokenRepository(connections),
        webhooks=InMemoryWebhookRepository(),
        deliveries=InMemoryWebhookDeliveryRepository(),
        audit_logs=InMemoryAuditLogRepository(),
        api_keys=InMemoryApiKeyRepository(),
    )
