"""
Postgres repository implementations.

Raw SQL through SQLAlchemy ``text()`` over async sessions. Test-and-set
operations (widget token use, public token exchange) are single conditional
UPDATE statements so concurrent callers cannot both succeed.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from fhirlink.core.database import AsyncSessionLocal, async_engine, async_transaction, Base
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
)
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

SessionFactory = Callable[[], AsyncSession]


def _str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _json(value: Any) -> Optional[Any]:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _is_uuid(value: Any) -> bool:
    """Ids that would fail CAST(... AS UUID) cannot match any row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


async def create_schema() -> None:
    """Create all tables declared in fhirlink.models (idempotent)."""
    import fhirlink.models  # noqa: F401  registers tables on Base.metadata

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class _SQLRepository:
    def __init__(self, session_factory: SessionFactory = AsyncSessionLocal):
        self._session_factory = session_factory

    async def _fetch_all(self, sql: str, params: dict, write: bool = False) -> list:
        async with self._session_factory() as session:
            if write:
                async with async_transaction(session):
                    result = await session.execute(text(sql), params)
                    return result.fetchall()
            result = await session.execute(text(sql), params)
            return result.fetchall()

    async def _fetch_one(self, sql: str, params: dict, write: bool = False):
        async with self._session_factory() as session:
            if write:
                async with async_transaction(session):
                    result = await session.execute(text(sql), params)
                    return result.fetchone()
            result = await session.execute(text(sql), params)
            return result.fetchone()

    async def _execute(self, sql: str, params: dict) -> int:
        async with self._session_factory() as session:
            async with async_transaction(session):
                result = await session.execute(text(sql), params)
                return result.rowcount


# ==============================================================================
# Connections
# ==============================================================================

_CONNECTION_COLUMNS = """
    id, subject_id, provider, patient_id, access_token_encrypted, refresh_token_encrypted,
    token_expires_at, client_user_id, scope, created_at, updated_at
"""


def _connection(row) -> ConnectionRecord:
    return ConnectionRecord(
        id=str(row.id),
        subject_id=row.subject_id,
        provider=row.provider,
        patient_id=row.patient_id,
        access_token_encrypted=row.access_token_encrypted,
        refresh_token_encrypted=row.refresh_token_encrypted,
        token_expires_at=row.token_expires_at,
        client_user_id=row.client_user_id,
        scope=row.scope,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SQLConnectionRepository(_SQLRepository, ConnectionRepository):
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
    ):
        row = await self._fetch_one(
            f"""
            INSERT INTO connections
            (id, subject_id, provider, patient_id, access_token_encrypted, refresh_token_encrypted,
             token_expires_at, client_user_id, scope, created_at, updated_at)
            VALUES (gen_random_uuid(), :subject_id, :provider, :patient_id, :access_token, :refresh_token,
                    :expires_at, :client_user_id, :scope, now(), now())
            ON CONFLICT (subject_id, provider, patient_id)
            DO UPDATE SET
                access_token_encrypted = EXCLUDED.access_token_encrypted,
                refresh_token_encrypted = COALESCE(EXCLUDED.refresh_token_encrypted,
                                                   connections.refresh_token_encrypted),
                token_expires_at = EXCLUDED.token_expires_at,
                client_user_id = COALESCE(EXCLUDED.client_user_id, connections.client_user_id),
                scope = COALESCE(EXCLUDED.scope, connections.scope),
                updated_at = now()
            RETURNING {_CONNECTION_COLUMNS}
            """,
            {
                "subject_id": subject_id,
                "provider": provider,
                "patient_id": patient_id,
                "access_token": access_token_encrypted,
                "refresh_token": refresh_token_encrypted,
                "expires_at": token_expires_at,
                "client_user_id": client_user_id,
                "scope": scope,
            },
            write=True,
        )
        return _connection(row)

    async def get(self, subject_id, provider, patient_id):
        row = await self._fetch_one(
            f"""
            SELECT {_CONNECTION_COLUMNS} FROM connections
            WHERE subject_id = :subject_id AND provider = :provider AND patient_id = :patient_id
            """,
            {"subject_id": subject_id, "provider": provider, "patient_id": patient_id},
        )
        return _connection(row) if row else None

    async def get_by_id(self, connection_id):
        if not _is_uuid(connection_id):
            return None
        row = await self._fetch_one(
            f"SELECT {_CONNECTION_COLUMNS} FROM connections WHERE id = CAST(:id AS UUID)",
            {"id": connection_id},
        )
        return _connection(row) if row else None

    async def list_by_subject(self, subject_id):
        rows = await self._fetch_all(
            f"SELECT {_CONNECTION_COLUMNS} FROM connections WHERE subject_id = :subject_id ORDER BY created_at DESC",
            {"subject_id": subject_id},
        )
        return [_connection(r) for r in rows]

    async def list_all(self):
        rows = await self._fetch_all(f"SELECT {_CONNECTION_COLUMNS} FROM connections", {})
        return [_connection(r) for r in rows]

    async def list_due_for_refresh(self, expires_before):
        rows = await self._fetch_all(
            f"""
            SELECT {_CONNECTION_COLUMNS} FROM connections
            WHERE refresh_token_encrypted IS NOT NULL
              AND token_expires_at IS NOT NULL
              AND token_expires_at < :cutoff
            """,
            {"cutoff": expires_before},
        )
        return [_connection(r) for r in rows]

    async def update_tokens(self, connection_id, access_token_encrypted, refresh_token_encrypted, token_expires_at):
        if not _is_uuid(connection_id):
            return None
        row = await self._fetch_one(
            f"""
            UPDATE connections
            SET access_token_encrypted = :access_token,
                refresh_token_encrypted = :refresh_token,
                token_expires_at = :expires_at,
                updated_at = now()
            WHERE id = CAST(:id AS UUID)
            RETURNING {_CONNECTION_COLUMNS}
            """,
            {
                "id": connection_id,
                "access_token": access_token_encrypted,
                "refresh_token": refresh_token_encrypted,
                "expires_at": token_expires_at,
            },
            write=True,
        )
        return _connection(row) if row else None

    async def delete(self, connection_id):
        if not _is_uuid(connection_id):
            return False
        count = await self._execute(
            "DELETE FROM connections WHERE id = CAST(:id AS UUID)",
            {"id": connection_id},
        )
        return count > 0


# ==============================================================================
# Widget / public tokens
# ==============================================================================

_WIDGET_COLUMNS = """
    id, token, api_user_id, client_user_id, redirect_uri, products, metadata,
    expires_at, used_at, connection_id, created_at
"""


def _widget_token(row) -> WidgetTokenRecord:
    return WidgetTokenRecord(
        id=str(row.id),
        token=row.token,
        api_user_id=row.api_user_id,
        client_user_id=row.client_user_id,
        redirect_uri=row.redirect_uri,
        products=list(row.products or []),
        metadata=_json(row.metadata),
        expires_at=row.expires_at,
        used_at=row.used_at,
        connection_id=_str(row.connection_id),
        created_at=row.created_at,
    )


def _public_token(row) -> PublicTokenRecord:
    return PublicTokenRecord(
        id=str(row.id),
        token=row.token,
        connection_id=str(row.connection_id),
        widget_token_id=_str(row.widget_token_id),
        expires_at=row.expires_at,
        exchanged_at=row.exchanged_at,
        created_at=row.created_at,
    )


class SQLWidgetTokenRepository(_SQLRepository, WidgetTokenRepository):
    async def create_widget_token(self, record):
        await self._execute(
            """
            INSERT INTO widget_tokens
            (id, token, api_user_id, client_user_id, redirect_uri, products, metadata, expires_at, created_at)
            VALUES (CAST(:id AS UUID), :token, :api_user_id, :client_user_id, :redirect_uri, :products,
                    CAST(:metadata AS JSONB), :expires_at, :created_at)
            """,
            {
                "id": record.id,
                "token": record.token,
                "api_user_id": record.api_user_id,
                "client_user_id": record.client_user_id,
                "redirect_uri": record.redirect_uri,
                "products": list(record.products),
                "metadata": json.dumps(record.metadata) if record.metadata is not None else None,
                "expires_at": record.expires_at,
                "created_at": record.created_at,
            },
        )
        return record

    async def get_widget_token(self, token):
        row = await self._fetch_one(
            f"SELECT {_WIDGET_COLUMNS} FROM widget_tokens WHERE token = :token",
            {"token": token},
        )
        return _widget_token(row) if row else None

    async def get_widget_token_by_id(self, token_id):
        if not _is_uuid(token_id):
            return None
        row = await self._fetch_one(
            f"SELECT {_WIDGET_COLUMNS} FROM widget_tokens WHERE id = CAST(:id AS UUID)",
            {"id": token_id},
        )
        return _widget_token(row) if row else None

    async def mark_widget_token_used(self, token_id, connection_id, now):
        if not _is_uuid(token_id) or not _is_uuid(connection_id):
            return False
        count = await self._execute(
            """
            UPDATE widget_tokens
            SET used_at = :now, connection_id = CAST(:connection_id AS UUID)
            WHERE id = CAST(:id AS UUID) AND used_at IS NULL AND expires_at > :now
            """,
            {"id": token_id, "connection_id": connection_id, "now": now},
        )
        return count == 1

    async def list_widget_tokens(self, api_user_id):
        rows = await self._fetch_all(
            f"""
            SELECT {_WIDGET_COLUMNS} FROM widget_tokens
            WHERE api_user_id = :api_user_id
            ORDER BY created_at DESC
            LIMIT 100
            """,
            {"api_user_id": api_user_id},
        )
        return [_widget_token(r) for r in rows]

    async def create_public_token(self, record):
        await self._execute(
            """
            INSERT INTO public_tokens (id, token, connection_id, widget_token_id, expires_at, created_at)
            VALUES (CAST(:id AS UUID), :token, CAST(:connection_id AS UUID), CAST(:widget_token_id AS UUID),
                    :expires_at, :created_at)
            """,
            {
                "id": record.id,
                "token": record.token,
                "connection_id": record.connection_id,
                "widget_token_id": record.widget_token_id,
                "expires_at": record.expires_at,
                "created_at": record.created_at,
            },
        )
        return record

    async def exchange_public_token(self, token, now, owner_id=None):
        row = await self._fetch_one(
            """
            UPDATE public_tokens p
            SET exchanged_at = :now
            FROM connections c
            WHERE p.token = :token
              AND p.exchanged_at IS NULL
              AND p.expires_at > :now
              AND c.id = p.connection_id
              AND (CAST(:owner_id AS VARCHAR) IS NULL OR c.subject_id = :owner_id)
            RETURNING p.id, p.token, p.connection_id, p.widget_token_id, p.expires_at, p.exchanged_at, p.created_at
            """,
            {"token": token, "now": now, "owner_id": owner_id},
            write=True,
        )
        return _public_token(row) if row else None

    async def delete_expired(self, expired_before):
        public_count = await self._execute(
            "DELETE FROM public_tokens WHERE expires_at < :cutoff",
            {"cutoff": expired_before},
        )
        widget_count = await self._execute(
            "DELETE FROM widget_tokens WHERE expires_at < :cutoff",
            {"cutoff": expired_before},
        )
        return public_count + widget_count


# ==============================================================================
# Webhooks
# ==============================================================================

_WEBHOOK_COLUMNS = "id, owner_id, url, secret, events, enabled, description, created_at, updated_at"
_WEBHOOK_UPDATABLE = {"url", "secret", "events", "enabled", "description"}


def _webhook(row) -> WebhookRecord:
    return WebhookRecord(
        id=str(row.id),
        owner_id=row.owner_id,
        url=row.url,
        secret=row.secret,
        events=list(row.events or []),
        enabled=row.enabled,
        description=row.description,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SQLWebhookRepository(_SQLRepository, WebhookRepository):
    async def create(self, record):
        await self._execute(
            """
            INSERT INTO webhooks (id, owner_id, url, secret, events, enabled, description, created_at, updated_at)
            VALUES (CAST(:id AS UUID), :owner_id, :url, :secret, :events, :enabled, :description,
                    :created_at, :updated_at)
            """,
            {
                "id": record.id,
                "owner_id": record.owner_id,
                "url": record.url,
                "secret": record.secret,
                "events": list(record.events),
                "enabled": record.enabled,
                "description": record.description,
                "created_at": record.created_at,
                "updated_at": record.updated_at,
            },
        )
        return record

    async def get(self, webhook_id):
        if not _is_uuid(webhook_id):
            return None
        row = await self._fetch_one(
            f"SELECT {_WEBHOOK_COLUMNS} FROM webhooks WHERE id = CAST(:id AS UUID)",
            {"id": webhook_id},
        )
        return _webhook(row) if row else None

    async def list_by_owner(self, owner_id):
        rows = await self._fetch_all(
            f"SELECT {_WEBHOOK_COLUMNS} FROM webhooks WHERE owner_id = :owner_id ORDER BY created_at DESC",
            {"owner_id": owner_id},
        )
        return [_webhook(r) for r in rows]

    async def list_subscribed(self, event_type, owner_id=None):
        sql = f"""
            SELECT {_WEBHOOK_COLUMNS} FROM webhooks
            WHERE enabled = true AND (:event_type = ANY(events) OR '*' = ANY(events))
        """
        params = {"event_type": event_type}
        if owner_id is not None:
            sql += " AND owner_id = :owner_id"
            params["owner_id"] = owner_id
        rows = await self._fetch_all(sql, params)
        return [_webhook(r) for r in rows]

    async def update(self, webhook_id, **fields):
        if not _is_uuid(webhook_id):
            return None
        updates ={k: v for k, v in fields.items() if k in _WEBHOOK_UPDATABLE}
        if not updates:
            return await self.get(webhook_id)
        assignments = ", ".join(f"{column} = :{column}" for column in updates)
        row = await self._fetch_one(
            f"""
            UPDATE webhooks SET {assignments}, updated_at = now()
            WHERE id = CAST(:id AS UUID)
            RETURNING {_WEBHOOK_COLUMNS}
            """,
            {"id": webhook_id, **updates},
            write=True,
        )
        return _webhook(row) if row else None

    async def delete(self, webhook_id):
        if not _is_uuid(webhook_id):
            return False
        count = await self._execute(
            "DELETE FROM webhooks WHERE id = CAST(:id AS UUID)",
            {"id": webhook_id},
        )
        return count > 0


_DELIVERY_COLUMNS = """
    id, webhook_id, event_type, payload, status, http_status, response_body, attempt_count,
    next_retry_at, last_attempt_at, delivered_at, created_at
"""


def _delivery(row) -> WebhookDeliveryRecord:
    return WebhookDeliveryRecord(
        id=str(row.id),
        webhook_id=str(row.webhook_id),
        event_type=row.event_type,
        payload=_json(row.payload),
        status=row.status,
        http_status=row.http_status,
        response_body=row.response_body,
        attempt_count=row.attempt_count,
        next_retry_at=row.next_retry_at,
        last_attempt_at=row.last_attempt_at,
        delivered_at=row.delivered_at,
        created_at=row.created_at,
    )


class SQLWebhookDeliveryRepository(_SQLRepository, WebhookDeliveryRepository):
    async def create(self, record):
        await self._execute(
            """
            INSERT INTO webhook_deliveries
            (id, webhook_id, event_type, payload, status, attempt_count, next_retry_at, created_at)
            VALUES (CAST(:id AS UUID), CAST(:webhook_id AS UUID), :event_type, CAST(:payload AS JSONB),
                    :status, :attempt_count, :next_retry_at, :created_at)
            """,
            {
                "id": record.id,
                "webhook_id": record.webhook_id,
                "event_type": record.event_type,
                "payload": json.dumps(record.payload),
                "status": record.status,
                "attempt_count": record.attempt_count,
                "next_retry_at": record.next_retry_at,
                "created_at": record.created_at,
            },
        )
        return record

    async def get(self, delivery_id):
        if not _is_uuid(delivery_id):
            return None
        row = await self._fetch_one(
            f"SELECT {_DELIVERY_COLUMNS} FROM webhook_deliveries WHERE id = CAST(:id AS UUID)",
            {"id": delivery_id},
        )
        return _delivery(row) if row else None

    async def record_attempt(
        self, delivery_id, status, http_status, response_body, attempt_count, next_retry_at, attempted_at
    ):
        row = await self._fetch_one(
            f"""
            UPDATE webhook_deliveries
            SET status = :status,
                http_status = :http_status,
                response_body = :response_body,
                attempt_count = :attempt_count,
                next_retry_at = :next_retry_at,
                last_attempt_at = :attempted_at,
                delivered_at = CASE WHEN :status = 'delivered' THEN :attempted_at ELSE delivered_at END
            WHERE id = CAST(:id AS UUID)
            RETURNING {_DELIVERY_COLUMNS}
            """,
            {
                "id": delivery_id,
                "status": status,
                "http_status": http_status,
                "response_body": response_body,
                "attempt_count": attempt_count,
                "next_retry_at": next_retry_at,
                "attempted_at": attempted_at,
            },
            write=True,
        )
        return _delivery(row) if row else None

    async def claim_due(self, now, max_attempts, limit, lease_until):
        # SKIP LOCKED lets concurrent workers split the batch instead of sharing it
        rows = await self._fetch_all(
            f"""
            UPDATE webhook_deliveries
            SET next_retry_at = :lease_until
            WHERE id IN (
                SELECT d.id FROM webhook_deliveries d
                WHERE d.status IN ('pending', 'failed')
                  AND d.attempt_count < :max_attempts
                  AND d.next_retry_at IS NOT NULL
                  AND d.next_retry_at <= :now
                ORDER BY d.next_retry_at ASC
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {_DELIVERY_COLUMNS}
            """,
            {"now": now, "max_attempts": max_attempts, "limit": limit, "lease_until": lease_until},
            write=True,
        )
        return [_delivery(r) for r in rows]

    async def list_for_webhook(self, webhook_id, limit=50):
        if not _is_uuid(webhook_id):
            return []
        rows = await self._fetch_all(
            f"""
            SELECT {_DELIVERY_COLUMNS} FROM webhook_deliveries
            WHERE webhook_id = CAST(:webhook_id AS UUID)
            ORDER BY created_at DESC
            LIMIT :limit
            """,
            {"webhook_id": webhook_id, "limit": limit},
        )
        return [_delivery(r) for r in rows]


# ==============================================================================
# Audit log / API keys
# ==============================================================================


class SQLAuditLogRepository(_SQLRepository, AuditLogRepository):
    async def add(self, record):
        await self._execute(
            """
            INSERT INTO audit_logs (id, action, subject_id, resource_type, resource_id, details, ip_address, created_at)
            VALUES (CAST(:id AS UUID), :action, :subject_id, :resource_type, :resource_id,
                    CAST(:details AS JSONB), :ip_address, :created_at)
            """,
            {
                "id": record.id,
                "action": record.action,
                "subject_id": record.subject_id,
                "resource_type": record.resource_type,
                "resource_id": record.resource_id,
                "details": json.dumps(record.details) if record.details is not None else None,
                "ip_address": record.ip_address,
                "created_at": record.created_at,
            },
        )
        return record

    async def list(self, subject_id=None, limit=100):
        sql = "SELECT id, action, subject_id, resource_type, resource_id, details, ip_address, created_at FROM audit_logs"
        params = {"limit": limit}
        if subject_id is not None:
            sql += " WHERE subject_id = :subject_id"
            params["subject_id"] = subject_id
        sql += " ORDER BY created_at DESC LIMIT :limit"
        rows = await self._fetch_all(sql, params)
        return [
            AuditLogRecord(
                id=str(r.id),
                action=r.action,
                subject_id=r.subject_id,
                resource_type=r.resource_type,
                resource_id=r.resource_id,
                details=_json(r.details),
                ip_address=r.ip_address,
                created_at=r.created_at,
            )
            for r in rows
        ]


_API_KEY_COLUMNS = (
    "id, api_user_id, key_prefix, key_hash, name, is_revoked, revoked_at, expires_at, last_used_at, created_at"
)


def _api_key(row) -> APIKeyRecord:
    return APIKeyRecord(
        id=str(row.id),
        api_user_id=row.api_user_id,
        key_prefix=row.key_prefix,
        key_hash=row.key_hash,
        name=row.name,
        is_revoked=row.is_revoked,
        revoked_at=row.revoked_at,
        expires_at=row.expires_at,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


class SQLApiKeyRepository(_SQLRepository, ApiKeyRepository):
    async def create(self, record):
        await self._execute(
            """
            INSERT INTO api_keys (id, api_user_id, key_prefix, key_hash, name, is_revoked, expires_at, created_at)
            VALUES (CAST(:id AS UUID), :api_user_id, :key_prefix, :key_hash, :name, false, :expires_at, :created_at)
            """,
            {
                "id": record.id,
                "api_user_id": record.api_user_id,
                "key_prefix": record.key_prefix,
                "key_hash": record.key_hash,
                "name": record.name,
                "expires_at": record.expires_at,
                "created_at": record.created_at,
            },
        )
        return record

    async def find_by_prefix(self, key_prefix):
        rows = await self._fetch_all(
            f"SELECT {_API_KEY_COLUMNS} FROM api_keys WHERE key_prefix = :prefix",
            {"prefix": key_prefix},
        )
        return [_api_key(r) for r in rows]

    async def list_by_user(self, api_user_id):
        rows = await self._fetch_all(
            f"SELECT {_API_KEY_COLUMNS} FROM api_keys WHERE api_user_id = :api_user_id ORDER BY created_at DESC",
            {"api_user_id": api_user_id},
        )
        return [_api_key(r) for r in rows]

    async def revoke(self, key_id, now: datetime):
        if not _is_uuid(key_id):
            return False
        count = await self._execute(
            """
            UPDATE api_keys SET is_revoked = true, revoked_at = :now
            WHERE id = CAST(:id AS UUID) AND is_revoked = false
            """,
            {"id": key_id, "now": now},
        )
        return count == 1

    async def touch(self, key_id, now: datetime):
        await self._execute(
            "UPDATE api_keys SET last_used_at = :now WHERE id = CAST(:id AS UUID)",
            {"id": key_id, "now": now},
        )


def create_sql_repositories(session_factory: SessionFactory = AsyncSessionLocal) -> Repositories:
    return Repositories(
        connections=SQLConnectionRepository(session_factory),
        widget_tokens=SQLWidgetTokenRepository(session_factory),
        webhooks=SQLWebhookRepository(session_factory),
        deliveries=SQLWebhookDeliveryRepository(session_factory),
        audit_logs=SQLAuditLogRepository(session_factory),
        api_keys=SQLApiKeyRepository(session_factory),
    )

