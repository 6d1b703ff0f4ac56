"""
Audit logging service for connection lifecycle and credential events.

Audit entries are append-only and carry identifiers only; token material is
never written into ``details``.
"""

from typing import Any, Dict, Optional

from fastapi import Request
from fhirlink.core.config import settings
from fhirlink.core.logging import get_logger
from fhirlink.repositories import get_repositories
from fhirlink.repositories.base import AuditLogRecord, AuditLogRepository, new_id

logger = get_logger(__name__)


class AuditAction:
    OAUTH_CONNECT = "oauth_connect"
    WIDGET_CONNECT = "widget_connect"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    CONNECTION_DELETED = "connection_deleted"
    PUBLIC_TOKEN_EXCHANGED = "public_token_exchanged"
    WEBHOOK_CREATED = "webhook_created"
    WEBHOOK_DELETED = "webhook_deleted"
    API_KEY_CREATED = "api_key_created"
    API_KEY_REVOKED = "api_key_revoked"


def client_ip(request: Optional[Request]) -> Optional[str]:
    """Caller IP. X-Forwarded-For is used only when TRUST_PROXY_HEADERS is set."""
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for") if settings.TRUST_PROXY_HEADERS else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class AuditService:
    """Writes audit entries through the configured repository."""

    def __init__(self, repository: Optional[AuditLogRepository] = None):
        self._repository = repository

    @property
    def repository(self) -> AuditLogRepository:
        return self._repository or get_repositories().audit_logs

    async def log(
        self,
        action: str,
        subject_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> AuditLogRecord:
        record = AuditLogRecord(
            id=new_id(),
            action=action,
            subject_id=subject_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
        )
        try:
            await self.repository.add(record)
        except Exception as e:
            logger.error("audit_log_write_failed", action=action, resource_id=resource_id, error=str(e))
            raise

        logger.info(
            "audit_logged",
            action=action,
            subject_id=subject_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        return record


# Global audit service instance
audit_service = AuditService()


def get_audit_service() -> AuditService:
    return audit_service
