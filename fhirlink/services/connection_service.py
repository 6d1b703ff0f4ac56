"""
Developer-facing view of stored connections and their FHIR data.
"""

from typing import List, Optional

from fhirlink.core.exceptions import NotFoundError
from fhirlink.core.logging import get_logger
from fhirlink.integrations.fhir.fhir_client import (
    FetchAllResult,
    FhirFetchLayer,
    PaginatedResult,
    get_fhir_fetch_layer,
)
from fhirlink.repositories.base import ConnectionRecord
from fhirlink.services.audit_service import AuditAction, AuditService, get_audit_service
from fhirlink.services.token_refresh import TokenRefreshService, get_token_refresh_service
from fhirlink.services.token_vault import TokenVault, get_token_vault

logger = get_logger(__name__)


class ConnectionService:
    def __init__(
        self,
        vault: Optional[TokenVault] = None,
        refresher: Optional[TokenRefreshService] = None,
        fetcher: Optional[FhirFetchLayer] = None,
        audit: Optional[AuditService] = None,
        dispatcher=None,
    ):
        self.vault = vault or get_token_vault()
        self._refresher = refresher
        self.fetcher = fetcher or get_fhir_fetch_layer()
        self.audit = audit or get_audit_service()
        self._dispatcher = dispatcher

    @property
    def refresher(self) -> TokenRefreshService:
        return self._refresher or get_token_refresh_service()

    @property
    def dispatcher(self):
        if self._dispatcher is None:
            from fhirlink.services.webhook_dispatcher import get_webhook_dispatcher

            self._dispatcher = get_webhook_dispatcher()
        return self._dispatcher

    async def list(self, subject_id: str) -> List[ConnectionRecord]:
        return await self.vault.list_for_subject(subject_id)

    async def get(self, subject_id: str, connection_id: str) -> ConnectionRecord:
        record = await self.vault.get_record(connection_id)
        if record is None or record.subject_id != subject_id:
            raise NotFoundError(f"Connection {connection_id} not found")
        return record

    async def delete(self, subject_id: str, connection_id: str, ip_address: Optional[str] = None) -> None:
        from fhirlink.services.webhook_dispatcher import EventType

        record = await self.get(subject_id, connection_id)
        await self.vault.delete(record.id)
        await self.audit.log(
            AuditAction.CONNECTION_DELETED,
            subject_id=subject_id,
            resource_type="connection",
            resource_id=record.id,
            details={"provider": record.provider},
            ip_address=ip_address,
        )
        try:
            await self.dispatcher.dispatch(
                EventType.CONNECTION_DELETED,
                {"connection_id": record.id, "provider": record.provider, "patient_id": record.patient_id},
                owner_id=subject_id,
            )
        except Exception as e:
            logger.warning("connection_deleted_dispatch_failed", connection_id=record.id, error=str(e))

    async def fetch_records(
        self,
        subject_id: str,
        connection_id: str,
        resource_types: Optional[List[str]] = None,
    ) -> FetchAllResult:
        connection = await self.refresher.get_live_connection(connection_id, subject_id)
        return await self.fetcher.fetch_all(connection.to_fetch_target(), resource_types=resource_types)

    async def fetch_resource_pages(
        self,
        subject_id: str,
        connection_id: str,
        resource_type: str,
        max_pages: Optional[int] = None,
    ) -> PaginatedResult:
        connection = await self.refresher.get_live_connection(connection_id, subject_id)
        return await self.fetcher.fetch_paginated(connection.to_fetch_target(), resource_type, max_pages=max_pages)


# Global connection service instance
_connection_service: Optional[ConnectionService] = None


def get_connection_service() -> ConnectionService:
    global _connection_service
    if _connection_service is None:
        _connection_service = ConnectionService()
    return _connection_service
