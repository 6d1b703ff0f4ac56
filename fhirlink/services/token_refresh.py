"""
Token refresh: proactive scheduler and inline live-connection reads.

The scheduler periodically refreshes every connection whose access token is
about to expire. Refreshes run concurrently and are settled individually, so
one provider failing never blocks the others. Failed connections are left
untouched for the next tick; they are never deleted here.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from fhirlink.core.config import settings
from fhirlink.core.exceptions import FhirLinkError, NotFoundError, ReauthorizationRequired
from fhirlink.core.logging import get_logger
from fhirlink.integrations.fhir.oauth_engine import OAuthFlowEngine, get_oauth_engine
from fhirlink.repositories.base import ConnectionRecord
from fhirlink.services.audit_service import AuditAction, AuditService, get_audit_service
from fhirlink.services.token_vault import DecryptedConnection, TokenVault, get_token_vault

logger = get_logger(__name__)

# Live reads refresh inline when the token is this close to expiry
INLINE_REFRESH_MARGIN_SECONDS = 300


@dataclass
class RefreshSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_connection_ids: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failed_connection_ids": self.failed_connection_ids,
        }


class TokenRefreshService:
    def __init__(
        self,
        vault: Optional[TokenVault] = None,
        engine: Optional[OAuthFlowEngine] = None,
        audit: Optional[AuditService] = None,
        dispatcher=None,
    ):
        self.vault = vault or get_token_vault()
        self._engine = engine
        self.audit = audit or get_audit_service()
        self._dispatcher = dispatcher

    @property
    def engine(self) -> OAuthFlowEngine:
        return self._engine or get_oauth_engine()

    @property
    def dispatcher(self):
        if self._dispatcher is None:
            from fhirlink.services.webhook_dispatcher import get_webhook_dispatcher

            self._dispatcher = get_webhook_dispatcher()
        return self._dispatcher

    async def refresh_connection(self, record: ConnectionRecord) -> ConnectionRecord:
        """
        Refresh one connection and persist both tokens.

        Every attempt is audited. Errors propagate to the caller after the
        failure has been recorded.
        """
        try:
            connection = self.vault.decrypt(record)
            tokens = await self.engine.refresh(record.provider, connection.refresh_token)
            updated = await self.vault.update_tokens(
                record.id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
            )
            if updated is None:
                raise NotFoundError(f"Connection {record.id} disappeared during refresh")
        except Exception as e:
            if isinstance(e, FhirLinkError):
                code, message = e.code, e.message
            else:
                code, message = type(e).__name__, str(e)
            logger.warning(
                "token_refresh_failed",
                connection_id=record.id,
                provider=record.provider,
                error_code=code,
                error=message,
            )
            await self.audit.log(
                AuditAction.TOKEN_REFRESH_FAILED,
                subject_id=record.subject_id,
                resource_type="connection",
                resource_id=record.id,
                details={"provider": record.provider, "error": message, "code": code},
            )
            raise

        await self.audit.log(
            AuditAction.TOKEN_REFRESH,
            subject_id=record.subject_id,
            resource_type="connection",
            resource_id=record.id,
            details={"provider": record.provider, "rotated_refresh_token": tokens.refresh_token is not None},
        )
        logger.info(
            "token_refresh_succeeded",
            connection_id=record.id,
            provider=record.provider,
            expires_at=updated.token_expires_at.isoformat() if updated.token_expires_at else None,
        )
        await self._notify_updated(updated)
        return updated

    async def _notify_updated(self, record: ConnectionRecord) -> None:
        from fhirlink.services.webhook_dispatcher import EventType

        try:
            await self.dispatcher.dispatch(
                EventType.CONNECTION_UPDATED,
                {"connection_id": record.id, "provider": record.provider, "reason": "token_refreshed"},
                owner_id=record.subject_id,
            )
        except Exception as e:
            logger.warning("connection_updated_dispatch_failed", connection_id=record.id, error=str(e))

    async def refresh_expiring(self, horizon_seconds: Optional[int] = None) -> RefreshSummary:
        """One scheduler tick: refresh everything due, all-settled."""
        horizon = horizon_seconds if horizon_seconds is not None else settings.TOKEN_REFRESH_HORIZON_SECONDS
        due = await self.vault.due_for_refresh(horizon)
        summary = RefreshSummary(attempted=len(due))
        if not due:
            logger.debug("token_refresh_nothing_due", horizon_seconds=horizon)
            return summary

        results = await asyncio.gather(*(self.refresh_connection(r) for r in due), return_exceptions=True)
        for record, result in zip(due, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                summary.failed += 1
                summary.failed_connection_ids.append(record.id)
                if not isinstance(result, FhirLinkError):
                    logger.error(
                        "token_refresh_unexpected_error",
                        connection_id=record.id,
                        provider=record.provider,
                        error_type=type(result).__name__,
                        error=str(result),
                    )
            else:
                summary.succeeded += 1

        logger.info("token_refresh_tick_completed", **summary.to_dict())
        return summary

    async def get_live_connection(self, connection_id: str, subject_id: Optional[str] = None) -> DecryptedConnection:
        """
        Read a connection ready for an outbound call.

        Tokens close to expiry are refreshed inline. If that refresh fails
        the current token is returned and the failure is left to the
        scheduler.

        Raises:
            NotFoundError: unknown connection, or owned by another subject
            ReauthorizationRequired: token expired and nothing to refresh with
        """
        record = await self.vault.get_record(connection_id)
        if record is None or (subject_id is not None and record.subject_id != subject_id):
            raise NotFoundError(f"Connection {connection_id} not found")

        connection = self.vault.decrypt(record)
        if not connection.expires_within(INLINE_REFRESH_MARGIN_SECONDS):
            return connection

        if not connection.refresh_token:
            if connection.is_expired():
                logger.info("connection_requires_reauthorization", connection_id=record.id, provider=record.provider)
                raise ReauthorizationRequired(connection_id=record.id, provider_id=record.provider)
            return connection

        try:
            refreshed = await self.refresh_connection(record)
        except FhirLinkError as e:
            logger.warning(
                "inline_token_refresh_failed",
                connection_id=record.id,
                provider=record.provider,
                error_code=e.code,
            )
            return connection
        return self.vault.decrypt(refreshed)


class TokenRefreshScheduler:
    """Runs TokenRefreshService.refresh_expiring on a fixed interval."""

    def __init__(
        self,
        service: Optional[TokenRefreshService] = None,
        interval_seconds: Optional[float] = None,
        initial_delay_seconds: Optional[float] = None,
        horizon_seconds: Optional[int] = None,
    ) -> None:
        self.service = service or get_token_refresh_service()
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.TOKEN_REFRESH_INTERVAL_SECONDS
        )
        self.initial_delay_seconds = (
            initial_delay_seconds if initial_delay_seconds is not None else settings.TOKEN_REFRESH_INITIAL_DELAY_SECONDS
        )
        self.horizon_seconds = horizon_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background refresh loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "token_refresh_scheduler_started",
            interval_seconds=self.interval_seconds,
            initial_delay_seconds=self.initial_delay_seconds,
        )

    async def stop(self) -> None:
        """Stop the loop and wait for it to finish."""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("token_refresh_scheduler_cancelled")
            self._task = None
        logger.info("token_refresh_scheduler_stopped")

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless stopped; returns True when a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self) -> None:
        if await self._wait(self.initial_delay_seconds):
            return

        while not self._stop_event.is_set():
            try:
                await self.service.refresh_expiring(self.horizon_seconds)
            except Exception as exc:  # noqa: BLE001
                logger.error("token_refresh_tick_failed", error_type=type(exc).__name__, error=str(exc))

            if await self._wait(self.interval_seconds):
                return


# Global service instance
_token_refresh_service: Optional[TokenRefreshService] = None


def get_token_refresh_service() -> TokenRefreshService:
    global _token_refresh_service
    if _token_refresh_service is None:
        _token_refresh_service = TokenRefreshService()
    return _token_refresh_service
