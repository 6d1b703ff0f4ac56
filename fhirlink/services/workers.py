"""
Background maintenance loop.

Each tick retries due webhook deliveries, purges expired widget and public
tokens, and drops idle in-process rate-limit windows. A failing step is
logged and the remaining steps still run.
"""

import asyncio
from typing import Optional

from fhirlink.core.config import settings
from fhirlink.core.logging import get_logger
from fhirlink.services.rate_limiter import RateLimiter, get_rate_limiter
from fhirlink.services.webhook_dispatcher import WebhookDispatcher, get_webhook_dispatcher
from fhirlink.services.widget_service import WidgetService, get_widget_service

logger = get_logger(__name__)


class WebhookRetryWorker:
    def __init__(
        self,
        dispatcher: Optional[WebhookDispatcher] = None,
        widgets: Optional[WidgetService] = None,
        limiter: Optional[RateLimiter] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.dispatcher = dispatcher or get_webhook_dispatcher()
        self.widgets = widgets or get_widget_service()
        self.limiter = limiter or get_rate_limiter()
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.WEBHOOK_RETRY_INTERVAL_SECONDS
        )
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("webhook_retry_worker_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("webhook_retry_worker_cancelled")
            self._task = None
        logger.info("webhook_retry_worker_stopped")

    async def run_once(self) -> None:
        """One maintenance tick."""
        try:
            await self.dispatcher.process_retries()
        except Exception as exc:  # noqa: BLE001
            logger.error("webhook_retry_tick_failed", error_type=type(exc).__name__, error=str(exc))

        try:
            await self.widgets.cleanup_expired()
        except Exception as exc:  # noqa: BLE001
            logger.error("widget_token_cleanup_failed", error_type=type(exc).__name__, error=str(exc))

        removed = self.limiter.cleanup_memory()
        if removed:
            logger.debug("rate_limit_windows_pruned", removed=removed)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                return
            except asyncio.TimeoutError:
                continue
