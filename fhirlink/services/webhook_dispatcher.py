"""
Webhook Dispatcher

Delivers signed event envelopes to subscriber endpoints.

Wire format:
    POST {url}
    X-Webhook-Signature: v1=<hex HMAC-SHA256 over "{timestamp}.{body}">
    X-Webhook-Timestamp: <unix seconds>
    body: {"id", "type", "created", "data"}

Deliveries fan out concurrently and settle individually. Every attempt is
recorded as a WebhookDelivery; failures are retried by the retry worker on
a fixed schedule and end in a terminal ``failed`` state.
"""

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from fhirlink.core.config import settings
from fhirlink.core.logging import get_logger
from fhirlink.repositories import get_repositories
from fhirlink.repositories.base import (
    WebhookDeliveryRecord,
    WebhookDeliveryRepository,
    WebhookRecord,
    WebhookRepository,
    new_id,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
SIGNATURE_VERSION = "v1"

# Delay before attempt n+1, indexed by attempts made so far
RETRY_DELAYS_SECONDS = [0, 60, 300, 3600, 86400]
MAX_ATTEMPTS = len(RETRY_DELAYS_SECONDS)
# Slack on top of the HTTP timeout before an unrecorded attempt is retried
LEASE_MARGIN_SECONDS = 30
RESPONSE_EXCERPT_LENGTH = 1000


class EventType(str, Enum):
    CONNECTION_CREATED = "connection.created"
    CONNECTION_UPDATED = "connection.updated"
    CONNECTION_DELETED = "connection.deleted"
    CONNECTION_EXPIRED = "connection.expired"
    DATA_SYNCED = "data.synced"
    DATA_UPDATED = "data.updated"
    TEST = "test"


WILDCARD_EVENT = "*"

EVENT_DESCRIPTIONS = {
    EventType.CONNECTION_CREATED.value: "Fired when a new provider connection is established",
    EventType.CONNECTION_UPDATED.value: "Fired when connection tokens are refreshed",
    EventType.CONNECTION_DELETED.value: "Fired when a connection is removed",
    EventType.CONNECTION_EXPIRED.value: "Fired when connection tokens expire",
    EventType.DATA_SYNCED.value: "Fired when new data is synced from a provider",
    EventType.DATA_UPDATED.value: "Fired when existing data is updated",
    EventType.TEST.value: "Test event for verifying webhook configuration",
}


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


def valid_event_names() -> List[str]:
    return [WILDCARD_EVENT] + [e.value for e in EventType]


# ==============================================================================
# Signing
# ==============================================================================


def canonical_json(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope, separators=(",", ":"), sort_keys=True, default=str)


def compute_signature(payload: str, timestamp: int, secret: str) -> str:
    """Hex HMAC-SHA256 over ``{timestamp}.{payload}``."""
    message = f"{timestamp}.{payload}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign(payload: str, timestamp: int, secret: str) -> str:
    """Signature header value."""
    return f"{SIGNATURE_VERSION}={compute_signature(payload, timestamp, secret)}"


def verify(payload: str, signature: str, timestamp: int, secret: str) -> bool:
    """Constant-time check of a signature header against the payload."""
    if not signature or not secret:
        return False
    try:
        timestamp = int(timestamp)
    except (TypeError, ValueError):
        return False
    expected = sign(payload, timestamp, secret)
    return hmac.compare_digest(expected.encode(), signature.encode())


def build_envelope(event_type: str, data: Dict[str, Any], created: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": f"evt_{uuid.uuid4().hex}",
        "type": event_type,
        "created": (created or datetime.now(timezone.utc)).isoformat(),
        "data": data,
    }


@dataclass
class RetrySummary:
    processed: int = 0
    delivered: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "delivered": self.delivered, "failed": self.failed}


class WebhookDispatcher:
    """
    Signs, delivers and records webhook events.

    Args:
        webhooks: Webhook repository
        deliveries: Delivery repository
        transport: Optional httpx transport (tests use httpx.MockTransport)
        clock: Wall-clock source in seconds
    """

    def __init__(
        self,
        webhooks: Optional[WebhookRepository] = None,
        deliveries: Optional[WebhookDeliveryRepository] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        timeout_seconds: Optional[float] = None,
    ):
        self._webhooks = webhooks
        self._deliveries = deliveries
        self._transport = transport
        self.clock = clock
        self.timeout_seconds = timeout_seconds or settings.WEBHOOK_TIMEOUT_SECONDS

    @property
    def webhooks(self) -> WebhookRepository:
        return self._webhooks or get_repositories().webhooks

    @property
    def deliveries(self) -> WebhookDeliveryRepository:
        return self._deliveries or get_repositories().deliveries

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    def next_retry_at(self, attempts_made: int, now: datetime) -> Optional[datetime]:
        """When to try again after ``attempts_made`` failures, or None when exhausted."""
        if attempts_made >= MAX_ATTEMPTS:
            return None
        return now + timedelta(seconds=RETRY_DELAYS_SECONDS[attempts_made])

    def lease_until(self, now: datetime) -> datetime:
        """
        Retry time held by an attempt in flight. The attempt overwrites it
        when recorded; if the process dies first, the retry worker picks the
        delivery up once it passes.
        """
        return now + timedelta(seconds=self.timeout_seconds + LEASE_MARGIN_SECONDS)

    async def _post(self, client: httpx.AsyncClient, webhook: WebhookRecord, body: str, event_type: str):
        timestamp = int(self.clock())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.WEBHOOK_USER_AGENT,
            SIGNATURE_HEADER: sign(body, timestamp, webhook.secret),
            TIMESTAMP_HEADER: str(timestamp),
            "X-Webhook-Event": event_type,
        }
        return await client.post(webhook.url, content=body, headers=headers)

    async def deliver(
        self,
        webhook: WebhookRecord,
        delivery: WebhookDeliveryRecord,
        client: Optional[httpx.AsyncClient] = None,
    ) -> WebhookDeliveryRecord:
        """One delivery attempt, recorded whatever the outcome."""
        attempt = delivery.attempt_count + 1
        body = canonical_json(delivery.payload)
        http_status: Optional[int] = None
        response_body: Optional[str] = None
        error: Optional[str] = None

        try:
            if client is None:
                async with self._http_client() as own_client:
                    response = await self._post(own_client, webhook, body, delivery.event_type)
            else:
                response = await self._post(client, webhook, body, delivery.event_type)
            http_status = response.status_code
            response_body = response.text[:RESPONSE_EXCERPT_LENGTH]
            delivered = response.is_success
        except httpx.TimeoutException:
            error = "timeout"
            delivered = False
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}"
            delivered = False

        now = self._now()
        if delivered:
            status, next_retry = DeliveryStatus.DELIVERED.value, None
        else:
            status, next_retry = DeliveryStatus.FAILED.value, self.next_retry_at(attempt, now)
            if response_body is None and error:
                response_body = error

        updated = await self.deliveries.record_attempt(
            delivery.id,
            status=status,
            http_status=http_status,
            response_body=response_body,
            attempt_count=attempt,
            next_retry_at=next_retry,
            attempted_at=now,
        )

        log = logger.info if delivered else logger.warning
        log(
            "webhook_delivery_attempted",
            webhook_id=webhook.id,
            delivery_id=delivery.id,
            event_type=delivery.event_type,
            attempt=attempt,
            status=status,
            http_status=http_status,
            error=error,
            terminal=not delivered and next_retry is None,
        )
        return updated or delivery

    async def _deliver_all(
        self, pairs: List[Tuple[WebhookRecord, WebhookDeliveryRecord]]
    ) -> List[WebhookDeliveryRecord]:
        async with self._http_client() as client:
            results = await asyncio.gather(
                *(self.deliver(webhook, delivery, client) for webhook, delivery in pairs),
                return_exceptions=True,
            )

        settled: List[WebhookDeliveryRecord] = []
        for (webhook, delivery), result in zip(pairs, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "webhook_delivery_error",
                    webhook_id=webhook.id,
                    delivery_id=delivery.id,
                    error_type=type(result).__name__,
                    error=str(result),
                )
                settled.append(delivery)
            else:
                settled.append(result)
        return settled

    async def dispatch(
        self,
        event_type: str,
        data: Dict[str, Any],
        owner_id: Optional[str] = None,
    ) -> List[WebhookDeliveryRecord]:
        """
        Deliver an event to every enabled, subscribed webhook.

        Args:
            event_type: Event name (EventType value)
            data: Event data (identifiers only)
            owner_id: Limit delivery to one owner's webhooks

        Returns:
            One delivery record per subscriber
        """
        event_type = event_type.value if isinstance(event_type, EventType) else event_type
        hooks = await self.webhooks.list_subscribed(event_type, owner_id)
        if not hooks:
            logger.debug("webhook_dispatch_no_subscribers", event_type=event_type, owner_id=owner_id)
            return []

        now = self._now()
        envelope = build_envelope(event_type, data, now)
        pairs = []
        for webhook in hooks:
            delivery = await self.deliveries.create(
                WebhookDeliveryRecord(
                    id=new_id(),
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=envelope,
                    status=DeliveryStatus.PENDING.value,
                    next_retry_at=self.lease_until(now),
                    created_at=now,
                )
            )
            pairs.append((webhook, delivery))

        logger.info("webhook_dispatch_started", event_type=event_type, event_id=envelope["id"], subscribers=len(pairs))
        return await self._deliver_all(pairs)

    async def send_test_event(self, webhook: WebhookRecord) -> WebhookDeliveryRecord:
        """Deliver a ``test`` event to one webhook, regardless of its subscriptions."""
        now = self._now()
        envelope = build_envelope(
            EventType.TEST.value,
            {"message": "This is a test webhook event", "webhook_id": webhook.id},
            now,
        )
        delivery = await self.deliveries.create(
            WebhookDeliveryRecord(
                id=new_id(),
                webhook_id=webhook.id,
                event_type=EventType.TEST.value,
                payload=envelope,
                status=DeliveryStatus.PENDING.value,
                next_retry_at=self.lease_until(now),
                created_at=now,
            )
        )
        return await self.deliver(webhook, delivery)

    async def process_retries(self, batch_size: Optional[int] = None) -> RetrySummary:
        """Retry due deliveries (one batch)."""
        now = self._now()
        limit = batch_size or settings.WEBHOOK_RETRY_BATCH_SIZE
        due = await self.deliveries.claim_due(now, MAX_ATTEMPTS, limit, self.lease_until(now))
        summary = RetrySummary()
        if not due:
            return summary

        pairs = []
        for delivery in due:
            webhook = await self.webhooks.get(delivery.webhook_id)
            if webhook is None or not webhook.enabled:
                # Nothing left to deliver to: close it out
                await self.deliveries.record_attempt(
                    delivery.id,
                    status=DeliveryStatus.FAILED.value,
                    http_status=delivery.http_status,
                    response_body="webhook removed or disabled",
                    attempt_count=delivery.attempt_count,
                    next_retry_at=None,
                    attempted_at=now,
                )
                summary.failed += 1
                continue
            pairs.append((webhook, delivery))

        for record in await self._deliver_all(pairs):
            if record.status == DeliveryStatus.DELIVERED.value:
                summary.delivered += 1
            else:
                summary.failed += 1
        summary.processed = len(due)

        logger.info("webhook_retries_processed", **summary.to_dict())
        return summary


# Global dispatcher instance
_webhook_dispatcher: Optional[WebhookDispatcher] = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    global _webhook_dispatcher
    if _webhook_dispatcher is None:
        _webhook_dispatcher = WebhookDispatcher()
    return _webhook_dispatcher


__all__ = [
    "DeliveryStatus",
    "EVENT_DESCRIPTIONS",
    "EventType",
    "MAX_ATTEMPTS",
    "RETRY_DELAYS_SECONDS",
    "WebhookDispatcher",
    "build_envelope",
    "canonical_json",
    "compute_signature",
    "get_webhook_dispatcher",
    "sign",
    "valid_event_names",
    "verify",
]
