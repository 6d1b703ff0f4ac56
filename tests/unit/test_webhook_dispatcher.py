"""
Unit tests for webhook signing, delivery and retries.

Subscriber endpoints are served by httpx.MockTransport.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fhirlink.repositories.base import WebhookRecord, new_id
from fhirlink.services.webhook_dispatcher import (
    LEASE_MARGIN_SECONDS,
    MAX_ATTEMPTS,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    EventType,
    WebhookDispatcher,
    canonical_json,
    compute_signature,
    sign,
    verify,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return [1_700_000_000.0]


@pytest.fixture
def received():
    return []


async def add_webhook(repositories, url, events=None, owner_id="dev-1", enabled=True):
    return await repositories.webhooks.create(
        WebhookRecord(
            id=new_id(),
            owner_id=owner_id,
            url=url,
            secret=f"whsec_{url[-1]}",
            events=events or ["*"],
            enabled=enabled,
        )
    )


def make_dispatcher(repositories, clock, handler):
    return WebhookDispatcher(
        webhooks=repositories.webhooks,
        deliveries=repositories.deliveries,
        transport=httpx.MockTransport(handler),
        clock=lambda: clock[0],
    )


# =============================================================================
# Signing
# =============================================================================


class TestSigning:
    """HMAC-SHA256 over "{timestamp}.{body}"."""

    PAYLOAD = '{"data":{"connection_id":"c-1"},"type":"connection.created"}'

    def test_sign_and_verify(self):
        signature = sign(self.PAYLOAD, 1700000000, "whsec_abc")

        assert signature.startswith("v1=")
        assert signature == f"v1={compute_signature(self.PAYLOAD, 1700000000, 'whsec_abc')}"
        assert verify(self.PAYLOAD, signature, 1700000000, "whsec_abc") is True

    def test_any_change_breaks_the_signature(self):
        signature = sign(self.PAYLOAD, 1700000000, "whsec_abc")

        assert verify(self.PAYLOAD + " ", signature, 1700000000, "whsec_abc") is False
        assert verify(self.PAYLOAD, signature, 1700000001, "whsec_abc") is False
        assert verify(self.PAYLOAD, signature, 1700000000, "whsec_abd") is False
        assert verify(self.PAYLOAD, signature.replace("v1=", "v2="), 1700000000, "whsec_abc") is False

    def test_empty_signature_or_secret(self):
        assert verify(self.PAYLOAD, "", 1700000000, "whsec_abc") is False
        assert verify(self.PAYLOAD, sign(self.PAYLOAD, 1, ""), 1, "") is False

    def test_unparseable_timestamp_is_rejected(self):
        signature = sign(self.PAYLOAD, 1700000000, "whsec_abc")

        assert verify(self.PAYLOAD, signature, "not-a-number", "whsec_abc") is False
        assert verify(self.PAYLOAD, signature, None, "whsec_abc") is False
        assert verify(self.PAYLOAD, signature, "1700000000", "whsec_abc") is True


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    """Fan-out to subscribers, settled individually."""

    @pytest.mark.asyncio
    async def test_one_timeout_does_not_block_the_other(self, repositories, clock, received):
        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            if request.url.host == "slow.example.com":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, text="ok")

        slow = await add_webhook(repositories, "https://slow.example.com/hook1")
        fast = await add_webhook(repositories, "https://fast.example.com/hook2")
        dispatcher = make_dispatcher(repositories, clock, handler)

        deliveries = await dispatcher.dispatch(EventType.CONNECTION_CREATED, {"connection_id": "c-1"})

        by_webhook = {d.webhook_id: d for d in deliveries}
        assert by_webhook[fast.id].status == "delivered"
        assert by_webhook[fast.id].http_status == 200
        assert by_webhook[fast.id].delivered_at is not None

        failed = by_webhook[slow.id]
        assert failed.status == "failed"
        assert failed.attempt_count == 1
        assert failed.response_body == "timeout"
        assert failed.next_retry_at == datetime.fromtimestamp(clock[0], tz=timezone.utc) + timedelta(seconds=60)
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_request_is_signed(self, repositories, clock, received):
        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(204)

        webhook = await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, handler)

        await dispatcher.dispatch(EventType.CONNECTION_DELETED, {"connection_id": "c-1"})

        request = received[0]
        body = request.content.decode()
        timestamp = int(request.headers[TIMESTAMP_HEADER])
        assert timestamp == int(clock[0])
        assert verify(body, request.headers[SIGNATURE_HEADER], timestamp, webhook.secret) is True
        assert request.headers["X-Webhook-Event"] == "connection.deleted"

        envelope = json.loads(body)
        assert envelope["type"] == "connection.deleted"
        assert envelope["data"] == {"connection_id": "c-1"}
        assert envelope["id"].startswith("evt_")
        assert body == canonical_json(envelope)

    @pytest.mark.asyncio
    async def test_only_subscribed_enabled_webhooks_receive(self, repositories, clock, received):
        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        await add_webhook(repositories, "https://a.example.com/hook1", events=["connection.created"])
        await add_webhook(repositories, "https://b.example.com/hook2", events=["connection.deleted"])
        await add_webhook(repositories, "https://c.example.com/hook3", enabled=False)
        await add_webhook(repositories, "https://d.example.com/hook4", owner_id="dev-2")
        dispatcher = make_dispatcher(repositories, clock, handler)

        deliveries = await dispatcher.dispatch("connection.created", {"connection_id": "c-1"}, owner_id="dev-1")

        assert len(deliveries) == 1
        assert [r.url.host for r in received] == ["a.example.com"]

    @pytest.mark.asyncio
    async def test_no_subscribers(self, repositories, clock):
        dispatcher = make_dispatcher(repositories, clock, lambda request: httpx.Response(200))
        assert await dispatcher.dispatch(EventType.DATA_SYNCED, {}) == []

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_failure(self, repositories, clock):
        await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, lambda request: httpx.Response(500, text="boom"))

        [delivery] = await dispatcher.dispatch(EventType.CONNECTION_UPDATED, {"connection_id": "c-1"})

        assert delivery.status == "failed"
        assert delivery.http_status == 500
        assert delivery.response_body == "boom"


# =============================================================================
# Retries
# =============================================================================


class TestRetrySchedule:
    def test_next_retry_at(self):
        dispatcher = WebhookDispatcher(webhooks=object(), deliveries=object())
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)

        delays = [dispatcher.next_retry_at(n, now) for n in range(1, MAX_ATTEMPTS + 1)]
        assert [(d - now).total_seconds() if d else None for d in delays] == [60, 300, 3600, 86400, None]

    @pytest.mark.asyncio
    async def test_retries_until_terminal_failure(self, repositories, clock, received):
        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(503)

        await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, handler)
        [delivery] = await dispatcher.dispatch(EventType.CONNECTION_CREATED, {"connection_id": "c-1"})

        # Not due yet
        assert (await dispatcher.process_retries()).processed == 0

        for delay in (60, 300, 3600, 86400):
            clock[0] += delay
            summary = await dispatcher.process_retries()
            assert summary.processed == 1
            assert summary.failed == 1

        final = await repositories.deliveries.get(delivery.id)
        assert final.status == "failed"
        assert final.attempt_count == MAX_ATTEMPTS
        assert final.next_retry_at is None
        assert len(received) == MAX_ATTEMPTS

        clock[0] += 10 * 86400
        assert (await dispatcher.process_retries()).processed == 0

    @pytest.mark.asyncio
    async def test_retry_can_succeed(self, repositories, clock):
        responses = [503, 200]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(responses.pop(0))

        await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, handler)
        [delivery] = await dispatcher.dispatch(EventType.CONNECTION_CREATED, {"connection_id": "c-1"})

        clock[0] += 60
        summary = await dispatcher.process_retries()

        assert summary.delivered == 1
        stored = await repositories.deliveries.get(delivery.id)
        assert stored.status == "delivered"
        assert stored.attempt_count == 2

    @pytest.mark.asyncio
    async def test_deleted_webhook_closes_out_delivery(self, repositories, clock):
        webhook = await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, lambda request: httpx.Response(500))
        [delivery] = await dispatcher.dispatch(EventType.CONNECTION_CREATED, {"connection_id": "c-1"})
        await repositories.webhooks.delete(webhook.id)

        clock[0] += 60
        summary = await dispatcher.process_retries()

        assert summary.failed == 1
        stored = await repositories.deliveries.get(delivery.id)
        assert stored.next_retry_at is None
        clock[0] += 86400
        assert (await dispatcher.process_retries()).processed == 0

    @pytest.mark.asyncio
    async def test_test_event_ignores_subscriptions(self, repositories, clock, received):
        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        webhook = await add_webhook(repositories, "https://dev.example.com/hook1", events=["connection.deleted"])
        dispatcher = make_dispatcher(repositories, clock, handler)

        delivery = await dispatcher.send_test_event(webhook)

        assert delivery.status == "delivered"
        assert delivery.event_type == "test"
        assert json.loads(received[0].content)["data"]["webhook_id"] == webhook.id


class TestInFlightDeliveries:
    """A delivery being attempted is not picked up by the retry worker."""

    @pytest.mark.asyncio
    async def test_retry_pass_during_dispatch_skips_in_flight_delivery(self, repositories, clock, received):
        retry_passes = []

        async def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            if len(received) == 1:
                clock[0] += 5
                retry_passes.append(await dispatcher.process_retries())
            return httpx.Response(200)

        await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, handler)

        [delivery] = await dispatcher.dispatch(EventType.CONNECTION_CREATED, {"connection_id": "c-1"})

        assert retry_passes[0].processed == 0
        assert len(received) == 1
        assert delivery.status == "delivered"
        assert delivery.attempt_count == 1

    @pytest.mark.asyncio
    async def test_unrecorded_attempt_is_retried_after_lease(self, repositories, clock, received):
        outcomes = [RuntimeError("worker crashed"), httpx.Response(200)]

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, handler)
        [delivery] = await dispatcher.dispatch(EventType.CONNECTION_CREATED, {"connection_id": "c-1"})
        assert delivery.status == "pending"

        clock[0] += 1
        assert (await dispatcher.process_retries()).processed == 0

        clock[0] += dispatcher.timeout_seconds + LEASE_MARGIN_SECONDS
        summary = await dispatcher.process_retries()

        assert summary.delivered == 1
        stored = await repositories.deliveries.get(delivery.id)
        assert stored.status == "delivered"
        assert stored.attempt_count == 1
        assert stored.next_retry_at is None
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_overlapping_retry_passes_send_once(self, repositories, clock, received):
        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(503 if len(received) == 1 else 200)

        await add_webhook(repositories, "https://dev.example.com/hook1")
        dispatcher = make_dispatcher(repositories, clock, handler)
        await dispatcher.dispatch(EventType.CONNECTION_CREATED, {"connection_id": "c-1"})

        clock[0] += 60
        first, second = await asyncio.gather(dispatcher.process_retries(), dispatcher.process_retries())

        assert first.processed + second.processed == 1
        assert len(received) == 2
