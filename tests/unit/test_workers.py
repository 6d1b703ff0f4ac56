"""
Unit tests for the background maintenance worker.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fhirlink.services.webhook_dispatcher import RetrySummary
from fhirlink.services.workers import WebhookRetryWorker


@pytest.fixture
def dispatcher():
    mock = MagicMock()
    mock.process_retries = AsyncMock(return_value=RetrySummary())
    return mock


@pytest.fixture
def widgets():
    mock = MagicMock()
    mock.cleanup_expired = AsyncMock(return_value=0)
    return mock


@pytest.fixture
def limiter():
    mock = MagicMock()
    mock.cleanup_memory = MagicMock(return_value=0)
    return mock


@pytest.fixture
def worker(dispatcher, widgets, limiter):
    return WebhookRetryWorker(dispatcher=dispatcher, widgets=widgets, limiter=limiter, interval_seconds=3600)


class TestWebhookRetryWorker:
    @pytest.mark.asyncio
    async def test_run_once_runs_every_step(self, worker, dispatcher, widgets, limiter):
        await worker.run_once()

        dispatcher.process_retries.assert_awaited_once()
        widgets.cleanup_expired.assert_awaited_once()
        limiter.cleanup_memory.assert_called_once()

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_the_rest(self, worker, dispatcher, widgets, limiter):
        dispatcher.process_retries.side_effect = RuntimeError("database unavailable")

        await worker.run_once()

        widgets.cleanup_expired.assert_awaited_once()
        limiter.cleanup_memory.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, worker, dispatcher):
        await worker.start()
        assert worker.running is True

        for _ in range(10):
            if dispatcher.process_retries.await_count:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert worker.running is False
        assert dispatcher.process_retries.await_count == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, worker):
        await worker.start()
        task = worker._task
        await worker.start()

        assert worker._task is task
        await worker.stop()
