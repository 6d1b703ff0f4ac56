"""
Resilience patterns: bounded retry for third-party calls

Every outbound call to a provider carries a timeout (set on the HTTP client)
and a single bounded retry budget (HTTP_MAX_RETRIES, default 1) with
exponential backoff. Authorization-code exchange is never retried because
codes are single-use.

Usage:
    @retry_upstream_operation((FHIRServerError, FHIRTimeoutError))
    async def fetch_page():
        ...
"""

import logging
from typing import Optional, Tuple, Type

import httpx
import structlog
from fhirlink.core.config import settings
from tenacity import after_log, before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

# Transport-level failures that are safe to retry for idempotent requests
HTTPX_TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
)


def retry_upstream_operation(
    exceptions: Tuple[Type[BaseException], ...],
    max_retries: Optional[int] = None,
):
    """
    Retry decorator for idempotent third-party calls.

    Args:
        exceptions: Exception types considered transient
        max_retries: Retries after the first attempt (default: HTTP_MAX_RETRIES)
    """
    retries = settings.HTTP_MAX_RETRIES if max_retries is None else max_retries
    return retry(
        retry=retry_if_exception_type(exceptions),
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )


def retry_token_refresh():
    """
    Retry decorator for refresh-token grants.

    Only transport errors are retried; an error response from the token
    endpoint is final for this attempt.
    """
    return retry_upstream_operation(HTTPX_TRANSIENT_ERRORS)

