"""
Custom middleware for security headers and request tracing
"""

import time
import uuid

import structlog
from fastapi import Request
from fhirlink.core.logging import get_logger
from starlette.middleware.base import BaseHTTPMiddleware

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        return response


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Bind a request id into the log context and echo it back
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration_seconds=time.time() - start_time,
                error=str(exc),
                exc_info=True,
            )
            raise

        # Query strings are not logged: callbacks carry authorization codes
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=round(time.time() - start_time, 4),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")
