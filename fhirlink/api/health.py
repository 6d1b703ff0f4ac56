"""
Health check endpoints
"""

import time
from typing import Dict

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from fhirlink.core.api_envelope import success_response
from fhirlink.core.config import settings
from fhirlink.core.database import check_database_connection
from fhirlink.core.logging import get_logger
from fhirlink.core.middleware import get_request_id
from fhirlink.services.rate_limiter import get_rate_limiter, request_identity
from pydantic import BaseModel
from redis.exceptions import RedisError

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str
    version: str
    timestamp: float


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint
    Returns 200 if the service is running
    """
    return HealthResponse(status="healthy", version=settings.APP_VERSION, timestamp=time.time())


@router.get("/ready", response_class=JSONResponse)
async def readiness_check():
    """
    Readiness check endpoint

    Redis is optional (services fall back to in-process state), so only the
    storage backend decides readiness.
    """
    checks: Dict[str, object] = {"storage_backend": settings.STORAGE_BACKEND}

    redis_client = get_rate_limiter().redis_client
    if redis_client is None:
        checks["redis"] = False
    else:
        try:
            checks["redis"] = bool(await redis_client.ping())
        except (RedisError, OSError) as e:
            logger.warning("readiness_redis_ping_failed", error=str(e))
            checks["redis"] = False

    storage_ok = True
    if settings.STORAGE_BACKEND == "postgres":
        storage_ok = await check_database_connection()
    checks["storage"] = storage_ok

    return JSONResponse(
        status_code=status.HTTP_200_OK if storage_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if storage_ok else "not_ready",
            "checks": checks,
            "timestamp": time.time(),
        },
    )


@router.get("/api/v1/rate-limit/status", response_model=dict)
async def rate_limit_status(request: Request, category: str = "default"):
    """Remaining budget for the caller without consuming a request."""
    result = await get_rate_limiter().status(request_identity(request), category)
    reset = int(time.time() + result.retry_after) if result.retry_after else None
    return success_response(
        {
            "category": category,
            "limit": result.limit,
            "remaining": result.remaining,
            "window": result.window_seconds,
            "reset": reset,
            "enforced": result.enforced,
            "backend": result.backend,
        },
        request_id=get_request_id(request),
    )
