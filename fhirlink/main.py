"""
fhirlink API

Provider integration core: OAuth connections to health data providers,
encrypted token storage with proactive refresh, FHIR record fetching,
and signed webhooks for developers.
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fhirlink.api import api_keys, connections, health, oauth, webhooks, widget
from fhirlink.core.api_envelope import error_response
from fhirlink.core.config import settings
from fhirlink.core.database import async_engine, create_redis_client
from fhirlink.core.exceptions import FhirLinkError, RateLimitExceeded
from fhirlink.core.logging import configure_logging, get_logger
from fhirlink.core.middleware import RequestTracingMiddleware, SecurityHeadersMiddleware, get_request_id
from fhirlink.services.rate_limiter import get_rate_limiter
from fhirlink.services.state_store import get_state_store
from fhirlink.services.token_refresh import TokenRefreshScheduler
from fhirlink.services.workers import WebhookRetryWorker

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="""
    Connect patients' health data providers and read their records over FHIR.

    ## Authentication
    - Developer endpoints: `X-API-Key: fl_k_...`
    - Key management: `Authorization: Bearer <admin token>`

    ## Rate limiting
    Every limited response carries `X-RateLimit-Limit` and `X-RateLimit-Remaining`.
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# =============================================================================
# Exception handlers
# =============================================================================


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code, "retryAfter": exc.retry_after},
        headers=exc.headers,
    )


@app.exception_handler(FhirLinkError)
async def fhirlink_error_handler(request: Request, exc: FhirLinkError):
    if exc.status_code >= 500:
        logger.error("request_error", error_code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            exc.code,
            exc.message,
            details=exc.details,
            request_id=get_request_id(request),
        ),
    )


# Add custom middleware (order matters!)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestTracingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
)

# Include routers
app.include_router(health.router)
app.include_router(widget.router)
app.include_router(oauth.router)
app.include_router(oauth.callback_router)
app.include_router(connections.router)
app.include_router(webhooks.router)
app.include_router(api_keys.router)


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info(
        "application_startup",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        storage_backend=settings.STORAGE_BACKEND,
    )

    redis_client = await create_redis_client()
    app.state.redis = redis_client
    await get_rate_limiter().connect(redis_client)
    await get_state_store().connect(redis_client)

    if settings.STORAGE_BACKEND == "postgres":
        from fhirlink.repositories.sql import create_schema

        await create_schema()

    if settings.BACKGROUND_TASKS_ENABLED:
        app.state.token_refresh_scheduler = TokenRefreshScheduler()
        await app.state.token_refresh_scheduler.start()
        app.state.webhook_retry_worker = WebhookRetryWorker()
        await app.state.webhook_retry_worker.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info("application_shutdown", app_name=settings.APP_NAME, version=settings.APP_VERSION)

    for name in ("token_refresh_scheduler", "webhook_retry_worker"):
        worker = getattr(app.state, name, None)
        if worker:
            await worker.stop()

    await get_rate_limiter().disconnect()
    await get_state_store().disconnect()
    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        await redis_client.aclose()

    if settings.STORAGE_BACKEND == "postgres":
        await async_engine.dispose()


if __name__ == "__main__":
    uvicorn.run(
        "fhirlink.main:app",
        host="0.0.0.0",  # nosec B104 - intentional for Docker container
        port=8000,
        reload=settings.DEBUG,
    )
