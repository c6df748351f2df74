"""
WebhookRelay - webhook ingestion and delivery service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# Import observability modules
from relay.config import settings
from relay.errors import RateLimitExceededError, RelayError
from relay.logging_config import configure_logging
from relay.sentry_config import configure_sentry
from relay.middleware.logging import LoggingMiddleware
from relay.queue import ArqDeliveryQueue
from relay.routes.metrics import router as metrics_router
from relay.services.dispatcher import build_http_client
from relay.services.rate_limiter import rate_limiter

# Import route modules
from relay.routes.receiver import router as receiver_router
from relay.routes.webhooks import router as webhooks_router
from relay.routes.endpoints import router as endpoints_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One queue connection and one outbound client per process, handed to routes via app.state
    app.state.queue = await ArqDeliveryQueue.connect(settings.REDIS_URL)
    app.state.http_client = build_http_client()
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        await app.state.queue.close()
        await rate_limiter.close()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Receives webhooks and delivers them to configured destinations with signing and retries",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    """Render every RelayError as the standard error envelope."""
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include public receiver
app.include_router(receiver_router)

# Include management routes
app.include_router(webhooks_router)
app.include_router(endpoints_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT
    }
