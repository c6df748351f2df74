"""
Service dependencies for FastAPI routes.

The delivery queue and the outbound HTTP client are created once in the
application lifespan and read from app.state, so routes never touch a
module-level connection.
"""
import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from relay.config import settings
from relay.database import AsyncSessionLocal, get_db
from relay.queue import DeliveryQueue
from relay.services.dispatcher import Dispatcher
from relay.services.ingestion_service import IngestionService
from relay.services.rate_limiter import RateLimiter, rate_limiter


def get_queue(request: Request) -> DeliveryQueue:
    return request.app.state.queue


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_rate_limiter() -> RateLimiter | None:
    """Receiver rate limiter, or None when disabled."""
    return rate_limiter if settings.RATE_LIMIT_ENABLED else None


def get_ingestion_service(
    db: AsyncSession = Depends(get_db),
    queue: DeliveryQueue = Depends(get_queue),
    limiter: RateLimiter | None = Depends(get_rate_limiter)
) -> IngestionService:
    return IngestionService(db, queue, rate_limiter=limiter)


def get_dispatcher(
    queue: DeliveryQueue = Depends(get_queue),
    http_client: httpx.AsyncClient = Depends(get_http_client)
) -> Dispatcher:
    """Dispatcher for sends made from the API, such as endpoint test deliveries."""
    return Dispatcher(AsyncSessionLocal, queue, http_client)
