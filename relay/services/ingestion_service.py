"""
Ingestion service: the receiver's admission path and manual retries.

A webhook is admitted in a single transaction that creates the pending
record and counts it against the monthly quota. A request rejected for any
reason leaves no record behind and consumes no quota.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from relay.constants import RATE_LIMITS, RATE_LIMIT_WINDOW_SECONDS, SNAPSHOT_HEADERS
from relay.errors import (
    NotFoundError, QuotaExceededError, QueueUnavailableError,
    RateLimitExceededError, ValidationError,
)
from relay.logging_config import get_logger
from relay.models.base import utcnow
from relay.models.delivery import DeliveryRecord, DeliveryStatus
from relay.queue import DeliveryJob, DeliveryQueue
from relay.routes.metrics import (
    track_rate_limit_exceeded, track_webhook_received, track_webhook_rejected,
)
from relay.sentry_config import capture_exception
from relay.services.account_service import AccountService
from relay.services.delivery_store import DeliveryStore
from relay.services.endpoint_service import EndpointService
from relay.services.rate_limiter import RateLimiter

INVALID_WEBHOOK_URL = "Invalid webhook URL"


def snapshot_headers(headers) -> dict[str, str]:
    """
    Keep the incoming headers worth storing with a record.
    
    content-type, user-agent and x-forwarded-for, plus every x-* header.
    Names are lower-cased.
    """
    snapshot = {}
    for name, value in headers.items():
        key = name.lower()
        if key in SNAPSHOT_HEADERS or key.startswith("x-"):
            snapshot[key] = value
    return snapshot


class IngestionService:
    """Admits webhooks and hands them to the delivery queue."""
    
    def __init__(
        self,
        db: AsyncSession,
        queue: DeliveryQueue,
        rate_limiter: RateLimiter | None = None
    ):
        self.db = db
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.accounts = AccountService(db)
        self.endpoints = EndpointService(db)
        self.store = DeliveryStore(db)
    
    async def receive(
        self,
        account_id: str,
        endpoint_id: str,
        payload: str,
        headers
    ) -> DeliveryRecord:
        """
        Admit one webhook.
        
        Args:
            account_id: Account UUID from the receiver URL
            endpoint_id: Endpoint UUID from the receiver URL
            payload: Raw request body, stored verbatim
            headers: Incoming request headers
            
        Returns:
            The pending DeliveryRecord
            
        Raises:
            NotFoundError: account or endpoint missing or inactive
            RateLimitExceededError: endpoint over its per-minute limit
            QuotaExceededError: monthly quota reached
            QueueUnavailableError: record stored but the job was not queued
        """
        log = get_logger(account_id=account_id, endpoint_id=endpoint_id)
        
        account = await self.accounts.get_active(account_id)
        if account is None:
            track_webhook_rejected("not_found")
            log.info("webhook_rejected", reason="account_not_found")
            raise NotFoundError(INVALID_WEBHOOK_URL)
        
        endpoint = await self.endpoints.resolve(account_id, endpoint_id, with_secret=True)
        if endpoint is None:
            track_webhook_rejected("not_found")
            log.info("webhook_rejected", reason="endpoint_not_found")
            raise NotFoundError(INVALID_WEBHOOK_URL)
        
        tier = account.subscription_tier.value
        
        if self.rate_limiter is not None:
            allowed, retry_after = await self.rate_limiter.is_allowed(
                f"endpoint:{endpoint.id}",
                RATE_LIMITS[account.subscription_tier],
                RATE_LIMIT_WINDOW_SECONDS
            )
            if not allowed:
                track_rate_limit_exceeded(tier)
                track_webhook_rejected("rate_limited")
                log.warning("webhook_rejected", reason="rate_limited", retry_after=retry_after)
                raise RateLimitExceededError(retry_after)
        
        now = utcnow()
        await self.accounts.reset_usage_if_due(account, now)
        
        if not await self.accounts.has_quota_remaining(account.id):
            track_webhook_rejected("quota_exceeded")
            log.warning("webhook_rejected", reason="quota_exceeded", tier=tier)
            raise QuotaExceededError(tier, account.webhook_quota, account.webhook_usage)
        
        record = await self.store.create(
            account_id=account.id,
            endpoint_id=endpoint.id,
            payload=payload,
            headers=snapshot_headers(headers),
            expires_at=self.accounts.expires_at_for(account, now),
            now=now
        )
        # Count and create together; a concurrent request may have taken the last slot
        if not await self.accounts.increment_usage(account.id):
            await self.db.rollback()
            track_webhook_rejected("quota_exceeded")
            log.warning("webhook_rejected", reason="quota_exceeded", tier=tier)
            raise QuotaExceededError(tier, account.webhook_quota, account.webhook_quota)
        await self.db.commit()
        
        log = log.bind(delivery_id=record.id)
        job = DeliveryJob.for_delivery(record, endpoint)
        try:
            await self.queue.enqueue(job)
        except Exception as e:
            log.error("delivery_enqueue_failed", error=str(e))
            capture_exception(e)
            raise QueueUnavailableError(
                "Webhook stored but could not be queued for delivery",
                details={"webhookId": record.id}
            )
        
        track_webhook_received(tier)
        log.info("webhook_received", tier=tier, payload_bytes=len(payload))
        return record
    
    async def retry(self, account_id: str, delivery_id: str) -> DeliveryRecord:
        """
        Manually re-queue a delivery that has not succeeded.
        
        The record goes back to pending and keeps its attempt history. The
        job carries the current endpoint configuration. If an automatic retry
        is still queued, whichever of the two jobs runs first takes the next
        attempt and the dispatcher discards the other.

        Raises:
            NotFoundError: record not found, or its endpoint is gone or deleted
            ValidationError: record already delivered
            QueueUnavailableError: the job could not be queued
        """
        log = get_logger(account_id=account_id, delivery_id=delivery_id)
        
        record = await self.store.get(delivery_id, account_id=account_id)
        if record is None:
            raise NotFoundError("Webhook not found")
        if record.status == DeliveryStatus.SUCCESS:
            raise ValidationError("Webhook already delivered successfully")
        
        endpoint = await self.endpoints.get_by_id(record.endpoint_id, with_secret=True)
        if endpoint is None or endpoint.account_id != account_id or not endpoint.is_active:
            raise NotFoundError("Endpoint not found")
        
        record = await self.store.reset_for_manual_retry(delivery_id, account_id)
        if record is None:
            raise NotFoundError("Webhook not found")
        
        job = DeliveryJob.for_delivery(record, endpoint, manual=True)
        try:
            await self.queue.enqueue(job)
        except Exception as e:
            log.error("manual_retry_enqueue_failed", error=str(e))
            capture_exception(e)
            raise QueueUnavailableError(
                "Retry could not be queued",
                details={"webhookId": record.id}
            )
        
        log.info("manual_retry_queued", attempt_number=job.attempt_number)
        return record
