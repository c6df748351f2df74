"""Tests for webhook admission and manual retry."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from relay.constants import SubscriptionTier
from relay.errors import (
    NotFoundError, QueueUnavailableError, QuotaExceededError,
    RateLimitExceededError, ValidationError,
)
from relay.models import Account, DeliveryRecord, DeliveryStatus
from relay.models.base import utcnow
from relay.models.delivery import AttemptResult
from relay.services.delivery_store import DeliveryStore
from relay.services.ingestion_service import IngestionService, snapshot_headers


PAYLOAD = '{"event":"invoice.paid"}'
HEADERS = {
    "content-type": "application/json",
    "user-agent": "Stripe/1.0",
    "x-request-id": "req-1",
    "authorization": "Bearer secret",
}


class DenyingRateLimiter:
    async def is_allowed(self, key, limit, window=60):
        self.call = (key, limit, window)
        return False, 30


async def receive(session_factory, queue, account_id, endpoint_id, rate_limiter=None):
    async with session_factory() as db:
        return await IngestionService(db, queue, rate_limiter).receive(account_id, endpoint_id, PAYLOAD, HEADERS)


async def count_records(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(DeliveryRecord))).scalar_one()


async def usage_of(session_factory, account_id) -> int:
    async with session_factory() as db:
        return (await db.get(Account, account_id)).webhook_usage


class TestReceive:
    async def test_admits_and_queues(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account, custom_headers=[("X-Tenant", "acme")])

        record = await receive(session_factory, queue, account.id, endpoint.id)

        assert record.status == DeliveryStatus.PENDING
        assert record.payload == PAYLOAD
        assert record.incoming_headers == {
            "content-type": "application/json",
            "user-agent": "Stripe/1.0",
            "x-request-id": "req-1",
        }
        assert await usage_of(session_factory, account.id) == 1

        job, delay = queue.jobs[0]
        assert delay == 0
        assert job.job_id == f"delivery:{record.id}:1"
        assert job.secret == endpoint.secret
        assert job.destination_url == endpoint.destination_url
        assert job.custom_headers == [("X-Tenant", "acme")]
        assert job.payload == PAYLOAD

    async def test_expiry_follows_tier_retention(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account(tier=SubscriptionTier.STARTER)
        endpoint = await make_endpoint(account)
        before = utcnow()
        record = await receive(session_factory, queue, account.id, endpoint.id)
        assert record.expires_at - before >= timedelta(days=30)
        assert record.expires_at - before < timedelta(days=30, minutes=1)

    async def test_unknown_account_and_endpoint_look_the_same(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)

        with pytest.raises(NotFoundError) as no_account:
            await receive(session_factory, queue, "missing", endpoint.id)
        with pytest.raises(NotFoundError) as no_endpoint:
            await receive(session_factory, queue, account.id, "missing")

        assert no_account.value.to_dict() == no_endpoint.value.to_dict()
        assert no_account.value.message == "Invalid webhook URL"

    async def test_endpoint_of_another_account_is_not_found(self, session_factory, queue, make_account, make_endpoint):
        owner, other = await make_account(), await make_account()
        endpoint = await make_endpoint(owner)
        with pytest.raises(NotFoundError):
            await receive(session_factory, queue, other.id, endpoint.id)

    async def test_inactive_account_or_endpoint_is_not_found(self, session_factory, queue, make_account, make_endpoint):
        disabled = await make_account(is_active=False)
        with pytest.raises(NotFoundError):
            await receive(session_factory, queue, disabled.id, (await make_endpoint(disabled)).id)

        account = await make_account()
        endpoint = await make_endpoint(account, is_active=False)
        with pytest.raises(NotFoundError):
            await receive(session_factory, queue, account.id, endpoint.id)
        assert await count_records(session_factory) == 0

    async def test_quota_boundary(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account(tier=SubscriptionTier.FREE, usage=999)
        endpoint = await make_endpoint(account)

        await receive(session_factory, queue, account.id, endpoint.id)
        assert await usage_of(session_factory, account.id) == 1000

        with pytest.raises(QuotaExceededError) as exc:
            await receive(session_factory, queue, account.id, endpoint.id)

        assert exc.value.details == {"tier": "free", "limit": 1000, "usage": 1000}
        assert "free tier allows 1000 webhooks per month" in exc.value.message
        assert await count_records(session_factory) == 1
        assert await usage_of(session_factory, account.id) == 1000
        assert len(queue.jobs) == 1

    async def test_unlimited_tier_has_no_quota(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account(tier=SubscriptionTier.ENTERPRISE, usage=10_000_000)
        endpoint = await make_endpoint(account)
        await receive(session_factory, queue, account.id, endpoint.id)
        assert await usage_of(session_factory, account.id) == 10_000_001

    async def test_usage_resets_when_month_rolls_over(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account(usage=1000, usage_reset_at=utcnow() - timedelta(minutes=1))
        endpoint = await make_endpoint(account)

        await receive(session_factory, queue, account.id, endpoint.id)

        async with session_factory() as db:
            loaded = await db.get(Account, account.id)
            assert loaded.webhook_usage == 1
            assert loaded.usage_reset_at.day == 1

    async def test_rate_limited_request_leaves_nothing_behind(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account(tier=SubscriptionTier.BUSINESS)
        endpoint = await make_endpoint(account)
        limiter = DenyingRateLimiter()

        with pytest.raises(RateLimitExceededError) as exc:
            await receive(session_factory, queue, account.id, endpoint.id, rate_limiter=limiter)

        assert exc.value.retry_after == 30
        assert limiter.call == (f"endpoint:{endpoint.id}", 200, 60)
        assert await count_records(session_factory) == 0
        assert await usage_of(session_factory, account.id) == 0

    async def test_enqueue_failure_is_surfaced(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)
        queue.fail = True

        with pytest.raises(QueueUnavailableError):
            await receive(session_factory, queue, account.id, endpoint.id)

        # Record and usage are already committed; the record waits as pending
        assert await count_records(session_factory) == 1
        assert await usage_of(session_factory, account.id) == 1


class TestManualRetry:
    async def test_failed_record_is_requeued(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)
        record = await receive(session_factory, queue, account.id, endpoint.id)
        async with session_factory() as db:
            await DeliveryStore(db).record_attempt(record.id, AttemptResult(success=False, error_message="down"), None)

        async with session_factory() as db:
            retried = await IngestionService(db, queue).retry(account.id, record.id)

        assert retried.status == DeliveryStatus.PENDING
        job, delay = queue.jobs[-1]
        assert job.manual is True
        assert job.attempt_number == 2
        assert job.job_id == f"manual:{record.id}:2"

    async def test_delivered_record_is_rejected(self, session_factory, queue, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)
        record = await receive(session_factory, queue, account.id, endpoint.id)
        async with session_factory() as db:
            await DeliveryStore(db).record_attempt(record.id, AttemptResult(success=True, status_code=200), None)

        async with session_factory() as db:
            with pytest.raises(ValidationError):
                await IngestionService(db, queue).retry(account.id, record.id)

    async def test_unknown_record_is_not_found(self, session_factory, queue, make_account):
        account = await make_account()
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await IngestionService(db, queue).retry(account.id, "missing")


def test_snapshot_keeps_selected_headers():
    snapshot = snapshot_headers({
        "Content-Type": "application/json",
        "X-Forwarded-For": "10.0.0.1",
        "X-GitHub-Event": "push",
        "Cookie": "a=b",
        "Host": "relay.example.com",
    })
    assert snapshot == {
        "content-type": "application/json",
        "x-forwarded-for": "10.0.0.1",
        "x-github-event": "push",
    }
