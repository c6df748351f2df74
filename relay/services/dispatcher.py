"""
Delivery dispatcher.

Processes one delivery job: re-reads the record, signs and sends the
payload, persists the attempt, updates endpoint statistics and schedules the
next retry. Every job ends in exactly one DispatchOutcome; a failure inside
the dispatcher is recorded against the delivery, never lost. When not even
the failure can be persisted, DeliveryNotRecorded is raised so the queue runs
the job again.

A job is only acted on while its attempt number is the record's next one, so
a superseded job (for example a scheduled retry overtaken by a manual retry)
is discarded and a record never has two retry chains.

Each phase runs in its own short session so no database connection is held
while waiting on the destination.
"""
import enum
import time

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.config import settings
from relay.errors import ConfigurationMissing, DeliveryFailure, DeliveryNotRecorded
from relay.logging_config import get_logger
from relay.models.delivery import AttemptResult
from relay.queue import DeliveryJob, DeliveryQueue, RetryPolicy
from relay.routes.metrics import (
    track_delivery_attempt, track_delivery_failed, track_retry_scheduled,
)
from relay.sentry_config import capture_exception
from relay.services.delivery_store import DeliveryStore, RecordedAttempt
from relay.services.endpoint_service import EndpointService
from relay.services.signing import sign
from relay.services.statistics_service import StatisticsService

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
ID_HEADER = "X-Webhook-ID"
ATTEMPT_HEADER = "X-Webhook-Attempt"

RESERVED_HEADERS = frozenset(
    name.lower() for name in (
        "Content-Type", "User-Agent",
        SIGNATURE_HEADER, TIMESTAMP_HEADER, ID_HEADER, ATTEMPT_HEADER,
    )
)


def build_http_client() -> httpx.AsyncClient:
    """Outbound client: fixed timeout, redirects followed up to the cap."""
    return httpx.AsyncClient(
        timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        follow_redirects=True,
        max_redirects=settings.WEBHOOK_MAX_REDIRECTS,
    )


class DispatchOutcome(str, enum.Enum):
    """Result of processing one job."""
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    DISCARDED = "discarded"


def build_headers(
    payload: str,
    secret: str,
    delivery_id: str,
    attempt_number: int,
    custom_headers: list[tuple[str, str]] | None = None,
    user_agent: str | None = None,
    timestamp_ms: int | None = None
) -> dict[str, str]:
    """
    Outbound request headers for one attempt.
    
    Custom headers are added first-come and can never replace the relay's
    own headers.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent or settings.WEBHOOK_USER_AGENT,
        SIGNATURE_HEADER: sign(payload, secret),
        TIMESTAMP_HEADER: str(timestamp_ms),
        ID_HEADER: delivery_id,
        ATTEMPT_HEADER: str(attempt_number),
    }
    for name, value in custom_headers or []:
        if name.lower() in RESERVED_HEADERS:
            continue
        headers.setdefault(name, value)
    return headers


class Dispatcher:
    """
    Delivery worker logic.
    
    Usage:
        dispatcher = Dispatcher(AsyncSessionLocal, queue, httpx.AsyncClient())
        outcome = await dispatcher.process(job)
    """
    
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: DeliveryQueue,
        http_client: httpx.AsyncClient,
        user_agent: str | None = None,
        timeout_seconds: float | None = None
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.http_client = http_client
        self.user_agent = user_agent or settings.WEBHOOK_USER_AGENT
        self.timeout_seconds = timeout_seconds or settings.WEBHOOK_TIMEOUT_SECONDS
    
    async def process(self, job: DeliveryJob) -> DispatchOutcome:
        """
        Process one job to a single outcome.
        
        Unexpected errors are logged, reported, and recorded as a failed
        attempt under the job's retry policy.

        Raises:
            DeliveryNotRecorded: the failure itself could not be persisted
        """
        log = get_logger(
            delivery_id=job.delivery_id,
            endpoint_id=job.endpoint_id,
            job_attempt=job.attempt_number,
        )
        try:
            return await self._process(job, log)
        except Exception as e:
            log.exception("dispatch_internal_error", error=str(e))
            capture_exception(e)
            return await self._fail_internal(job, f"Internal error: {e}", log)
    
    async def _process(self, job: DeliveryJob, log) -> DispatchOutcome:
        # Phase 1: current state
        async with self.session_factory() as db:
            record = await DeliveryStore(db).get(job.delivery_id)
            if record is None:
                log.info("delivery_discarded", reason="record_not_found")
                return DispatchOutcome.DISCARDED
            if record.is_terminal:
                log.info("delivery_discarded", reason="already_terminal", status=record.status.value)
                return DispatchOutcome.DISCARDED
            attempt_number = record.retry_count + 1
            if job.attempt_number != attempt_number:
                log.info("delivery_discarded", reason="stale_job", next_attempt=attempt_number)
                return DispatchOutcome.DISCARDED
            payload = record.payload
            endpoint = await EndpointService(db).get_by_id(job.endpoint_id, with_secret=True)
            # A deleted endpoint is kept as an inactive row
            if endpoint is None or not endpoint.is_active:
                destination = None
            else:
                destination = (
                    endpoint.destination_url,
                    endpoint.secret,
                    endpoint.header_pairs,
                    endpoint.retry_policy,
                )
        
        log = log.bind(attempt_number=attempt_number)
        
        if destination is None:
            error = ConfigurationMissing("Endpoint not found")
            log.warning("delivery_configuration_missing")
            result = AttemptResult(success=False, error_message=error.message)
            recorded = await self._record(job, result, None, log)
            if recorded is None:
                return DispatchOutcome.DISCARDED
            track_delivery_failed("configuration_missing")
            return DispatchOutcome.FAILED
        
        url, secret, custom_headers, policy = destination
        
        # Phase 2: send
        result = await self.send(job.delivery_id, url, secret, custom_headers, payload, attempt_number, log)
        track_delivery_attempt(result.success, (result.response_time_ms or 0) / 1000)

        # Phase 3: persist
        recorded = await self._record(job, result, policy, log)
        if recorded is None:
            return DispatchOutcome.DISCARDED
        
        await self._update_statistics(job.endpoint_id, result, log)
        
        if result.success:
            log.info("delivery_succeeded", status_code=result.status_code, response_time_ms=result.response_time_ms)
            return DispatchOutcome.DELIVERED
        
        if recorded.retry_scheduled:
            await self._schedule_retry(job, recorded, log)
            return DispatchOutcome.RETRY_SCHEDULED
        
        track_delivery_failed("retries_exhausted")
        log.warning("delivery_failed", error=result.error_message, attempts=recorded.record.retry_count)
        return DispatchOutcome.FAILED
    
    async def send(
        self,
        delivery_id: str,
        url: str,
        secret: str,
        custom_headers: list[tuple[str, str]],
        payload: str,
        attempt_number: int = 1,
        log=None
    ) -> AttemptResult:
        """
        Sign and POST the payload once. Never raises for delivery errors.

        Nothing is persisted here; the endpoint test route calls this
        directly to send a one-off signed request.
        """
        log = log or get_logger(delivery_id=delivery_id)
        headers = build_headers(
            payload,
            secret,
            delivery_id,
            attempt_number,
            custom_headers=custom_headers,
            user_agent=self.user_agent
        )
        started = time.perf_counter()
        try:
            response = await self._post(url, payload, headers)
        except DeliveryFailure as e:
            elapsed = time.perf_counter() - started
            log.info("delivery_attempt_failed", error=e.message, status_code=e.response_status)
            return AttemptResult(
                success=False,
                request_headers=headers,
                status_code=e.response_status,
                response_body=e.response_body,
                response_time_ms=int(elapsed * 1000),
                error_message=e.message,
            )
        elapsed = time.perf_counter() - started
        return AttemptResult(
            success=True,
            request_headers=headers,
            status_code=response.status_code,
            response_body=response.text,
            response_time_ms=int(elapsed * 1000),
        )
    
    async def _post(self, url: str, payload: str, headers: dict[str, str]) -> httpx.Response:
        """
        POST and classify the response.
        
        Raises:
            DeliveryFailure: non-2xx, timeout, too many redirects or any
                transport error
        """
        try:
            response = await self.http_client.post(
                url,
                content=payload.encode("utf-8"),
                headers=headers,
                timeout=self.timeout_seconds
            )
        except httpx.TimeoutException:
            raise DeliveryFailure(f"Request timed out after {self.timeout_seconds:g}s")
        except httpx.TooManyRedirects:
            raise DeliveryFailure("Too many redirects")
        except httpx.InvalidURL as e:
            raise DeliveryFailure(f"Invalid destination URL: {e}")
        except httpx.RequestError as e:
            raise DeliveryFailure(f"Request failed: {e}")
        
        if not response.is_success:
            raise DeliveryFailure(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                response_body=response.text
            )
        return response
    
    async def _record(
        self,
        job: DeliveryJob,
        result: AttemptResult,
        policy: RetryPolicy | None,
        log
    ) -> RecordedAttempt | None:
        async with self.session_factory() as db:
            recorded = await DeliveryStore(db).record_attempt(
                job.delivery_id, result, policy, attempt_number=job.attempt_number
            )
        if recorded is None:
            log.info("attempt_not_recorded", reason="record_gone_terminal_or_superseded")
        return recorded
    
    async def _update_statistics(self, endpoint_id: str, result: AttemptResult, log):
        try:
            async with self.session_factory() as db:
                await StatisticsService(db).record(
                    endpoint_id,
                    success=result.success,
                    latency_ms=result.response_time_ms or 0
                )
        except Exception as e:
            # Statistics never change the delivery outcome
            log.error("statistics_update_failed", error=str(e))
            capture_exception(e)
    
    async def _schedule_retry(self, job: DeliveryJob, recorded: RecordedAttempt, log):
        next_job = job.model_copy(update={
            "attempt_number": recorded.record.retry_count + 1,
            "manual": False,
        })
        track_retry_scheduled()
        log.info(
            "delivery_retry_scheduled",
            next_attempt=next_job.attempt_number,
            delay_ms=recorded.retry_delay_ms,
        )
        try:
            await self.queue.enqueue(next_job, delay_ms=recorded.retry_delay_ms)
        except Exception as e:
            # The record stays retrying with next_retry_at set
            log.error("retry_enqueue_failed", error=str(e))
            capture_exception(e)
    
    async def _fail_internal(self, job: DeliveryJob, message: str, log) -> DispatchOutcome:
        """
        Record an internal failure so the job still ends in an outcome.

        Raises:
            DeliveryNotRecorded: the store is unreachable too; the job has to
                be run again rather than completed
        """
        result = AttemptResult(success=False, error_message=message)
        try:
            recorded = await self._record(job, result, job.retry_policy, log)
        except Exception as e:
            log.exception("dispatch_failure_not_recorded", error=str(e))
            capture_exception(e)
            raise DeliveryNotRecorded(message, details={"deliveryId": job.delivery_id}) from e
        if recorded is None:
            return DispatchOutcome.DISCARDED
        if recorded.retry_scheduled:
            await self._schedule_retry(job, recorded, log)
            return DispatchOutcome.RETRY_SCHEDULED
        track_delivery_failed("internal_error")
        return DispatchOutcome.FAILED
