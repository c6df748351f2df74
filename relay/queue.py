"""
Delivery queue.

A delivery job carries the record id, a snapshot of the endpoint
configuration and the raw payload. Queue backends:

- ArqDeliveryQueue: durable, Redis-backed; arq hands jobs to its workers
  and re-runs jobs interrupted by a worker crash.
- MemoryDeliveryQueue: in-process, delay-aware, for local runs and tests.

Neither backend promises exactly-once handoff; the dispatcher re-checks the
record status and attempt count before sending.
"""
import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from datetime import timedelta

import structlog
from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from relay.constants import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_INTERVALS_MS, MAX_RETRIES_LIMIT

logger = structlog.get_logger()

# arq function name executed by relay.worker
DELIVER_FUNCTION = "deliver_webhook"


class RetryPolicy(BaseModel):
    """
    Per-endpoint retry policy.
    
    intervals_ms[i] is the delay before retry i+1. The table is looked up
    literally, never derived, so schedules can be arbitrary.
    """
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=MAX_RETRIES_LIMIT)
    intervals_ms: list[int] = Field(default_factory=lambda: list(DEFAULT_RETRY_INTERVALS_MS))

    def delay_for(self, retries_done: int) -> int | None:
        """
        Delay before the next retry, or None when the budget is exhausted.
        
        Args:
            retries_done: Retries already made (attempts so far minus one)
        """
        if retries_done < 0:
            retries_done = 0
        if retries_done >= self.max_retries or retries_done >= len(self.intervals_ms):
            return None
        return self.intervals_ms[retries_done]


class DeliveryJob(BaseModel):
    """Work item handed to the dispatcher."""
    delivery_id: str
    endpoint_id: str
    account_id: str
    destination_url: str
    secret: str
    custom_headers: list[tuple[str, str]] = Field(default_factory=list)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    payload: str
    attempt_number: int = 1
    manual: bool = False

    @classmethod
    def for_delivery(cls, record, endpoint, manual: bool = False) -> "DeliveryJob":
        """Snapshot an endpoint (loaded with its secret) for a delivery record."""
        return cls(
            delivery_id=record.id,
            endpoint_id=endpoint.id,
            account_id=record.account_id,
            destination_url=endpoint.destination_url,
            secret=endpoint.secret,
            custom_headers=endpoint.header_pairs,
            retry_policy=endpoint.retry_policy,
            payload=record.payload,
            attempt_number=record.retry_count + 1,
            manual=manual,
        )

    @property
    def job_id(self) -> str:
        """Deterministic per (record, attempt) so one attempt is never queued twice."""
        prefix = "manual" if self.manual else "delivery"
        return f"{prefix}:{self.delivery_id}:{self.attempt_number}"


class QueueClosed(Exception):
    """Raised by dequeue once the queue has been closed."""


class DeliveryQueue(ABC):
    """
    Producer side of the queue, injected into the receiver and the dispatcher.

    How jobs reach a dispatcher depends on the backend. arq hands each job to
    a worker function itself (relay.worker.WorkerSettings); in-process
    backends implement ConsumableDeliveryQueue and are drained by WorkerPool.
    """

    @abstractmethod
    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> str:
        """Schedule a job no earlier than now + delay_ms. Returns the job id."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""


class ConsumableDeliveryQueue(DeliveryQueue):
    """A queue whose consumers pull jobs with dequeue()."""

    @abstractmethod
    async def dequeue(self) -> DeliveryJob:
        """
        Block until a job is ready and hand it to exactly one caller.

        Raises:
            QueueClosed: once the queue has been closed
        """


class ArqDeliveryQueue(DeliveryQueue):
    """Durable queue backed by arq/Redis."""

    def __init__(self, pool: ArqRedis, owns_pool: bool = True):
        self._pool = pool
        self._owns_pool = owns_pool

    @classmethod
    async def connect(cls, redis_url: str) -> "ArqDeliveryQueue":
        pool = await create_pool(RedisSettings.from_dsn(redis_url))
        return cls(pool)

    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> str:
        defer_by = timedelta(milliseconds=delay_ms) if delay_ms > 0 else None
        arq_job = await self._pool.enqueue_job(
            DELIVER_FUNCTION,
            job.model_dump(mode="json"),
            _job_id=job.job_id,
            _defer_by=defer_by,
        )
        if arq_job is None:
            # arq refuses a job id that is already queued or has a kept result
            logger.info("delivery_job_already_queued", job_id=job.job_id, delivery_id=job.delivery_id)
            return job.job_id
        logger.info(
            "delivery_job_enqueued",
            job_id=arq_job.job_id,
            delivery_id=job.delivery_id,
            attempt_number=job.attempt_number,
            delay_ms=delay_ms,
        )
        return arq_job.job_id

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.aclose()


class MemoryDeliveryQueue(ConsumableDeliveryQueue):
    """
    In-process delayed queue.
    
    Jobs are ordered by ready time. Each job is popped under the condition
    lock, so no two consumers ever receive the same job. Not durable.
    """

    def __init__(self):
        self._heap: list[tuple[float, int, DeliveryJob]] = []
        self._job_ids: set[str] = set()
        self._counter = itertools.count()
        self._cond = asyncio.Condition()
        self._closed = False

    def __len__(self) -> int:
        return len(self._heap)

    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> str:
        async with self._cond:
            if self._closed:
                raise QueueClosed("queue is closed")
            if job.job_id in self._job_ids:
                logger.info("delivery_job_already_queued", job_id=job.job_id)
                return job.job_id
            ready_at = time.monotonic() + max(delay_ms, 0) / 1000
            heapq.heappush(self._heap, (ready_at, next(self._counter), job))
            self._job_ids.add(job.job_id)
            self._cond.notify_all()
        return job.job_id

    async def dequeue(self) -> DeliveryJob:
        async with self._cond:
            while True:
                if self._closed:
                    raise QueueClosed("queue is closed")
                if not self._heap:
                    await self._cond.wait()
                    continue
                ready_at, _, job = self._heap[0]
                wait = ready_at - time.monotonic()
                if wait <= 0:
                    heapq.heappop(self._heap)
                    self._job_ids.discard(job.job_id)
                    return job
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
