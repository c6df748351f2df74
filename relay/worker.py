"""
ARQ background worker for the webhook relay.

The dispatcher pool: each arq job delivers one attempt of one webhook.
Run with 'arq relay.worker.WorkerSettings'; max_jobs is the pool size.

WorkerPool runs the same dispatcher over an in-process MemoryDeliveryQueue
for local runs without Redis.
"""
import asyncio

import structlog
from arq import Retry, cron
from arq.connections import RedisSettings

from relay.config import settings
from relay.database import AsyncSessionLocal
from relay.errors import DeliveryNotRecorded
from relay.logging_config import configure_logging
from relay.queue import (
    ArqDeliveryQueue, ConsumableDeliveryQueue, DeliveryJob, QueueClosed,
)
from relay.sentry_config import configure_sentry
from relay.services.delivery_store import DeliveryStore
from relay.services.dispatcher import Dispatcher, DispatchOutcome, build_http_client

logger = structlog.get_logger()

# Back-off before re-running a job whose outcome could not be stored
UNRECORDED_RETRY_SECONDS = 30


async def deliver_webhook(ctx: dict, job_data: dict) -> str:
    """
    Deliver one attempt.

    Delivery failures are retried by scheduling a new job, so this only
    raises (arq Retry) when the outcome could not be stored at all.
    """
    job = DeliveryJob.model_validate(job_data)
    job_try = ctx.get("job_try", 1)
    try:
        outcome = await ctx["dispatcher"].process(job)
    except DeliveryNotRecorded as e:
        logger.warning(
            "delivery_job_requeued",
            delivery_id=job.delivery_id,
            job_try=job_try,
            error=e.message,
        )
        raise Retry(defer=job_try * UNRECORDED_RETRY_SECONDS)
    logger.info(
        "delivery_job_finished",
        delivery_id=job.delivery_id,
        job_try=job_try,
        outcome=outcome.value,
    )
    return outcome.value


async def purge_expired_deliveries(ctx: dict) -> int:
    """Delete delivery records past their retention."""
    async with AsyncSessionLocal() as db:
        deleted = await DeliveryStore(db).purge_expired()
    if deleted:
        logger.info("expired_deliveries_purged", count=deleted)
    return deleted


async def startup(ctx: dict):
    configure_logging()
    configure_sentry()
    ctx["http_client"] = build_http_client()
    # Retries go back through the worker's own Redis pool
    ctx["queue"] = ArqDeliveryQueue(ctx["redis"], owns_pool=False)
    ctx["dispatcher"] = Dispatcher(AsyncSessionLocal, ctx["queue"], ctx["http_client"])
    logger.info("worker_started", concurrency=settings.WORKER_CONCURRENCY)


async def shutdown(ctx: dict):
    await ctx["http_client"].aclose()
    logger.info("worker_stopped")


class WorkerPool:
    """
    Fixed-size pool of dispatcher loops over a consumable queue.
    
    Usage:
        pool = WorkerPool(MemoryDeliveryQueue(), dispatcher, concurrency=5)
        pool.start()
        ...
        await pool.stop()
    """
    
    def __init__(
        self,
        queue: ConsumableDeliveryQueue,
        dispatcher: Dispatcher,
        concurrency: int = None,
        requeue_delay_ms: int = UNRECORDED_RETRY_SECONDS * 1000
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.requeue_delay_ms = requeue_delay_ms
        self.outcomes: dict[DispatchOutcome, int] = {outcome: 0 for outcome in DispatchOutcome}
        self.requeued = 0
        self._tasks: list[asyncio.Task] = []
    
    def start(self):
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"dispatcher-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self.concurrency)
    
    async def _run(self, worker_id: int):
        while True:
            try:
                job = await self.queue.dequeue()
            except QueueClosed:
                return
            # process() handles delivery errors; one bad job never stops the loop
            try:
                outcome = await self.dispatcher.process(job)
            except DeliveryNotRecorded as e:
                logger.warning("worker_job_requeued", worker_id=worker_id, delivery_id=job.delivery_id, error=e.message)
                try:
                    await self.queue.enqueue(job, delay_ms=self.requeue_delay_ms)
                except QueueClosed:
                    return
                self.requeued += 1
                continue
            self.outcomes[outcome] += 1
            logger.debug("worker_job_done", worker_id=worker_id, delivery_id=job.delivery_id, outcome=outcome.value)
    
    async def stop(self):
        """Close the queue and wait for in-flight jobs to finish."""
        await self.queue.close()
        await asyncio.gather(*self._tasks)
        self._tasks = []
        logger.info("worker_pool_stopped")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq relay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = [deliver_webhook]
    cron_jobs = [cron(purge_expired_deliveries, minute={0, 15, 30, 45})]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = settings.WORKER_CONCURRENCY
    job_timeout = settings.WORKER_JOB_TIMEOUT_SECONDS
    # Covers crashed workers and outcomes the database could not store
    max_tries = 3
