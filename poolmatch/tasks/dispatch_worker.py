"""Dispatch workers: pull ride jobs off the queue and run them through the matcher."""
import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.config import settings
from poolmatch.database import async_session
from poolmatch.services.errors import CapacityExceeded, DispatchError, NotFound
from poolmatch.services.matcher import DispatchResult, Matcher, MatchingPolicy
from poolmatch.services.queue import Delivery, RedisJobQueue
from poolmatch.services.rides import record_dispatch_error

logger = logging.getLogger(__name__)


async def handle_delivery(
    queue: RedisJobQueue,
    matcher: Matcher,
    session_factory: async_sessionmaker[AsyncSession],
    delivery: Delivery,
) -> DispatchResult | None:
    """Run one job and settle it: ack, drop or schedule a retry."""
    job = delivery.job
    try:
        result = await matcher.dispatch(job.ride_id)
    except NotFound as exc:
        logger.warning("Dropping job %s: %s", job.job_id, exc)
        await queue.ack(delivery)
        return None
    except CapacityExceeded as exc:
        logger.warning("Dropping job %s for ride %s: %s", job.job_id, job.ride_id, exc)
        await record_dispatch_error(session_factory, job.ride_id, str(exc))
        await queue.ack(delivery)
        return None
    except DispatchError as exc:
        if not exc.retriable:
            logger.warning("Dropping job %s for ride %s: %s", job.job_id, job.ride_id, exc)
            await queue.ack(delivery)
            return None
        logger.info("Job %s for ride %s will be retried: %s", job.job_id, job.ride_id, exc)
        await _retry_or_give_up(queue, session_factory, delivery, str(exc))
        return None
    except Exception as exc:
        logger.exception("Unexpected failure on job %s for ride %s", job.job_id, job.ride_id)
        await _retry_or_give_up(queue, session_factory, delivery, f"internal error: {exc}")
        return None

    await queue.ack(delivery)
    logger.info(
        "Ride %s %s (pool %s, driver %s)", job.ride_id, result.outcome.value, result.pool_id, result.driver_id
    )
    return result


async def _retry_or_give_up(
    queue: RedisJobQueue,
    session_factory: async_sessionmaker[AsyncSession],
    delivery: Delivery,
    message: str,
) -> None:
    if await queue.retry(delivery):
        return
    logger.error("Giving up on ride %s after %d attempts: %s", delivery.job.ride_id, queue.max_attempts, message)
    await record_dispatch_error(session_factory, delivery.job.ride_id, message)


async def process_next_job(
    queue: RedisJobQueue,
    matcher: Matcher,
    session_factory: async_sessionmaker[AsyncSession],
    timeout: float = settings.DISPATCH_POLL_TIMEOUT_SECONDS,
) -> bool:
    """Handle at most one job. Returns False when the queue was empty."""
    delivery = await queue.consume(timeout=timeout)
    if delivery is None:
        return False
    await handle_delivery(queue, matcher, session_factory, delivery)
    return True


async def run_dispatch_worker(
    queue: RedisJobQueue,
    matcher: Matcher,
    session_factory: async_sessionmaker[AsyncSession],
    stop: asyncio.Event,
    worker_id: int = 0,
    timeout: float = settings.DISPATCH_POLL_TIMEOUT_SECONDS,
) -> None:
    logger.info("Dispatch worker %d started on %s", worker_id, queue.name)
    while not stop.is_set():
        try:
            await process_next_job(queue, matcher, session_factory, timeout)
        except Exception:
            logger.exception("Worker %d failed outside a job, backing off", worker_id)
            await asyncio.sleep(1)
    logger.info("Dispatch worker %d stopped", worker_id)


async def run_worker_pool(
    queue: RedisJobQueue,
    matcher: Matcher,
    session_factory: async_sessionmaker[AsyncSession],
    stop: asyncio.Event,
    workers: int = settings.DISPATCH_WORKERS,
) -> None:
    """Recover orphaned jobs, then run `workers` consumers until `stop` is set."""
    await queue.recover()
    await asyncio.gather(
        *(run_dispatch_worker(queue, matcher, session_factory, stop, worker_id=i) for i in range(workers))
    )


async def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    queue = RedisJobQueue(
        redis_client,
        name=settings.DISPATCH_QUEUE_NAME,
        max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
        backoff_seconds=settings.DISPATCH_BACKOFF_SECONDS,
    )
    matcher = Matcher(async_session, MatchingPolicy.from_settings())
    stop = asyncio.Event()
    try:
        await run_worker_pool(queue, matcher, async_session, stop)
    finally:
        await redis_client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
