"""
Redis-backed dispatch queue with at-least-once delivery.

Keys for queue `name`:
  {name}:ready       list, FIFO of job payloads
  {name}:processing  list, payloads handed to a worker and not yet acked
  {name}:delayed     sorted set, payloads waiting for their retry time (score = due epoch)
  {name}:failed      list, payloads that used up every attempt
A crashed worker leaves its job in :processing; `recover()` puts it back on :ready.
"""
import logging
import time
import uuid
from dataclasses import dataclass

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from poolmatch.models.pool import Direction

logger = logging.getLogger(__name__)


class DispatchJob(BaseModel):
    ride_id: int
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    seats: int
    luggage: int
    direction: Direction
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0


@dataclass(frozen=True)
class Delivery:
    job: DispatchJob
    # exact payload as stored in :processing, needed to ack it
    payload: str


class RedisJobQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        name: str = "ride-matching",
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
    ) -> None:
        self.redis = redis
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    @property
    def ready_key(self) -> str:
        return f"{self.name}:ready"

    @property
    def processing_key(self) -> str:
        return f"{self.name}:processing"

    @property
    def delayed_key(self) -> str:
        return f"{self.name}:delayed"

    @property
    def failed_key(self) -> str:
        return f"{self.name}:failed"

    async def enqueue(self, job: DispatchJob) -> str:
        await self.redis.rpush(self.ready_key, job.model_dump_json())
        logger.debug("Enqueued job %s for ride %s", job.job_id, job.ride_id)
        return job.job_id

    async def promote_due(self, now: float | None = None) -> int:
        """Move delayed jobs whose retry time has passed back to :ready."""
        now = time.time() if now is None else now
        due = await self.redis.zrangebyscore(self.delayed_key, 0, now)
        moved = 0
        for payload in due:
            # only the worker that removes it may re-queue it
            if await self.redis.zrem(self.delayed_key, payload):
                await self.redis.rpush(self.ready_key, payload)
                moved += 1
        return moved

    async def consume(self, timeout: float = 1.0) -> Delivery | None:
        """Take the next job, parking it in :processing until acked. Blocks up to `timeout` seconds."""
        await self.promote_due()
        payload = await self.redis.lmove(self.ready_key, self.processing_key, "LEFT", "RIGHT")
        if payload is None and timeout > 0:
            payload = await self.redis.blmove(self.ready_key, self.processing_key, timeout, "LEFT", "RIGHT")
        if payload is None:
            return None
        if isinstance(payload, bytes):
            payload = payload.decode()
        return Delivery(job=DispatchJob.model_validate_json(payload), payload=payload)

    async def ack(self, delivery: Delivery) -> None:
        await self.redis.lrem(self.processing_key, 1, delivery.payload)

    async def retry(self, delivery: Delivery, now: float | None = None) -> bool:
        """
        Schedule another attempt with exponential backoff.
        Returns False (and moves the job to :failed) once max_attempts is used up.
        """
        now = time.time() if now is None else now
        job = delivery.job.model_copy(update={"attempts": delivery.job.attempts + 1})
        payload = job.model_dump_json()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, delivery.payload)
            if job.attempts >= self.max_attempts:
                pipe.rpush(self.failed_key, payload)
            else:
                delay = self.backoff_seconds * 2 ** (job.attempts - 1)
                pipe.zadd(self.delayed_key, {payload: now + delay})
            await pipe.execute()
        if job.attempts >= self.max_attempts:
            logger.warning("Job %s for ride %s failed after %d attempts", job.job_id, job.ride_id, job.attempts)
            return False
        return True

    async def recover(self) -> int:
        """Return jobs left in :processing (by a dead worker) to :ready. Call before workers start."""
        moved = 0
        while await self.redis.lmove(self.processing_key, self.ready_key, "RIGHT", "LEFT") is not None:
            moved += 1
        if moved:
            logger.info("Recovered %d unacked jobs on %s", moved, self.name)
        return moved

    async def stats(self) -> dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.ready_key)
            pipe.llen(self.processing_key)
            pipe.zcard(self.delayed_key)
            pipe.llen(self.failed_key)
            ready, processing, delayed, failed = await pipe.execute()
        return {"ready": ready, "processing": processing, "delayed": delayed, "failed": failed}
