import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import redis.asyncio as aioredis

from poolmatch.api.drivers import router as drivers_router
from poolmatch.api.health import router as health_router
from poolmatch.api.pools import router as pools_router
from poolmatch.api.rides import router as rides_router
from poolmatch.api.users import router as users_router
from poolmatch.config import settings
from poolmatch.database import async_session, engine
from poolmatch.models import Base
from poolmatch.services.matcher import Matcher, MatchingPolicy
from poolmatch.services.queue import RedisJobQueue
from poolmatch.tasks.dispatch_worker import run_worker_pool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    async with engine.begin() as conn:
        if settings.RESET_DB:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    app.state.redis = redis_client

    stop = asyncio.Event()
    task = None
    if settings.RUN_DISPATCH_WORKERS_IN_API:
        queue = RedisJobQueue(
            redis_client,
            name=settings.DISPATCH_QUEUE_NAME,
            max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
            backoff_seconds=settings.DISPATCH_BACKOFF_SECONDS,
        )
        matcher = Matcher(async_session, MatchingPolicy.from_settings())
        task = asyncio.create_task(run_worker_pool(queue, matcher, async_session, stop))
        logger.info("Started %d in-process dispatch workers", settings.DISPATCH_WORKERS)
    try:
        yield
    finally:
        stop.set()
        if task is not None:
            await task
        await redis_client.aclose()
        await engine.dispose()


app = FastAPI(title="poolmatch", version="0.1.0", lifespan=lifespan)
app.include_router(health_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(drivers_router, prefix="/api")
app.include_router(rides_router, prefix="/api")
app.include_router(pools_router, prefix="/api")


@app.get("/api")
def api_root():
    return {"message": "poolmatch API"}
