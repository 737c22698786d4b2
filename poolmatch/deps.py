"""Shared dependencies: session factory, dispatch queue, settings."""
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.config import Settings, settings
from poolmatch.database import async_session
from poolmatch.services.queue import RedisJobQueue


def get_settings() -> Settings:
    return settings


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """For endpoints that run their own locking transactions. Don't combine with get_db in one endpoint."""
    return async_session


def get_queue(request: Request) -> RedisJobQueue:
    return RedisJobQueue(
        request.app.state.redis,
        name=settings.DISPATCH_QUEUE_NAME,
        max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
        backoff_seconds=settings.DISPATCH_BACKOFF_SECONDS,
    )
