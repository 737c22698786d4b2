"""Health check: database and queue reachability."""
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from poolmatch.database import get_db
from poolmatch.deps import get_queue
from poolmatch.services.queue import RedisJobQueue

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(
    db: AsyncSession = Depends(get_db),
    queue: RedisJobQueue = Depends(get_queue),
):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "queue": await queue.stats()}
