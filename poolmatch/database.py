import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, IntegrityError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from poolmatch.config import settings
from poolmatch.services.errors import TransientStoreFailure

logger = logging.getLogger(__name__)


def make_engine(url: str, echo: bool = False, busy_timeout: float = settings.SQLITE_BUSY_TIMEOUT_SECONDS) -> AsyncEngine:
    """Create the async engine. URL must use asyncpg (PostgreSQL) or aiosqlite."""
    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, pool_pre_ping=True)

    engine = create_async_engine(url, echo=echo, connect_args={"timeout": busy_timeout})

    # SQLite ignores FOR UPDATE. Taking the write lock at BEGIN makes every
    # transaction exclusive, so lock -> re-validate -> write still holds.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = make_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# Session factory for dependency injection
async_session = make_session_factory(engine)


async def get_db():
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
) -> AsyncIterator[AsyncSession]:
    """
    One short exclusive unit of work: begin, yield the session, commit on exit (rollback on error).
    Lock waits are bounded; connectivity / lock failures surface as TransientStoreFailure.
    """
    async with session_factory() as db:
        try:
            async with db.begin():
                if db.bind.dialect.name == "postgresql":
                    await db.execute(text(f"SET LOCAL lock_timeout = {int(lock_timeout_ms)}"))
                yield db
        except (IntegrityError, ProgrammingError):
            raise
        except DBAPIError as exc:
            logger.warning("Store failure, transaction rolled back: %s", exc.orig)
            raise TransientStoreFailure(str(exc.orig)) from exc
