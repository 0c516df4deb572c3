import logging

import asyncpg.exceptions
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from config import settings

logger = logging.getLogger(__name__)


def _build_engine(url: str):
    # aiosqlite connections are handed between threads by the pool
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=settings.DEBUG, future=True, connect_args=connect_args)


engine = _build_engine(settings.database_url_async)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    """Yield one session per request."""
    async with async_session_maker() as session:
        yield session


def _log_retry(retry_state):
    logger.warning(
        f"Database not reachable (attempt {retry_state.attempt_number}/{settings.DB_CONNECT_ATTEMPTS}): "
        f"{retry_state.outcome.exception()}. Waiting {settings.DB_CONNECT_WAIT_SECONDS}s"
    )


retry_on_unavailable = retry(
    retry=retry_if_exception_type((ConnectionRefusedError, OSError, asyncpg.exceptions.PostgresError)),
    stop=stop_after_attempt(settings.DB_CONNECT_ATTEMPTS),
    wait=wait_fixed(settings.DB_CONNECT_WAIT_SECONDS),
    before_sleep=_log_retry,
    reraise=True,
)


@retry_on_unavailable
async def init_db():
    """
    Probe the database and create any missing tables.

    Retried while the server refuses connections, so the API can start
    alongside its database container.
    """
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database reachable, creating tables")

    import models  # noqa: F401  registers every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialization complete")
