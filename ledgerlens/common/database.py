"""
Async SQLAlchemy engine and sessions for the categorization tables

The API opens the pool during startup; Celery tasks and repositories open it
lazily on first use. Each repository call runs in its own short transaction.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ledgerlens.common.config import get_settings

logger = structlog.get_logger()

ASYNC_DRIVER = "postgresql+asyncpg://"


def to_async_url(database_url: str) -> str:
    """Point a plain postgresql:// URL at the asyncpg driver."""
    for prefix in ("postgresql://", "postgres://"):
        if database_url.startswith(prefix):
            return ASYNC_DRIVER + database_url[len(prefix):]
    return database_url


class DatabaseSessionManager:
    """
    Owns the engine and hands out transactional sessions.

    Usage:
        async with sessionmanager.session() as db:
            await db.execute(text("SELECT 1"))
    """

    def __init__(self, pool_size: int = 10, max_overflow: int = 5):
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[AsyncEngine] = None
        self._factory: Optional[async_sessionmaker] = None
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._factory is not None

    async def init(self, database_url: str, **engine_kwargs) -> None:
        if self.initialized:
            return
        async with self._lock:
            # Another task may have opened the pool while we waited
            if self.initialized:
                return
            options = dict(
                pool_size=self.pool_size,
                max_overflow=self.max_overflow,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
            options.update(engine_kwargs)
            url = to_async_url(database_url)
            self._engine = create_async_engine(url, **options)
            self._factory = async_sessionmaker(self._engine, expire_on_commit=False, autoflush=False)
            logger.info("database_pool_opened", driver=url.split("://", 1)[0], pool_size=options["pool_size"])

    async def close(self) -> None:
        if self._engine is None:
            return
        engine, self._engine, self._factory = self._engine, None, None
        await engine.dispose()
        logger.info("database_pool_closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """One transaction: committed when the block exits cleanly, rolled back otherwise."""
        if not self.initialized:
            await self.init(get_settings().database_url)
        async with self._factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def ping(self) -> None:
        """Round-trip to the database; raises when it is unreachable."""
        async with self.session() as db:
            await db.execute(text("SELECT 1"))


sessionmanager = DatabaseSessionManager()
