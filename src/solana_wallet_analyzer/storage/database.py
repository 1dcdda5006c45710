"""Async engine and unit-of-work sessions for the analyzer tables."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from solana_wallet_analyzer.storage.models import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def engine_options(database_url: str, *, pool_size: int, max_overflow: int, echo: bool) -> dict[str, Any]:
    """Engine keyword arguments for the URL's backend."""
    if database_url.startswith("sqlite"):
        # Concurrent job tasks share one file; wait for the writer instead of failing.
        return {"echo": echo, "connect_args": {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS}}
    return {
        "echo": echo,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
    }


class DatabaseManager:
    """Owns the engine; hands out one transaction per ``get_async_session`` block.

    Workers, the queue manager, job control and the retention sweeper all
    share a single manager. The engine is created on first use so that
    constructing a manager never touches the network.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        if database_url.startswith("postgresql://"):
            logger.warning("DATABASE_URL has no async driver; using postgresql+asyncpg")
            database_url = "postgresql+asyncpg://" + database_url.removeprefix("postgresql://")
        self.database_url = database_url
        self._options = engine_options(database_url, pool_size=pool_size, max_overflow=max_overflow, echo=echo)
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._options)
        return self._engine

    def _session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._sessions

    @asynccontextmanager
    async def get_async_session(self) -> AsyncIterator[AsyncSession]:
        """Commit when the block exits normally, roll back when it raises."""
        async with self._session_factory()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> None:
        async with self.engine.connect() as connection:
            await connection.execute(text("SELECT 1"))

    async def init_schema_async(self) -> None:
        """Create any missing tables."""
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info("Database schema initialized")

    async def dispose_async(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.debug("Database connections disposed")
