"""Tests for the database manager."""

import pytest
from sqlalchemy import select

from solana_wallet_analyzer.storage.database import DatabaseManager, engine_options
from solana_wallet_analyzer.storage.models import AnalysisJobModel
from solana_wallet_analyzer.storage.repos import JobRepository


def test_sync_postgres_url_gets_async_driver() -> None:
    manager = DatabaseManager("postgresql://analyzer@localhost/analyzer")
    assert manager.database_url == "postgresql+asyncpg://analyzer@localhost/analyzer"


def test_engine_options() -> None:
    postgres = engine_options("postgresql+asyncpg://localhost/db", pool_size=3, max_overflow=1, echo=False)
    sqlite = engine_options("sqlite+aiosqlite:///test.db", pool_size=3, max_overflow=1, echo=True)

    assert postgres["pool_size"] == 3
    assert postgres["pool_pre_ping"] is True
    assert "pool_size" not in sqlite
    assert sqlite["echo"] is True


class TestSessions:
    """Tests for unit-of-work sessions."""

    @pytest.mark.asyncio
    async def test_commits_on_success(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await JobRepository(session).create("wallet-a", agent_id="test")

        async with db.get_async_session() as session:
            rows = (await session.execute(select(AnalysisJobModel.wallet_address))).scalars().all()
        assert rows == ["wallet-a"]

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, db: DatabaseManager) -> None:
        with pytest.raises(RuntimeError):
            async with db.get_async_session() as session:
                await JobRepository(session).create("wallet-a", agent_id="test")
                raise RuntimeError("boom")

        async with db.get_async_session() as session:
            assert await JobRepository(session).get_by_wallet("wallet-a") is None

    @pytest.mark.asyncio
    async def test_ping_and_dispose(self, db: DatabaseManager) -> None:
        await db.ping()
        await db.dispose_async()
        # The engine is recreated on next use.
        await db.ping()
