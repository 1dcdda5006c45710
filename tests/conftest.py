"""Pytest configuration and fixtures."""

import pytest

from fakes import WALLET
from solana_wallet_analyzer.storage.database import DatabaseManager


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """File-backed SQLite database with the full schema."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def sample_wallet() -> str:
    """Sample wallet address for testing."""
    return WALLET
