"""Retention sweeps for finished jobs and shared caches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from solana_wallet_analyzer.config import RetentionSettings
from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.repos import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JobRepository,
    PriceCacheRepository,
    TransactionCacheRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class RetentionStats:
    """Rows removed by one sweep."""

    completed_jobs: int = 0
    failed_jobs: int = 0
    price_cache_rows: int = 0
    transaction_cache_rows: int = 0

    @property
    def total(self) -> int:
        return self.completed_jobs + self.failed_jobs + self.price_cache_rows + self.transaction_cache_rows


class RetentionSweeper:
    def __init__(self, db: DatabaseManager, settings: RetentionSettings | None = None) -> None:
        self._db = db
        self._settings = settings or RetentionSettings()

    async def sweep(self, *, now: datetime | None = None) -> RetentionStats:
        """Delete everything older than its retention window.

        Jobs are purged together with their aggregates.
        """
        now = now or datetime.now(UTC)
        s = self._settings
        stats = RetentionStats()

        async with self._db.get_async_session() as session:
            jobs = JobRepository(session)
            stats.completed_jobs = await jobs.delete_finished_before(
                status=JOB_STATUS_COMPLETED, before=now - timedelta(days=s.completed_job_days)
            )
            stats.failed_jobs = await jobs.delete_finished_before(
                status=JOB_STATUS_FAILED, before=now - timedelta(days=s.failed_job_days)
            )
            stats.price_cache_rows = await PriceCacheRepository(session).delete_created_before(
                now - timedelta(days=s.price_cache_days)
            )
            stats.transaction_cache_rows = await TransactionCacheRepository(session).delete_created_before(
                now - timedelta(days=s.transaction_cache_days)
            )

        if stats.total:
            logger.info(
                "Retention sweep removed %d completed jobs, %d failed jobs, %d price rows, %d transaction rows",
                stats.completed_jobs,
                stats.failed_jobs,
                stats.price_cache_rows,
                stats.transaction_cache_rows,
            )
        else:
            logger.debug("Retention sweep removed nothing")
        return stats
