"""Job control: request handling on top of the job table and the queue manager."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError

from solana_wallet_analyzer.analysis.queue import QueueManager
from solana_wallet_analyzer.ingestor.sources import TransactionSource
from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.repos import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    SCAN_MODE_INCREMENTAL,
    JobDTO,
    JobRepository,
    TokenAggregateDTO,
    TokenAggregateRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class StartAnalysisResult:
    """Outcome of an analysis request."""

    job_id: str
    wallet_address: str
    status: str
    is_incremental: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "wallet_address": self.wallet_address,
            "status": self.status,
            "is_incremental": self.is_incremental,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _token_row(aggregate: TokenAggregateDTO) -> dict[str, Any]:
    return {
        "mint": aggregate.mint,
        "symbol": aggregate.symbol,
        "name": aggregate.name,
        "total_volume_usd": aggregate.total_volume_usd,
        "total_volume_native": aggregate.total_volume_native,
        "total_gain_loss_pct": aggregate.total_gain_loss_pct,
        "total_pnl_usd": aggregate.total_pnl_usd,
        "total_missed_usd": aggregate.total_missed_usd,
        "trade_count": aggregate.trade_count,
        "priced_trades": aggregate.priced_trades,
        "trades_missing_price": aggregate.trades_missing_price,
        "average_purchase_price": aggregate.average_purchase_price,
        "average_trade_price": aggregate.average_trade_price,
        "average_ath_price": aggregate.average_ath_price,
    }


class JobService:
    """Creates, resumes and reports on wallet analysis jobs.

    One job record exists per wallet. Repeated requests reuse it: a completed
    job returns its cached results or is re-queued for an incremental scan
    when newer on-chain activity exists, a stalled job is reclaimed, and a
    failed job is either resumed from its checkpoint or replaced.
    """

    def __init__(
        self,
        db: DatabaseManager,
        queue: QueueManager,
        transaction_source: TransactionSource,
        *,
        zombie_timeout_seconds: float = 120.0,
        max_auto_resumes: int = 3,
        default_agent_id: str = "default",
    ) -> None:
        self._db = db
        self._queue = queue
        self._transaction_source = transaction_source
        self._zombie_timeout = timedelta(seconds=zombie_timeout_seconds)
        self._max_auto_resumes = max_auto_resumes
        self._default_agent_id = default_agent_id

    async def start_analysis(self, wallet_address: str, *, agent_id: str | None = None) -> StartAnalysisResult:
        async with self._db.get_async_session() as session:
            job = await JobRepository(session).get_by_wallet(wallet_address)

        if job is None:
            job = await self._create(wallet_address, agent_id or self._default_agent_id)
            return await self._admit(job)

        if job.status == JOB_STATUS_FAILED:
            job = await self._recover_failed(job, agent_id or self._default_agent_id)
            if job.status == JOB_STATUS_PENDING:
                return await self._admit(job)

        if job.status == JOB_STATUS_COMPLETED:
            return await self._refresh_completed(job)

        if job.status == JOB_STATUS_PROCESSING:
            await self._reclaim_if_stale(job)
        elif job.status == JOB_STATUS_PENDING:
            return await self._admit(job)

        return StartAnalysisResult(
            job_id=job.id,
            wallet_address=wallet_address,
            status=job.status,
            is_incremental=job.scan_mode == SCAN_MODE_INCREMENTAL,
        )

    async def _create(self, wallet_address: str, agent_id: str) -> JobDTO:
        try:
            async with self._db.get_async_session() as session:
                job = await JobRepository(session).create(wallet_address, agent_id=agent_id)
        except IntegrityError:
            # Lost a creation race; use the winner's record.
            async with self._db.get_async_session() as session:
                existing = await JobRepository(session).get_by_wallet(wallet_address)
            if existing is None:
                raise
            return existing
        logger.info("Created analysis job %s for %s", job.id, wallet_address)
        return job

    async def _admit(self, job: JobDTO) -> StartAnalysisResult:
        await self._queue.run_admission_pass()
        async with self._db.get_async_session() as session:
            current = await JobRepository(session).get(job.id)
        current = current or job
        return StartAnalysisResult(
            job_id=current.id,
            wallet_address=current.wallet_address,
            status=current.status,
            is_incremental=current.scan_mode == SCAN_MODE_INCREMENTAL,
        )

    async def _refresh_completed(self, job: JobDTO) -> StartAnalysisResult:
        try:
            latest = await self._transaction_source.fetch_latest_signature(job.wallet_address)
        except Exception as e:
            logger.warning(
                "Latest signature lookup for %s failed, serving cached results: %s", job.wallet_address, e
            )
            latest = None

        if latest and latest != job.last_signature:
            async with self._db.get_async_session() as session:
                queued = await JobRepository(session).queue_incremental(job.id)
            if queued:
                logger.info(
                    "New activity for %s since %s; queued incremental scan", job.wallet_address, job.last_signature
                )
                return await self._admit(job)

        return StartAnalysisResult(job_id=job.id, wallet_address=job.wallet_address, status=JOB_STATUS_COMPLETED)

    async def _reclaim_if_stale(self, job: JobDTO) -> None:
        stale_before = datetime.now(UTC) - self._zombie_timeout
        if not job.is_stale(stale_before=stale_before) or self._queue.is_running(job.id):
            return
        async with self._db.get_async_session() as session:
            won = await JobRepository(session).reclaim(job.id, stale_before=stale_before)
        if won:
            logger.warning("Reclaimed stalled job %s for %s", job.id, job.wallet_address)
            self._queue.launch(job.id)

    async def _recover_failed(self, job: JobDTO, agent_id: str) -> JobDTO:
        async with self._db.get_async_session() as session:
            repo = JobRepository(session)
            if job.scan_mode == SCAN_MODE_INCREMENTAL:
                if await repo.restore_completed(job.id):
                    logger.info(
                        "Restored completed results of %s after failed incremental scan", job.wallet_address
                    )
                    return await repo.get(job.id) or job
            elif job.current_batch > 0 and job.retry_count < self._max_auto_resumes:
                if await repo.requeue_failed(job.id):
                    logger.info(
                        "Resuming failed job %s for %s from batch %d (retry %d)",
                        job.id,
                        job.wallet_address,
                        job.current_batch,
                        job.retry_count + 1,
                    )
                    return await repo.get(job.id) or job
            else:
                await repo.delete(job.id)

        logger.info("Replacing failed job %s for %s", job.id, job.wallet_address)
        return await self._create(job.wallet_address, agent_id)

    async def get_status(self, wallet_address: str) -> dict[str, Any]:
        async with self._db.get_async_session() as session:
            job = await JobRepository(session).get_by_wallet(wallet_address)
        if job is None:
            return {"wallet_address": wallet_address, "status": "not_found"}

        elapsed = None
        if job.started_at:
            end = job.completed_at if job.status in (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED) else None
            elapsed = int(((end or datetime.now(UTC)) - job.started_at).total_seconds())

        return {
            "job_id": job.id,
            "wallet_address": job.wallet_address,
            "status": job.status,
            "is_incremental": job.scan_mode == SCAN_MODE_INCREMENTAL,
            "progress": {
                "processed": job.processed_signatures,
                "total": job.total_signatures,
                "batch": job.current_batch,
            },
            "summary": job.current_results,
            "heartbeat": _iso(job.last_heartbeat),
            "elapsed_seconds": elapsed,
            "error": job.error,
            "retry_count": job.retry_count,
            "created_at": _iso(job.created_at),
            "completed_at": _iso(job.completed_at),
        }

    async def get_results(
        self,
        wallet_address: str,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        """Paginated per-token results, largest missed opportunity first."""
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))

        async with self._db.get_async_session() as session:
            job = await JobRepository(session).get_by_wallet(wallet_address)
            if job is None:
                return {"wallet_address": wallet_address, "status": "not_found"}
            aggregates = TokenAggregateRepository(session)
            total = await aggregates.count_for_job(job.id)
            rows = await aggregates.page_for_job(job.id, offset=(page - 1) * page_size, limit=page_size)

        total_pages = math.ceil(total / page_size) if total else 0
        return {
            "job_id": job.id,
            "wallet_address": job.wallet_address,
            "status": job.status,
            "summary": job.current_results,
            "tokens": [_token_row(row) for row in rows],
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": total_pages,
                "has_more": page < total_pages,
            },
        }
