"""Service orchestrator for the Solana wallet analyzer.

This module provides the AnalyzerService class that wires together storage,
provider clients, per-provider rate-limit pools, the analysis worker, the
queue manager, job control and the retention loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from solana_wallet_analyzer.analysis.jobs import JobService, StartAnalysisResult
from solana_wallet_analyzer.analysis.queue import QueueManager
from solana_wallet_analyzer.analysis.retention import RetentionStats, RetentionSweeper
from solana_wallet_analyzer.analysis.worker import AnalysisWorker
from solana_wallet_analyzer.config import Settings, get_settings
from solana_wallet_analyzer.ingestor.birdeye import BirdeyeClient
from solana_wallet_analyzer.ingestor.decoder import BalanceChangeDecoder
from solana_wallet_analyzer.ingestor.helius import HeliusClient
from solana_wallet_analyzer.ingestor.rate_limiter import ProviderRateLimits
from solana_wallet_analyzer.ingestor.sources import ThrottledTransactionSource
from solana_wallet_analyzer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    analyses_requested: int = 0
    retention_sweeps: int = 0
    rows_purged: int = 0
    errors: int = 0
    last_error: str | None = None


class AnalyzerService:
    """Long-running wallet analysis service.

    Example:
        ```python
        from solana_wallet_analyzer.service import AnalyzerService

        async with AnalyzerService() as service:
            result = await service.start_analysis("9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin")
            status = await service.get_status(result.wallet_address)
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._helius: HeliusClient | None = None
        self._birdeye: BirdeyeClient | None = None
        self._worker: AnalysisWorker | None = None
        self._queue: QueueManager | None = None
        self._jobs: JobService | None = None
        self._sweeper: RetentionSweeper | None = None

        self._stop_event: asyncio.Event | None = None
        self._retention_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting analyzer service...")

        try:
            self._initialize_components()
            if self._queue is None:
                raise RuntimeError("Queue manager was not initialized")
            await self._queue.start()
            self._retention_task = asyncio.create_task(self._run_retention_loop())
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Analyzer service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start analyzer service: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the service; running jobs resume from their checkpoints on next start."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping analyzer service...")
        if self._stop_event:
            self._stop_event.set()

        if self._retention_task:
            self._retention_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retention_task
            self._retention_task = None

        if self._queue:
            await self._queue.stop()

        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Analyzer service stopped")

    def _initialize_components(self) -> None:
        settings = self._settings

        logger.debug("Initializing Redis connection...")
        self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
        )

        helius_key = settings.helius.api_key.get_secret_value() if settings.helius.api_key else ""
        birdeye_key = settings.birdeye.api_key.get_secret_value() if settings.birdeye.api_key else ""
        self._helius = HeliusClient(
            api_key=helius_key,
            rpc_url=settings.helius.rpc_url,
            redis=self._redis,
            metadata_cache_ttl_seconds=settings.redis.metadata_ttl_seconds,
            timeout_seconds=settings.helius.request_timeout_seconds,
        )
        self._birdeye = BirdeyeClient(
            api_key=birdeye_key,
            api_base=settings.birdeye.api_base,
            timeframe=settings.birdeye.price_timeframe,
            timeout_seconds=settings.birdeye.request_timeout_seconds,
        )

        rate = settings.rate_limit
        helius_limits = ProviderRateLimits(
            "helius",
            max_rps=settings.helius.max_rps,
            usage_percent=rate.usage_percent,
            min_delay_ms=rate.min_delay_ms,
            max_delay_ms=rate.max_delay_ms,
        )
        self._worker = AnalysisWorker(
            self._db_manager,
            transaction_source=self._helius,
            price_source=self._birdeye,
            decoder=BalanceChangeDecoder(),
            transaction_limits=helius_limits,
            price_limits=ProviderRateLimits(
                "birdeye",
                max_rps=settings.birdeye.max_rps,
                usage_percent=rate.usage_percent,
                min_delay_ms=rate.min_delay_ms,
                max_delay_ms=rate.max_delay_ms,
            ),
            settings=settings.analysis,
            rate_limit_settings=rate,
        )
        self._queue = QueueManager(
            self._db_manager,
            self._worker.run_job,
            max_concurrent_jobs=settings.queue.max_concurrent_jobs,
            poll_interval_seconds=settings.queue.poll_interval_seconds,
            db_retry_delay_seconds=settings.queue.db_retry_delay_seconds,
            zombie_timeout_seconds=settings.queue.zombie_timeout_seconds,
        )
        self._jobs = JobService(
            self._db_manager,
            self._queue,
            # Activity checks share the job budget as one more active caller.
            ThrottledTransactionSource(self._helius, helius_limits.create_limiter()),
            zombie_timeout_seconds=settings.queue.zombie_timeout_seconds,
            max_auto_resumes=settings.analysis.max_auto_resumes,
            default_agent_id=settings.agent_id,
        )
        self._sweeper = RetentionSweeper(self._db_manager, settings.retention)

    async def _run_retention_loop(self) -> None:
        if not self._stop_event or not self._sweeper:
            return

        interval = self._settings.retention.sweep_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

            try:
                await self.sweep()
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.error("Retention sweep failed: %s", e)

    async def _cleanup(self) -> None:
        if self._helius:
            await self._helius.close()
            self._helius = None

        if self._birdeye:
            await self._birdeye.close()
            self._birdeye = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    def _require_jobs(self) -> JobService:
        if not self._jobs:
            raise RuntimeError("Analyzer service is not running")
        return self._jobs

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    async def start_analysis(self, wallet_address: str, *, agent_id: str | None = None) -> StartAnalysisResult:
        self._stats.analyses_requested += 1
        return await self._require_jobs().start_analysis(wallet_address, agent_id=agent_id)

    async def get_status(self, wallet_address: str) -> dict[str, Any]:
        return await self._require_jobs().get_status(wallet_address)

    async def get_results(self, wallet_address: str, *, page: int = 1, page_size: int = 50) -> dict[str, Any]:
        return await self._require_jobs().get_results(wallet_address, page=page, page_size=page_size)

    async def get_queue_stats(self) -> dict[str, Any]:
        if not self._queue:
            raise RuntimeError("Analyzer service is not running")
        return await self._queue.get_stats()

    async def sweep(self) -> RetentionStats:
        if not self._sweeper:
            raise RuntimeError("Analyzer service is not running")
        stats = await self._sweeper.sweep()
        self._stats.retention_sweeps += 1
        self._stats.rows_purged += stats.total
        return stats

    async def run(self) -> None:
        """Start the service and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> AnalyzerService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
