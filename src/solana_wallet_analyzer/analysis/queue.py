"""Queue manager: bounded admission of pending analysis jobs.

Admission passes run on a fixed interval and whenever a job finishes. A
pass counts the jobs in ``processing``, takes up to the free number of
``pending`` jobs in creation order, claims each one atomically and launches
it as an asyncio task. Each periodic pass first takes over ``processing``
jobs whose heartbeat went stale and which no task in this process is still
running.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.repos import JOB_STATUS_PROCESSING, JobRepository

logger = logging.getLogger(__name__)

JobRunner = Callable[[str], Awaitable[None]]

DEFAULT_MAX_CONCURRENT_JOBS = 15
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_DB_RETRY_DELAY_SECONDS = 2.0
DEFAULT_ZOMBIE_TIMEOUT_SECONDS = 120.0


class QueueState(str, Enum):
    """Queue manager lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class QueueStats:
    """Counters for the queue manager."""

    started_at: datetime | None = None
    admission_passes: int = 0
    jobs_launched: int = 0
    jobs_reclaimed: int = 0
    launch_failures: int = 0
    last_error: str | None = None


class QueueManager:
    """Admits pending jobs up to a concurrency limit and supervises their tasks.

    Example:
        ```python
        queue = QueueManager(db, worker.run_job, max_concurrent_jobs=15)
        await queue.start()
        ...
        await queue.stop()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        runner: JobRunner,
        *,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        db_retry_delay_seconds: float = DEFAULT_DB_RETRY_DELAY_SECONDS,
        zombie_timeout_seconds: float = DEFAULT_ZOMBIE_TIMEOUT_SECONDS,
    ) -> None:
        self._db = db
        self._runner = runner
        self._max_concurrent_jobs = max_concurrent_jobs
        self._poll_interval = poll_interval_seconds
        self._db_retry_delay = db_retry_delay_seconds
        self._zombie_timeout = timedelta(seconds=zombie_timeout_seconds)

        self._state = QueueState.STOPPED
        self._stats = QueueStats()
        self._busy = False
        self._rerun_requested = False
        self._running: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._stop_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def stats(self) -> QueueStats:
        return self._stats

    @property
    def running_jobs(self) -> int:
        """Number of job tasks alive in this process."""
        return len(self._running)

    def is_running(self, job_id: str) -> bool:
        task = self._running.get(job_id)
        return task is not None and not task.done()

    async def start(self) -> None:
        """Wait for the database, run a first admission pass and start polling.

        Raises:
            RuntimeError: If the manager is already running.
        """
        if self._state != QueueState.STOPPED:
            raise RuntimeError(f"Cannot start queue manager in state {self._state}")

        self._state = QueueState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting queue manager (max %d concurrent jobs)", self._max_concurrent_jobs)

        if not await self._wait_for_database():
            self._state = QueueState.STOPPED
            return

        self._stats.started_at = datetime.now(UTC)
        self._state = QueueState.RUNNING
        await self.reclaim_zombies()
        await self.run_admission_pass()
        self._loop_task = asyncio.create_task(self._run_poll_loop())
        logger.info("Queue manager started")

    async def stop(self) -> None:
        """Stop polling and cancel running job tasks; their checkpoints survive."""
        if self._state == QueueState.STOPPED and not self._running and not self._background:
            return

        self._state = QueueState.STOPPING
        logger.info("Stopping queue manager...")
        if self._stop_event:
            self._stop_event.set()

        if self._loop_task:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        tasks = list(self._running.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._running.clear()
        self._background.clear()

        self._state = QueueState.STOPPED
        logger.info("Queue manager stopped")

    def _require_stop_event(self) -> asyncio.Event:
        if self._stop_event is None:
            raise RuntimeError("Queue manager is not started")
        return self._stop_event

    async def _wait_for_database(self) -> bool:
        stop_event = self._require_stop_event()
        while not stop_event.is_set():
            try:
                await self._db.ping()
                return True
            except Exception as e:
                logger.warning("Database not reachable, retrying in %.0fs: %s", self._db_retry_delay, e)
                self._stats.last_error = str(e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._db_retry_delay)
            except TimeoutError:
                pass
        return False

    async def _run_poll_loop(self) -> None:
        stop_event = self._require_stop_event()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
                break
            except TimeoutError:
                pass

            await self.reclaim_zombies()
            await self.run_admission_pass()

    async def run_admission_pass(self) -> int:
        """Claim and launch pending jobs into free slots.

        Returns the number of jobs launched. A call made while another pass is
        running makes that pass loop once more instead.
        """
        if self._busy:
            self._rerun_requested = True
            return 0

        self._busy = True
        launched = 0
        try:
            while True:
                self._rerun_requested = False
                launched += await self._admit()
                if not self._rerun_requested or self._state == QueueState.STOPPING:
                    break
        except Exception as e:
            self._stats.last_error = str(e)
            logger.error("Admission pass failed: %s", e)
        finally:
            self._busy = False
        return launched

    async def _admit(self) -> int:
        self._stats.admission_passes += 1
        async with self._db.get_async_session() as session:
            repo = JobRepository(session)
            processing = await repo.count_by_status(JOB_STATUS_PROCESSING)
            available = self._max_concurrent_jobs - processing
            if available <= 0:
                logger.debug("No free slots (%d processing)", processing)
                return 0
            pending = await repo.list_pending(limit=available)

        launched = 0
        for job in pending:
            try:
                async with self._db.get_async_session() as session:
                    claimed = await JobRepository(session).claim(job.id)
                if not claimed:
                    continue
                self.launch(job.id)
                launched += 1
            except Exception as e:
                self._stats.launch_failures += 1
                logger.error("Failed to start job %s: %s", job.id, e)
                await self._mark_failed(job.id, f"Failed to start: {e}")

        if launched:
            logger.info("Admitted %d jobs (%d were processing)", launched, processing)
        return launched

    async def reclaim_zombies(self) -> int:
        """Relaunch processing jobs whose heartbeat is stale and that have no live task here."""
        stale_before = datetime.now(UTC) - self._zombie_timeout
        reclaimed = 0
        try:
            async with self._db.get_async_session() as session:
                candidates = await JobRepository(session).list_stale_processing(stale_before=stale_before)

            for job in candidates:
                if self.is_running(job.id):
                    logger.warning("Job %s has a stale heartbeat but is still running here", job.id)
                    continue
                async with self._db.get_async_session() as session:
                    won = await JobRepository(session).reclaim(job.id, stale_before=stale_before)
                if not won:
                    continue
                logger.warning(
                    "Reclaiming stalled job %s for %s (retry %d)",
                    job.id,
                    job.wallet_address,
                    job.retry_count + 1,
                )
                self.launch(job.id)
                reclaimed += 1
        except Exception as e:
            self._stats.last_error = str(e)
            logger.error("Zombie reclaim failed: %s", e)

        self._stats.jobs_reclaimed += reclaimed
        return reclaimed

    def launch(self, job_id: str) -> bool:
        """Run an already-claimed job in the background."""
        if self.is_running(job_id):
            logger.warning("Job %s is already running", job_id)
            return False
        task = asyncio.create_task(self._run_job(job_id), name=f"analysis-job-{job_id}")
        self._running[job_id] = task
        self._stats.jobs_launched += 1
        return True

    async def _run_job(self, job_id: str) -> None:
        try:
            await self._runner(job_id)
        except Exception:
            logger.exception("Job %s crashed", job_id)
        finally:
            if self._running.get(job_id) is asyncio.current_task():
                del self._running[job_id]
            if self._state == QueueState.RUNNING:
                self._spawn(self.run_admission_pass())

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mark_failed(self, job_id: str, error: str) -> None:
        try:
            async with self._db.get_async_session() as session:
                await JobRepository(session).mark_failed(job_id, error=error)
        except Exception as e:
            logger.error("Failed to mark job %s failed: %s", job_id, e)

    async def get_stats(self) -> dict[str, Any]:
        async with self._db.get_async_session() as session:
            counts = await JobRepository(session).count_all_by_status()
        return {
            **counts,
            "running_tasks": self.running_jobs,
            "max_concurrent_jobs": self._max_concurrent_jobs,
            "state": self._state.value,
        }
