"""Tests for the queue manager."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from fakes import wait_until
from solana_wallet_analyzer.analysis.queue import QueueManager, QueueState
from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.repos import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JobDTO,
    JobRepository,
)


class RecordingRunner:
    """Job runner that completes jobs, optionally holding them until released."""

    def __init__(self, db: DatabaseManager, *, block: bool = False) -> None:
        self.db = db
        self.started: list[str] = []
        self.release = asyncio.Event()
        if not block:
            self.release.set()

    async def __call__(self, job_id: str) -> None:
        self.started.append(job_id)
        await self.release.wait()
        async with self.db.get_async_session() as session:
            await JobRepository(session).mark_completed(
                job_id, summary={}, processed_signatures=0, last_signature=None
            )


async def create_jobs(db: DatabaseManager, count: int) -> list[JobDTO]:
    base = datetime.now(UTC) - timedelta(minutes=5)
    async with db.get_async_session() as session:
        repo = JobRepository(session)
        return [
            await repo.create(f"wallet-{i:02d}", agent_id="test", created_at=base + timedelta(seconds=i))
            for i in range(count)
        ]


async def stale_processing_job(db: DatabaseManager) -> JobDTO:
    (job,) = await create_jobs(db, 1)
    async with db.get_async_session() as session:
        await JobRepository(session).claim(job.id, now=datetime.now(UTC) - timedelta(minutes=10))
    return job


async def status_counts(db: DatabaseManager) -> dict[str, int]:
    async with db.get_async_session() as session:
        return await JobRepository(session).count_all_by_status()


async def load_job(db: DatabaseManager, job_id: str) -> JobDTO:
    async with db.get_async_session() as session:
        job = await JobRepository(session).get(job_id)
    assert job is not None
    return job


# ============================================================================
# Admission
# ============================================================================


class TestAdmission:
    """Tests for admission passes."""

    @pytest.mark.asyncio
    async def test_bounded_fifo_admission(self, db: DatabaseManager) -> None:
        jobs = await create_jobs(db, 20)
        runner = RecordingRunner(db, block=True)
        queue = QueueManager(db, runner, max_concurrent_jobs=15)

        assert await queue.run_admission_pass() == 15
        counts = await status_counts(db)
        assert counts[JOB_STATUS_PROCESSING] == 15
        assert counts[JOB_STATUS_PENDING] == 5
        assert queue.running_jobs == 15
        await wait_until(lambda: len(runner.started) == 15)
        assert set(runner.started) == {job.id for job in jobs[:15]}

        # No free slots while the first 15 are running.
        assert await queue.run_admission_pass() == 0

        runner.release.set()
        await wait_until(lambda: queue.running_jobs == 0)
        assert await queue.run_admission_pass() == 5
        await wait_until(lambda: queue.running_jobs == 0)

        assert set(runner.started[15:]) == {job.id for job in jobs[15:]}
        assert (await status_counts(db))[JOB_STATUS_COMPLETED] == 20
        await queue.stop()

    @pytest.mark.asyncio
    async def test_claim_failure_marks_job_failed(self, db: DatabaseManager) -> None:
        (job,) = await create_jobs(db, 1)
        runner = RecordingRunner(db)
        queue = QueueManager(db, runner)

        with patch.object(JobRepository, "claim", AsyncMock(side_effect=RuntimeError("database locked"))):
            assert await queue.run_admission_pass() == 0

        failed = await load_job(db, job.id)
        assert failed.status == JOB_STATUS_FAILED
        assert failed.error == "Failed to start: database locked"
        assert queue.stats.launch_failures == 1
        assert runner.started == []

    @pytest.mark.asyncio
    async def test_finished_job_frees_its_slot(self, db: DatabaseManager) -> None:
        jobs = await create_jobs(db, 2)
        runner = RecordingRunner(db)
        queue = QueueManager(db, runner, max_concurrent_jobs=1, poll_interval_seconds=60)

        await queue.start()
        await wait_until(lambda: len(runner.started) == 2 and queue.running_jobs == 0)
        await queue.stop()

        assert runner.started == [jobs[0].id, jobs[1].id]
        assert (await status_counts(db))[JOB_STATUS_COMPLETED] == 2

    @pytest.mark.asyncio
    async def test_get_stats(self, db: DatabaseManager) -> None:
        await create_jobs(db, 2)
        runner = RecordingRunner(db, block=True)
        queue = QueueManager(db, runner, max_concurrent_jobs=1)
        await queue.run_admission_pass()

        stats = await queue.get_stats()

        assert stats[JOB_STATUS_PROCESSING] == 1
        assert stats[JOB_STATUS_PENDING] == 1
        assert stats[JOB_STATUS_FAILED] == 0
        assert stats["running_tasks"] == 1
        assert stats["max_concurrent_jobs"] == 1
        assert stats["state"] == "stopped"

        runner.release.set()
        await wait_until(lambda: queue.running_jobs == 0)


# ============================================================================
# Zombie reclaim
# ============================================================================


class TestZombieReclaim:
    """Tests for stalled-job takeover."""

    @pytest.mark.asyncio
    async def test_stale_job_is_relaunched(self, db: DatabaseManager) -> None:
        job = await stale_processing_job(db)
        runner = RecordingRunner(db)
        queue = QueueManager(db, runner, zombie_timeout_seconds=120)

        assert await queue.reclaim_zombies() == 1
        await wait_until(lambda: queue.running_jobs == 0)

        reclaimed = await load_job(db, job.id)
        assert reclaimed.retry_count == 1
        assert reclaimed.status == JOB_STATUS_COMPLETED
        assert runner.started == [job.id]
        assert queue.stats.jobs_reclaimed == 1

    @pytest.mark.asyncio
    async def test_job_still_running_here_is_left_alone(self, db: DatabaseManager) -> None:
        job = await stale_processing_job(db)
        runner = RecordingRunner(db, block=True)
        queue = QueueManager(db, runner, zombie_timeout_seconds=120)
        queue.launch(job.id)

        assert await queue.reclaim_zombies() == 0
        assert (await load_job(db, job.id)).retry_count == 0

        runner.release.set()
        await wait_until(lambda: queue.running_jobs == 0)

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_is_not_reclaimed(self, db: DatabaseManager) -> None:
        (job,) = await create_jobs(db, 1)
        async with db.get_async_session() as session:
            await JobRepository(session).claim(job.id)
        queue = QueueManager(db, RecordingRunner(db), zombie_timeout_seconds=120)

        assert await queue.reclaim_zombies() == 0

    @pytest.mark.asyncio
    async def test_launch_refuses_duplicate_task(self, db: DatabaseManager) -> None:
        job = await stale_processing_job(db)
        runner = RecordingRunner(db, block=True)
        queue = QueueManager(db, runner)

        assert queue.launch(job.id) is True
        assert queue.launch(job.id) is False
        assert queue.is_running(job.id)

        runner.release.set()
        await wait_until(lambda: queue.running_jobs == 0)


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_waits_for_database(self, db: DatabaseManager) -> None:
        ping = AsyncMock(side_effect=[ConnectionError("connection refused"), None])
        queue = QueueManager(db, RecordingRunner(db), db_retry_delay_seconds=0.01, poll_interval_seconds=60)

        with patch.object(db, "ping", ping):
            await queue.start()

        assert ping.await_count == 2
        assert queue.state == QueueState.RUNNING
        assert queue.stats.last_error == "connection refused"
        await queue.stop()
        assert queue.state == QueueState.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, db: DatabaseManager) -> None:
        queue = QueueManager(db, RecordingRunner(db), poll_interval_seconds=60)
        await queue.start()

        with pytest.raises(RuntimeError, match="Cannot start"):
            await queue.start()

        await queue.stop()

    @pytest.mark.asyncio
    async def test_loops_require_start(self, db: DatabaseManager) -> None:
        queue = QueueManager(db, RecordingRunner(db))

        with pytest.raises(RuntimeError, match="not started"):
            await queue._run_poll_loop()
        with pytest.raises(RuntimeError, match="not started"):
            await queue._wait_for_database()

    @pytest.mark.asyncio
    async def test_stop_cancels_running_jobs(self, db: DatabaseManager) -> None:
        (job,) = await create_jobs(db, 1)
        runner = RecordingRunner(db, block=True)
        queue = QueueManager(db, runner, poll_interval_seconds=60)

        await queue.start()
        await wait_until(lambda: runner.started == [job.id])
        await queue.stop()

        assert queue.running_jobs == 0
        assert queue.state == QueueState.STOPPED
        # The job keeps its claim; a later reclaim resumes it from its checkpoint.
        assert (await load_job(db, job.id)).status == JOB_STATUS_PROCESSING

    @pytest.mark.asyncio
    async def test_stop_when_never_started(self, db: DatabaseManager) -> None:
        queue = QueueManager(db, RecordingRunner(db))
        await queue.stop()
        assert queue.state == QueueState.STOPPED
