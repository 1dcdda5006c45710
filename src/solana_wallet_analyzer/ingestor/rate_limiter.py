"""Adaptive rate limiting with fair sharing across concurrent jobs.

Every job gets its own limiter instance per provider. All instances of a
provider share one ``ActiveJobCounter``; an instance counts as active while
it has queued work. With N active instances each one spaces its calls so
that it uses roughly 1/N of the provider budget:

    effective_rps = (max_rps * usage_percent / 100) / active_jobs
    delay_ms      = clamp(1000 / effective_rps, min_delay_ms, max_delay_ms)

Batch sizing and timeouts are pure functions of a counter snapshot so the
worker can compute them without reaching into limiter state.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MIN_DELAY_MS = 1.0
DEFAULT_MAX_DELAY_MS = 5000.0
DEFAULT_CALLS_PER_UNIT = 2
DEFAULT_TARGET_BATCH_SECONDS = 60.0
DEFAULT_TIMEOUT_OVERHEAD_SECONDS = 0.5
DEFAULT_TIMEOUT_SAFETY_FACTOR = 2.0
MIN_TIMEOUT_SECONDS = 1.0
MIN_BATCH_SIZE = 5
MAX_BATCH_SIZE = 50


class ActiveJobCounter:
    """Shared count of limiter instances that currently have queued work."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def snapshot(self) -> int:
        """Current value, never below 1 (used as a divisor)."""
        return max(1, self._value)

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def decrement(self) -> int:
        with self._lock:
            self._value = max(0, self._value - 1)
            return self._value


def effective_rps(max_rps: float, usage_percent: float, active_jobs: int) -> float:
    """Per-job share of the provider budget."""
    return (max_rps * usage_percent / 100) / max(1, active_jobs)


def compute_delay_ms(
    max_rps: float,
    usage_percent: float,
    active_jobs: int,
    *,
    min_delay_ms: float = DEFAULT_MIN_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
) -> float:
    rps = effective_rps(max_rps, usage_percent, active_jobs)
    if rps <= 0:
        return max_delay_ms
    return max(min_delay_ms, min(1000 / rps, max_delay_ms))


def recommended_timeout_seconds(
    units: int,
    *,
    max_rps: float,
    usage_percent: float,
    active_jobs: int,
    calls_per_unit: int = DEFAULT_CALLS_PER_UNIT,
    overhead_seconds: float = DEFAULT_TIMEOUT_OVERHEAD_SECONDS,
    safety_factor: float = DEFAULT_TIMEOUT_SAFETY_FACTOR,
) -> float:
    """Expected time to push ``units`` through one job's limiter, with margin."""
    rps = effective_rps(max_rps, usage_percent, active_jobs)
    if rps <= 0:
        return MIN_TIMEOUT_SECONDS
    batch_seconds = (units * calls_per_unit) / rps + overhead_seconds
    return max(MIN_TIMEOUT_SECONDS, batch_seconds * safety_factor)


def optimal_batch_size(
    *,
    max_rps: float,
    usage_percent: float,
    active_jobs: int,
    target_seconds: float = DEFAULT_TARGET_BATCH_SECONDS,
    calls_per_unit: int = DEFAULT_CALLS_PER_UNIT,
    min_size: int = MIN_BATCH_SIZE,
    max_size: int = MAX_BATCH_SIZE,
) -> int:
    """Largest batch that still finishes within ``target_seconds`` under current load.

    Batches shrink as load grows instead of taking longer.
    """
    budget_rps = max_rps * usage_percent / 100
    size = math.floor((target_seconds * budget_rps) / (calls_per_unit * max(1, active_jobs)))
    return max(min_size, min(max_size, size))


class AdaptiveRateLimiter:
    """Sequential per-instance scheduler with load-dependent spacing.

    Example:
        ```python
        counter = ActiveJobCounter()
        limiter = AdaptiveRateLimiter(max_rps=50, usage_percent=80, counter=counter)
        prices = await limiter.schedule(lambda: client.fetch_current_prices_batch(mints))
        ```
    """

    def __init__(
        self,
        *,
        max_rps: float,
        usage_percent: float,
        counter: ActiveJobCounter,
        min_delay_ms: float = DEFAULT_MIN_DELAY_MS,
        max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_rps = max_rps
        self._usage_percent = usage_percent
        self._counter = counter
        self._min_delay_ms = min_delay_ms
        self._max_delay_ms = max_delay_ms
        self._clock = clock

        self._queue: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future[Any]]] = deque()
        self._draining = False
        self._drain_task: asyncio.Task[None] | None = None
        self._last_finished_at: float | None = None

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def is_active(self) -> bool:
        return self._draining

    def current_delay_ms(self) -> float:
        return compute_delay_ms(
            self._max_rps,
            self._usage_percent,
            self._counter.snapshot(),
            min_delay_ms=self._min_delay_ms,
            max_delay_ms=self._max_delay_ms,
        )

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Queue ``task`` and wait for its result.

        Tasks run one at a time in submission order. A caller that stops
        waiting (e.g. on timeout) drops its task if it has not started yet.
        """
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.append((task, future))
        if not self._draining:
            self._draining = True
            self._counter.increment()
            self._drain_task = asyncio.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        try:
            while self._queue:
                task, future = self._queue.popleft()
                if future.done():
                    continue

                if self._last_finished_at is not None:
                    wait = self._last_finished_at + self.current_delay_ms() / 1000 - self._clock()
                    if wait > 0:
                        await asyncio.sleep(wait)
                if future.done():
                    continue

                try:
                    result = await task()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    self._last_finished_at = self._clock()
        finally:
            while self._queue:
                _, pending = self._queue.popleft()
                pending.cancel()
            self._draining = False
            self._counter.decrement()


@dataclass
class ProviderRateLimits:
    """Static budget of one provider plus its shared active-job counter."""

    name: str
    max_rps: float
    usage_percent: float
    min_delay_ms: float = DEFAULT_MIN_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    counter: ActiveJobCounter = field(default_factory=ActiveJobCounter)

    def create_limiter(self) -> AdaptiveRateLimiter:
        return AdaptiveRateLimiter(
            max_rps=self.max_rps,
            usage_percent=self.usage_percent,
            counter=self.counter,
            min_delay_ms=self.min_delay_ms,
            max_delay_ms=self.max_delay_ms,
        )
