"""Three-tier price resolution.

For every requested ``(mint, timestamp)`` the cached resolver picks one of:

1. fresh hit: a cached entry covers the timestamp and its current price was
   refreshed recently; served verbatim.
2. stale hit: the entry covers the timestamp but the current price is old;
   all such mints are refreshed with one multi-mint current-price call.
3. miss: a full price history is fetched from the earliest requested
   timestamp up to now, and the cache row is upserted.

A unit that fails or times out is skipped (logged, omitted from the result)
instead of failing the whole pass.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol, TypeVar

from solana_wallet_analyzer.ingestor.models import PriceAnalysis, PricePoint
from solana_wallet_analyzer.ingestor.sources import PriceSource
from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.repos import PriceCacheDTO, PriceCacheRepository

logger = logging.getLogger(__name__)

DEFAULT_FRESH_SECONDS = 60

T = TypeVar("T")


@dataclass(frozen=True)
class PriceRequest:
    mint: str
    timestamp: int


class PriceResolver(Protocol):
    async def resolve(
        self,
        requests: Iterable[PriceRequest],
        *,
        timeout_seconds: float | None = None,
    ) -> dict[PriceRequest, PriceAnalysis]: ...


def price_at(history: Sequence[PricePoint], timestamp: int) -> float | None:
    """Latest sample at or before ``timestamp``, else the first sample."""
    if not history:
        return None
    times = [point.unix_time for point in history]
    index = bisect.bisect_right(times, timestamp) - 1
    return history[max(index, 0)].value


def analyze_history(mint: str, history: Sequence[PricePoint], timestamp: int) -> PriceAnalysis | None:
    """Purchase (first sample), current (last sample) and ATH (max sample)."""
    if not history:
        return None
    first = history[0]
    last = history[-1]
    ath = first
    for point in history:
        if point.value > ath.value:
            ath = point
    trade_price = price_at(history, timestamp)
    return PriceAnalysis(
        mint=mint,
        purchase_price=first.value,
        purchase_timestamp=first.unix_time,
        current_price=last.value,
        ath_price=ath.value,
        ath_timestamp=ath.unix_time,
        trade_price=first.value if trade_price is None else trade_price,
        history=tuple(history),
    )


def _history_of(entry: PriceCacheDTO) -> tuple[PricePoint, ...]:
    points = []
    for item in entry.price_history:
        try:
            points.append(PricePoint.from_dict(item))
        except (KeyError, TypeError, ValueError):
            continue
    points.sort(key=lambda p: p.unix_time)
    return tuple(points)


def analysis_from_entry(
    entry: PriceCacheDTO, timestamp: int, *, current_price: float | None = None
) -> PriceAnalysis:
    history = _history_of(entry)
    trade_price = price_at(history, timestamp)
    return PriceAnalysis(
        mint=entry.mint,
        purchase_price=entry.purchase_price,
        purchase_timestamp=entry.purchase_timestamp,
        current_price=entry.current_price if current_price is None else current_price,
        ath_price=entry.ath_price,
        ath_timestamp=entry.ath_timestamp,
        trade_price=entry.purchase_price if trade_price is None else trade_price,
        history=history,
    )


class RemotePriceResolver:
    """Uncached resolution straight from a PriceSource."""

    def __init__(self, source: PriceSource, *, clock: Callable[[], float] = time.time) -> None:
        self._source = source
        self._clock = clock

    async def fetch_analysis(self, mint: str, timestamp: int) -> PriceAnalysis | None:
        history = await self._source.fetch_price_history(
            mint, time_from=timestamp, time_to=int(self._clock())
        )
        return analyze_history(mint, history, timestamp)

    async def fetch_current_prices(self, mints: Iterable[str]) -> dict[str, float]:
        wanted = sorted(set(mints))
        if not wanted:
            return {}
        return await self._source.fetch_current_prices_batch(wanted)

    async def resolve(
        self,
        requests: Iterable[PriceRequest],
        *,
        timeout_seconds: float | None = None,
    ) -> dict[PriceRequest, PriceAnalysis]:
        unique = sorted(set(requests), key=lambda r: (r.mint, r.timestamp))
        outcomes = await asyncio.gather(
            *(_with_timeout(self.fetch_analysis(r.mint, r.timestamp), timeout_seconds) for r in unique),
            return_exceptions=True,
        )
        resolved: dict[PriceRequest, PriceAnalysis] = {}
        for request, outcome in zip(unique, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                _log_unit_failure(request.mint, outcome)
            elif outcome is not None:
                resolved[request] = outcome
        return resolved


class CachedPriceResolver:
    """PriceResolver backed by the shared ``price_cache`` table."""

    def __init__(
        self,
        remote: RemotePriceResolver,
        db: DatabaseManager,
        *,
        fresh_seconds: float = DEFAULT_FRESH_SECONDS,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._remote = remote
        self._db = db
        self._fresh = timedelta(seconds=fresh_seconds)
        self._now = now

    async def resolve(
        self,
        requests: Iterable[PriceRequest],
        *,
        timeout_seconds: float | None = None,
    ) -> dict[PriceRequest, PriceAnalysis]:
        unique = sorted(set(requests), key=lambda r: (r.mint, r.timestamp))
        if not unique:
            return {}

        async with self._db.get_async_session() as session:
            cached = await PriceCacheRepository(session).get_many(r.mint for r in unique)

        now = self._now()
        resolved: dict[PriceRequest, PriceAnalysis] = {}
        stale: list[PriceRequest] = []
        misses: dict[str, list[PriceRequest]] = {}

        for request in unique:
            entry = cached.get(request.mint)
            if entry is None or entry.purchase_timestamp > request.timestamp:
                misses.setdefault(request.mint, []).append(request)
            elif now - entry.current_price_updated_at <= self._fresh:
                resolved[request] = analysis_from_entry(entry, request.timestamp)
            else:
                stale.append(request)

        logger.debug(
            "Price resolution: %d fresh, %d stale, %d missing mints",
            len(resolved),
            len(stale),
            len(misses),
        )

        if stale:
            resolved.update(await self._refresh_stale(stale, cached, timeout_seconds))
        if misses:
            resolved.update(await self._fetch_misses(misses, timeout_seconds))
        return resolved

    async def _refresh_stale(
        self,
        requests: list[PriceRequest],
        cached: dict[str, PriceCacheDTO],
        timeout_seconds: float | None,
    ) -> dict[PriceRequest, PriceAnalysis]:
        mints = sorted({r.mint for r in requests})
        prices: dict[str, float] = {}
        try:
            prices = await _with_timeout(self._remote.fetch_current_prices(mints), timeout_seconds)
        except Exception as e:
            logger.warning("Current price refresh for %d mints failed, serving cached prices: %s", len(mints), e)

        if prices:
            try:
                async with self._db.get_async_session() as session:
                    await PriceCacheRepository(session).update_current_prices(prices, now=self._now())
            except Exception as e:
                logger.warning("Failed to persist refreshed prices: %s", e)

        return {
            r: analysis_from_entry(cached[r.mint], r.timestamp, current_price=prices.get(r.mint))
            for r in requests
        }

    async def _fetch_misses(
        self,
        misses: dict[str, list[PriceRequest]],
        timeout_seconds: float | None,
    ) -> dict[PriceRequest, PriceAnalysis]:
        mints = sorted(misses)
        outcomes = await asyncio.gather(
            *(
                _with_timeout(
                    self._remote.fetch_analysis(mint, min(r.timestamp for r in misses[mint])),
                    timeout_seconds,
                )
                for mint in mints
            ),
            return_exceptions=True,
        )

        resolved: dict[PriceRequest, PriceAnalysis] = {}
        for mint, outcome in zip(mints, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                _log_unit_failure(mint, outcome)
                continue
            if outcome is None:
                logger.debug("No price history for %s", mint)
                continue

            await self._store(outcome)
            for request in misses[mint]:
                trade_price = price_at(outcome.history, request.timestamp)
                resolved[request] = PriceAnalysis(
                    mint=outcome.mint,
                    purchase_price=outcome.purchase_price,
                    purchase_timestamp=outcome.purchase_timestamp,
                    current_price=outcome.current_price,
                    ath_price=outcome.ath_price,
                    ath_timestamp=outcome.ath_timestamp,
                    trade_price=outcome.purchase_price if trade_price is None else trade_price,
                    history=outcome.history,
                )
        return resolved

    async def _store(self, analysis: PriceAnalysis) -> None:
        dto = PriceCacheDTO(
            mint=analysis.mint,
            purchase_price=analysis.purchase_price,
            purchase_timestamp=analysis.purchase_timestamp,
            current_price=analysis.current_price,
            current_price_updated_at=self._now(),
            ath_price=analysis.ath_price,
            ath_timestamp=analysis.ath_timestamp,
            price_history=[point.to_dict() for point in analysis.history],
        )
        try:
            async with self._db.get_async_session() as session:
                await PriceCacheRepository(session).upsert(dto)
        except Exception as e:
            logger.warning("Failed to cache prices for %s: %s", analysis.mint, e)


async def _with_timeout(coro: Awaitable[T], timeout_seconds: float | None) -> T:
    if timeout_seconds is None:
        return await coro
    return await asyncio.wait_for(coro, timeout=timeout_seconds)


def _log_unit_failure(mint: str, error: BaseException) -> None:
    if isinstance(error, TimeoutError):
        logger.warning("Price lookup for %s timed out, skipping", mint)
    else:
        logger.warning("Price lookup for %s failed, skipping: %s", mint, error)
