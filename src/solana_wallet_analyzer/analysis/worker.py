"""Analysis worker: batched, checkpointed wallet scans.

A full scan walks the wallet's history newest-first in adaptively sized
batches. Each batch is priced, folded into the per-asset aggregate map, and
checkpointed in one database transaction (dirty aggregates, light summary,
progress and resume cursor), so a restarted scan continues exactly where
the last checkpoint left it.

An incremental scan re-walks only the transactions newer than the last
completed scan's newest signature and merges them into the existing
aggregates, writing everything in a single final transaction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from solana_wallet_analyzer.analysis.aggregates import (
    PRESERVED_ON_INCREMENTAL,
    ScanCounters,
    TokenAggregate,
    build_light_summary,
    compute_trade_metrics,
    hour_bucket,
    outlier_reason,
    restore_aggregates,
    snapshot_aggregates,
)
from solana_wallet_analyzer.analysis.price_cache import (
    CachedPriceResolver,
    PriceRequest,
    PriceResolver,
    RemotePriceResolver,
)
from solana_wallet_analyzer.analysis.transaction_cache import TransactionCache
from solana_wallet_analyzer.config import AnalysisSettings, RateLimitSettings
from solana_wallet_analyzer.ingestor.decoder import TransactionDecoder
from solana_wallet_analyzer.ingestor.models import PriceAnalysis, RecordPage, TransactionRecord
from solana_wallet_analyzer.ingestor.rate_limiter import (
    ProviderRateLimits,
    optimal_batch_size,
    recommended_timeout_seconds,
)
from solana_wallet_analyzer.ingestor.sources import (
    PriceSource,
    ThrottledPriceSource,
    ThrottledTransactionSource,
    TransactionSource,
)
from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.repos import (
    JOB_STATUS_PROCESSING,
    SCAN_MODE_INCREMENTAL,
    JobDTO,
    JobRepository,
    TokenAggregateRepository,
    TokenMetadataDTO,
    TokenMetadataRepository,
)

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Base exception for aborted scans."""


class ScanStalledError(AnalysisError):
    """Raised when a scan stops making progress."""


class ResumeStateError(AnalysisError):
    """Raised when persisted scan state cannot be restored."""


class JobNotFoundError(AnalysisError):
    """Raised when the job record is missing."""


@dataclass
class ScanState:
    """In-memory state of one scan."""

    aggregates: dict[str, TokenAggregate] = field(default_factory=dict)
    counters: ScanCounters = field(default_factory=ScanCounters)
    symbols: dict[str, str | None] = field(default_factory=dict)
    dirty: set[str] = field(default_factory=set)

    def touch(self, mint: str) -> TokenAggregate:
        aggregate = self.aggregates.get(mint)
        if aggregate is None:
            aggregate = self.aggregates[mint] = TokenAggregate(mint=mint)
        self.dirty.add(mint)
        return aggregate

    def summary(self) -> dict[str, Any]:
        return build_light_summary(self.aggregates, self.counters, symbols=self.symbols)


@dataclass
class JobContext:
    """Per-job provider plumbing, each call throttled by the job's own limiters."""

    transactions: TransactionCache
    transaction_source: TransactionSource
    prices: PriceResolver


class AnalysisWorker:
    """Runs full and incremental scans for claimed jobs.

    Example:
        ```python
        worker = AnalysisWorker(
            db,
            transaction_source=helius,
            price_source=birdeye,
            decoder=BalanceChangeDecoder(),
            transaction_limits=ProviderRateLimits("helius", max_rps=200, usage_percent=80),
            price_limits=ProviderRateLimits("birdeye", max_rps=50, usage_percent=80),
        )
        await worker.run_job(job_id)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        transaction_source: TransactionSource,
        price_source: PriceSource,
        decoder: TransactionDecoder,
        transaction_limits: ProviderRateLimits,
        price_limits: ProviderRateLimits,
        settings: AnalysisSettings | None = None,
        rate_limit_settings: RateLimitSettings | None = None,
    ) -> None:
        self._db = db
        self._transaction_source = transaction_source
        self._price_source = price_source
        self._decoder = decoder
        self._transaction_limits = transaction_limits
        self._price_limits = price_limits
        self._settings = settings or AnalysisSettings()
        self._rate_limit = rate_limit_settings or RateLimitSettings()

    def _build_context(self) -> JobContext:
        transaction_source = ThrottledTransactionSource(
            self._transaction_source, self._transaction_limits.create_limiter()
        )
        price_source = ThrottledPriceSource(self._price_source, self._price_limits.create_limiter())
        return JobContext(
            transactions=TransactionCache(self._db, transaction_source, self._decoder),
            transaction_source=transaction_source,
            prices=CachedPriceResolver(
                RemotePriceResolver(price_source),
                self._db,
                fresh_seconds=self._settings.price_fresh_seconds,
            ),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_job(self, job_id: str) -> None:
        """Run a claimed job in the mode recorded on it."""
        async with self._db.get_async_session() as session:
            job = await JobRepository(session).get(job_id)
        if job is None:
            logger.error("Job %s not found", job_id)
            return
        if job.status != JOB_STATUS_PROCESSING:
            logger.warning("Job %s is %s, not processing; skipping", job_id, job.status)
            return

        if job.scan_mode == SCAN_MODE_INCREMENTAL:
            await self.run_incremental_scan(job_id)
        else:
            await self.run_full_scan(job_id)

    async def run_full_scan(self, job_id: str) -> None:
        try:
            await self._full_scan(job_id)
        except Exception as e:
            logger.exception("Full scan of job %s failed", job_id)
            await self._mark_failed(job_id, e)

    async def run_incremental_scan(self, job_id: str) -> None:
        try:
            await self._incremental_scan(job_id)
        except Exception as e:
            logger.exception("Incremental scan of job %s failed", job_id)
            await self._mark_failed(job_id, e)

    # ------------------------------------------------------------------
    # Full scan
    # ------------------------------------------------------------------

    async def _full_scan(self, job_id: str) -> None:
        job = await self._load_job(job_id)
        ctx = self._build_context()
        wallet = job.wallet_address
        resuming = job.current_batch > 0

        if resuming:
            state = await self._restore_state(job)
            logger.info(
                "Resuming job %s for %s at batch %d (%d transactions, %d tokens)",
                job.id,
                wallet,
                job.current_batch,
                state.counters.total_transactions,
                len(state.aggregates),
            )
        else:
            state = ScanState()
            state.counters.nft_count = await self._holdings_snapshot(ctx, wallet)
            logger.info("Starting full scan of %s (job %s)", wallet, job.id)

        batch = job.current_batch
        cursor = job.pagination_token
        newest_signature = job.last_signature if resuming else None
        empty_batches = 0
        cut_short = False
        # A checkpoint without a cursor means the last page was already processed.
        exhausted = resuming and cursor is None

        while not exhausted:
            batch += 1
            await self._heartbeat(job.id)

            page = await self._fetch_page(ctx, wallet, cursor)
            if not page.records:
                empty_batches += 1
                logger.debug("Job %s batch %d was empty (%d in a row)", job.id, batch, empty_batches)
                if empty_batches >= self._settings.max_consecutive_empty_batches:
                    raise ScanStalledError(f"Aborted after {empty_batches} consecutive empty batches")
                if not page.has_more:
                    break
                if page.next_cursor is None:
                    cut_short = True
                    break
                cursor = page.next_cursor
                await asyncio.sleep(self._settings.inter_batch_pause_seconds)
                continue

            empty_batches = 0
            if newest_signature is None:
                newest_signature = page.records[0].signature

            await self._process_batch(ctx, state, page.records)
            next_cursor = page.next_cursor if page.has_more else None
            await self._checkpoint(
                job,
                state,
                batch=batch,
                cursor=next_cursor,
                last_signature=newest_signature,
            )
            logger.debug(
                "Job %s batch %d: %d transactions (%d total), %d tokens",
                job.id,
                batch,
                len(page.records),
                state.counters.total_transactions,
                len(state.aggregates),
            )

            if not page.has_more:
                break
            if page.next_cursor is None:
                cut_short = True
                logger.warning("Provider reported more history for %s without a cursor; stopping", wallet)
                break
            cursor = page.next_cursor
            await asyncio.sleep(self._settings.inter_batch_pause_seconds)

        if state.counters.total_transactions == 0 and (batch > 1 or cut_short):
            raise ScanStalledError(f"No transactions processed across {batch} batches")

        summary = state.summary()
        async with self._db.get_async_session() as session:
            await TokenAggregateRepository(session).upsert_many(
                snapshot_aggregates(job.id, state.aggregates, mints=state.dirty)
            )
            await JobRepository(session).mark_completed(
                job.id,
                summary=summary,
                processed_signatures=state.counters.total_transactions,
                last_signature=newest_signature,
            )
        state.dirty.clear()
        logger.info(
            "Completed full scan of %s: %d transactions, %d tokens, missed $%.2f",
            wallet,
            state.counters.total_transactions,
            len(state.aggregates),
            summary["total_missed_usd"],
        )

    # ------------------------------------------------------------------
    # Incremental scan
    # ------------------------------------------------------------------

    async def _incremental_scan(self, job_id: str) -> None:
        job = await self._load_job(job_id)
        anchor = job.last_signature
        if not anchor:
            raise ResumeStateError(f"Job {job.id} has no last signature to scan forward from")

        ctx = self._build_context()
        wallet = job.wallet_address
        previous = dict(job.current_results or {})
        state = await self._restore_state(job)
        logger.info("Starting incremental scan of %s since %s", wallet, anchor)

        cursor: str | None = None
        newest_signature: str | None = None
        new_transactions = 0
        empty_batches = 0
        batch = 0

        while True:
            batch += 1
            await self._heartbeat(job.id)

            page = await self._fetch_page(ctx, wallet, cursor)
            if not page.records:
                empty_batches += 1
                if empty_batches >= self._settings.max_consecutive_empty_batches:
                    raise ScanStalledError(f"Aborted after {empty_batches} consecutive empty batches")
                if not page.has_more or page.next_cursor is None:
                    break
                cursor = page.next_cursor
                await asyncio.sleep(self._settings.inter_batch_pause_seconds)
                continue

            empty_batches = 0
            if newest_signature is None:
                newest_signature = page.records[0].signature

            signatures = page.signatures
            if anchor in signatures:
                fresh = page.records[: signatures.index(anchor)]
                done = True
            else:
                fresh = page.records
                done = not page.has_more or page.next_cursor is None

            if fresh:
                await self._process_batch(ctx, state, fresh)
                new_transactions += len(fresh)
            logger.debug("Incremental job %s batch %d: %d new transactions", job.id, batch, len(fresh))

            if done:
                break
            cursor = page.next_cursor
            await asyncio.sleep(self._settings.inter_batch_pause_seconds)

        summary = state.summary()
        for key in PRESERVED_ON_INCREMENTAL:
            if key in previous:
                summary[key] = previous[key]
        summary["total_transactions"] = int(previous.get("total_transactions", 0)) + new_transactions

        async with self._db.get_async_session() as session:
            await TokenAggregateRepository(session).upsert_many(
                snapshot_aggregates(job.id, state.aggregates, mints=state.dirty)
            )
            await JobRepository(session).mark_completed(
                job.id,
                summary=summary,
                processed_signatures=job.processed_signatures + new_transactions,
                last_signature=newest_signature or anchor,
            )
        state.dirty.clear()
        logger.info("Completed incremental scan of %s: %d new transactions", wallet, new_transactions)

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def _process_batch(
        self,
        ctx: JobContext,
        state: ScanState,
        records: Sequence[TransactionRecord],
    ) -> None:
        """Price one batch of transactions and fold it into ``state``."""
        bucket_seconds = self._settings.hour_bucket_seconds

        # One price unit per (mint, hour bucket), keyed at its first trade's timestamp.
        units: dict[tuple[str, int], int] = {}
        for record in records:
            if record.block_time is None:
                continue
            for trade in record.trades:
                if trade.amount > 0:
                    key = (trade.mint, hour_bucket(record.block_time, bucket_seconds))
                    units.setdefault(key, record.block_time)

        await self._resolve_metadata(ctx, state, {mint for mint, _ in units})
        prices = await self._resolve_prices(ctx, units)

        counters = state.counters
        for record in records:
            counters.total_transactions += 1
            counters.total_volume_sol += abs(record.native_change)

            analyses: list[PriceAnalysis | None] = []
            tx_total_volume_usd = 0.0
            for trade in record.trades:
                analysis = None
                if record.block_time is not None:
                    analysis = prices.get((trade.mint, hour_bucket(record.block_time, bucket_seconds)))
                analyses.append(analysis)
                if analysis is not None and trade.amount > 0:
                    tx_total_volume_usd += trade.amount * analysis.purchase_price

            for trade, analysis in zip(record.trades, analyses, strict=True):
                if trade.amount <= 0:
                    continue
                counters.total_trades += 1

                if analysis is None:
                    counters.trades_missing_price += 1
                    state.touch(trade.mint).add_unpriced_trade()
                    continue

                metrics = compute_trade_metrics(
                    trade.amount,
                    analysis,
                    tx_total_volume_usd=tx_total_volume_usd,
                    tx_native_change=record.native_change,
                )
                reason = outlier_reason(
                    metrics,
                    max_price_usd=self._settings.max_price_usd,
                    max_pnl_usd=self._settings.max_pnl_usd,
                )
                if reason is not None:
                    counters.discarded_trades += 1
                    logger.warning("Discarding trade of %s in %s: %s", trade.mint, record.signature, reason)
                    continue

                counters.priced_trades += 1
                if metrics.gain_loss_pct > 0:
                    counters.winning_trades += 1
                elif metrics.gain_loss_pct < 0:
                    counters.losing_trades += 1
                counters.total_pnl += metrics.pnl_usd
                state.touch(trade.mint).add_priced_trade(metrics)

    async def _resolve_prices(
        self, ctx: JobContext, units: dict[tuple[str, int], int]
    ) -> dict[tuple[str, int], PriceAnalysis]:
        if not units:
            return {}
        timeout = max(
            self._settings.min_price_timeout_seconds,
            recommended_timeout_seconds(
                len(units),
                max_rps=self._price_limits.max_rps,
                usage_percent=self._price_limits.usage_percent,
                active_jobs=self._price_limits.counter.snapshot(),
                calls_per_unit=self._rate_limit.calls_per_token,
            ),
            len(units) * self._settings.per_token_timeout_seconds,
        )
        requests = {key: PriceRequest(mint=key[0], timestamp=ts) for key, ts in units.items()}
        resolved = await ctx.prices.resolve(requests.values(), timeout_seconds=timeout)
        return {key: resolved[request] for key, request in requests.items() if request in resolved}

    async def _resolve_metadata(self, ctx: JobContext, state: ScanState, mints: Iterable[str]) -> None:
        unknown = sorted(set(mints) - set(state.symbols))
        if not unknown:
            return

        async with self._db.get_async_session() as session:
            stored = await TokenMetadataRepository(session).get_many(unknown)
        for mint, meta in stored.items():
            state.symbols[mint] = meta.symbol

        missing = [mint for mint in unknown if mint not in stored]
        if not missing:
            return
        try:
            fetched = await ctx.transaction_source.fetch_asset_metadata_batch(missing)
        except Exception as e:
            logger.warning("Metadata lookup for %d mints failed: %s", len(missing), e)
            return

        rows = [TokenMetadataDTO(mint=m.mint, symbol=m.symbol, name=m.name) for m in fetched.values()]
        if rows:
            try:
                async with self._db.get_async_session() as session:
                    await TokenMetadataRepository(session).upsert_many(rows)
            except Exception as e:
                logger.warning("Failed to store metadata for %d mints: %s", len(rows), e)
        for mint in missing:
            meta = fetched.get(mint)
            state.symbols[mint] = meta.symbol if meta else None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch_page(self, ctx: JobContext, wallet: str, cursor: str | None) -> RecordPage:
        limit = optimal_batch_size(
            max_rps=self._price_limits.max_rps,
            usage_percent=self._price_limits.usage_percent,
            active_jobs=self._price_limits.counter.snapshot(),
            target_seconds=self._rate_limit.target_batch_seconds,
            calls_per_unit=self._rate_limit.calls_per_token,
            min_size=self._settings.min_batch_size,
            max_size=self._settings.max_batch_size,
        )
        try:
            return await asyncio.wait_for(
                ctx.transactions.fetch_page(wallet, limit=limit, cursor=cursor),
                timeout=self._settings.fetch_timeout_seconds,
            )
        except TimeoutError as e:
            raise TimeoutError(
                f"Transaction fetch timed out after {self._settings.fetch_timeout_seconds:.0f}s"
            ) from e

    async def _holdings_snapshot(self, ctx: JobContext, wallet: str) -> int:
        try:
            return await ctx.transaction_source.fetch_holdings_snapshot(wallet)
        except Exception as e:
            logger.warning("Holdings snapshot for %s failed: %s", wallet, e)
            return 0

    async def _load_job(self, job_id: str) -> JobDTO:
        async with self._db.get_async_session() as session:
            job = await JobRepository(session).get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def _restore_state(self, job: JobDTO) -> ScanState:
        try:
            counters = ScanCounters.from_summary(job.current_results or {})
        except ValueError as e:
            raise ResumeStateError(f"Cannot resume job {job.id}: {e}") from e

        async with self._db.get_async_session() as session:
            rows = await TokenAggregateRepository(session).list_for_job(job.id)
            metadata = await TokenMetadataRepository(session).get_many(row.mint for row in rows)

        return ScanState(
            aggregates=restore_aggregates(rows),
            counters=counters,
            symbols={mint: meta.symbol for mint, meta in metadata.items()},
        )

    async def _checkpoint(
        self,
        job: JobDTO,
        state: ScanState,
        *,
        batch: int,
        cursor: str | None,
        last_signature: str | None,
    ) -> None:
        """Persist dirty aggregates and job progress atomically."""
        async with self._db.get_async_session() as session:
            await TokenAggregateRepository(session).upsert_many(
                snapshot_aggregates(job.id, state.aggregates, mints=state.dirty)
            )
            await JobRepository(session).save_checkpoint(
                job.id,
                processed_signatures=state.counters.total_transactions,
                current_batch=batch,
                summary=state.summary(),
                pagination_token=cursor,
                last_signature=last_signature,
            )
        state.dirty.clear()

    async def _heartbeat(self, job_id: str) -> None:
        async with self._db.get_async_session() as session:
            await JobRepository(session).heartbeat(job_id)

    async def _mark_failed(self, job_id: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        try:
            async with self._db.get_async_session() as session:
                await JobRepository(session).mark_failed(job_id, error=message)
        except Exception:
            logger.exception("Failed to record failure of job %s", job_id)
