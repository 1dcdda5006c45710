"""Repository pattern implementations for data access.

This module provides data access abstractions for analysis jobs, token
aggregates, token metadata, and the price and transaction caches.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from solana_wallet_analyzer.storage.models import (
    AnalysisJobModel,
    PriceCacheModel,
    TokenAggregateModel,
    TokenModel,
    TransactionCacheModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUSES = (JOB_STATUS_PENDING, JOB_STATUS_PROCESSING, JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)

SCAN_MODE_FULL = "full"
SCAN_MODE_INCREMENTAL = "incremental"

UPSERT_CHUNK_SIZE = 50


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back; every timestamp is written in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _safe_ratio(numerator: float, denominator: float) -> float | None:
    if denominator == 0:
        return None
    return numerator / denominator


# ============================================================================
# Analysis jobs
# ============================================================================


@dataclass
class JobDTO:
    """Data transfer object for analysis jobs."""

    id: str
    wallet_address: str
    agent_id: str
    status: str
    scan_mode: str = SCAN_MODE_FULL
    total_signatures: int = 0
    processed_signatures: int = 0
    current_batch: int = 0
    current_results: dict[str, Any] | None = None
    last_signature: str | None = None
    pagination_token: str | None = None
    error: str | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None

    @classmethod
    def from_model(cls, model: AnalysisJobModel) -> JobDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            agent_id=model.agent_id,
            status=model.status,
            scan_mode=model.scan_mode,
            total_signatures=model.total_signatures,
            processed_signatures=model.processed_signatures,
            current_batch=model.current_batch,
            current_results=model.current_results,
            last_signature=model.last_signature,
            pagination_token=model.pagination_token,
            error=model.error,
            retry_count=model.retry_count,
            created_at=_as_utc(model.created_at),
            started_at=_as_utc(model.started_at),
            completed_at=_as_utc(model.completed_at),
            last_heartbeat=_as_utc(model.last_heartbeat),
        )

    def is_stale(self, *, stale_before: datetime) -> bool:
        """Whether a processing job's liveness signal predates ``stale_before``."""
        reference = self.last_heartbeat or self.started_at
        return reference is not None and reference < stale_before


class JobRepository:
    """Repository for analysis job records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, job_id: str) -> JobDTO | None:
        result = await self.session.execute(select(AnalysisJobModel).where(AnalysisJobModel.id == job_id))
        model = result.scalar_one_or_none()
        return JobDTO.from_model(model) if model else None

    async def get_by_wallet(self, wallet_address: str) -> JobDTO | None:
        result = await self.session.execute(
            select(AnalysisJobModel)
            .where(AnalysisJobModel.wallet_address == wallet_address)
            .order_by(AnalysisJobModel.created_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return JobDTO.from_model(model) if model else None

    async def create(
        self,
        wallet_address: str,
        *,
        agent_id: str,
        created_at: datetime | None = None,
    ) -> JobDTO:
        model = AnalysisJobModel(
            id=str(uuid.uuid4()),
            wallet_address=wallet_address,
            agent_id=agent_id,
            status=JOB_STATUS_PENDING,
            scan_mode=SCAN_MODE_FULL,
            total_signatures=0,
            processed_signatures=0,
            current_batch=0,
            retry_count=0,
            created_at=created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return JobDTO.from_model(model)

    async def count_by_status(self, status: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(AnalysisJobModel).where(AnalysisJobModel.status == status)
        )
        return int(result.scalar_one())

    async def count_all_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(AnalysisJobModel.status, func.count()).group_by(AnalysisJobModel.status)
        )
        counts = {status: 0 for status in JOB_STATUSES}
        for status, count in result.all():
            counts[str(status)] = int(count)
        return counts

    async def list_pending(self, *, limit: int) -> list[JobDTO]:
        """Oldest pending jobs first (FIFO admission)."""
        result = await self.session.execute(
            select(AnalysisJobModel)
            .where(AnalysisJobModel.status == JOB_STATUS_PENDING)
            .order_by(AnalysisJobModel.created_at.asc(), AnalysisJobModel.id.asc())
            .limit(limit)
        )
        return [JobDTO.from_model(m) for m in result.scalars().all()]

    async def list_stale_processing(self, *, stale_before: datetime) -> list[JobDTO]:
        result = await self.session.execute(
            select(AnalysisJobModel)
            .where(AnalysisJobModel.status == JOB_STATUS_PROCESSING)
            .where(
                sa.or_(
                    AnalysisJobModel.last_heartbeat < stale_before,
                    sa.and_(
                        AnalysisJobModel.last_heartbeat.is_(None),
                        AnalysisJobModel.started_at < stale_before,
                    ),
                )
            )
            .order_by(AnalysisJobModel.created_at.asc())
        )
        return [JobDTO.from_model(m) for m in result.scalars().all()]

    async def claim(self, job_id: str, *, now: datetime | None = None) -> bool:
        """Atomically move a pending job to processing."""
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .where(AnalysisJobModel.status == JOB_STATUS_PENDING)
            .values(status=JOB_STATUS_PROCESSING, started_at=now, last_heartbeat=now, error=None)
        )
        return result.rowcount == 1

    async def reclaim(self, job_id: str, *, stale_before: datetime, now: datetime | None = None) -> bool:
        """Atomically take over a processing job whose heartbeat went stale.

        Only one caller can win: the heartbeat condition no longer holds once
        the first reclaim refreshed it.
        """
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .where(AnalysisJobModel.status == JOB_STATUS_PROCESSING)
            .where(
                sa.or_(
                    AnalysisJobModel.last_heartbeat < stale_before,
                    sa.and_(
                        AnalysisJobModel.last_heartbeat.is_(None),
                        AnalysisJobModel.started_at < stale_before,
                    ),
                )
            )
            .values(
                last_heartbeat=now,
                retry_count=AnalysisJobModel.retry_count + 1,
                error=None,
            )
        )
        return result.rowcount == 1

    async def queue_incremental(self, job_id: str) -> bool:
        """Atomically return a completed job to pending for an incremental scan.

        The previous summary and aggregates stay in place until the scan finishes.
        """
        result = await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .where(AnalysisJobModel.status == JOB_STATUS_COMPLETED)
            .values(
                status=JOB_STATUS_PENDING,
                scan_mode=SCAN_MODE_INCREMENTAL,
                error=None,
            )
        )
        return result.rowcount == 1

    async def requeue_failed(self, job_id: str) -> bool:
        """Return a failed full scan to pending, keeping its checkpoint."""
        result = await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .where(AnalysisJobModel.status == JOB_STATUS_FAILED)
            .values(
                status=JOB_STATUS_PENDING,
                retry_count=AnalysisJobModel.retry_count + 1,
                error=None,
                completed_at=None,
            )
        )
        return result.rowcount == 1

    async def restore_completed(self, job_id: str) -> bool:
        """Return a failed incremental scan to its previous completed state."""
        result = await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .where(AnalysisJobModel.status == JOB_STATUS_FAILED)
            .where(AnalysisJobModel.scan_mode == SCAN_MODE_INCREMENTAL)
            .values(status=JOB_STATUS_COMPLETED, scan_mode=SCAN_MODE_FULL)
        )
        return result.rowcount == 1

    async def heartbeat(self, job_id: str, *, now: datetime | None = None) -> None:
        await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .values(last_heartbeat=now or datetime.now(UTC))
        )

    async def save_checkpoint(
        self,
        job_id: str,
        *,
        processed_signatures: int,
        current_batch: int,
        summary: dict[str, Any],
        pagination_token: str | None,
        last_signature: str | None,
        now: datetime | None = None,
    ) -> None:
        await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .values(
                processed_signatures=processed_signatures,
                total_signatures=processed_signatures,
                current_batch=current_batch,
                current_results=summary,
                pagination_token=pagination_token,
                last_signature=last_signature,
                last_heartbeat=now or datetime.now(UTC),
            )
        )

    async def mark_completed(
        self,
        job_id: str,
        *,
        summary: dict[str, Any],
        processed_signatures: int,
        last_signature: str | None,
        now: datetime | None = None,
    ) -> None:
        now = now or datetime.now(UTC)
        await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .values(
                status=JOB_STATUS_COMPLETED,
                scan_mode=SCAN_MODE_FULL,
                current_results=summary,
                processed_signatures=processed_signatures,
                total_signatures=processed_signatures,
                last_signature=last_signature,
                pagination_token=None,
                error=None,
                completed_at=now,
                last_heartbeat=now,
            )
        )

    async def mark_failed(self, job_id: str, *, error: str, now: datetime | None = None) -> None:
        await self.session.execute(
            update(AnalysisJobModel)
            .execution_options(synchronize_session=False)
            .where(AnalysisJobModel.id == job_id)
            .values(status=JOB_STATUS_FAILED, error=error, completed_at=now or datetime.now(UTC))
        )

    async def delete(self, job_id: str) -> None:
        # Aggregates are removed explicitly (manual cascade for portability).
        await self.session.execute(
            delete(TokenAggregateModel)
            .where(TokenAggregateModel.job_id == job_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(AnalysisJobModel)
            .where(AnalysisJobModel.id == job_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    async def delete_finished_before(self, *, status: str, before: datetime) -> int:
        """Purge terminal jobs (and their aggregates) finished before ``before``."""
        ids_result = await self.session.execute(
            select(AnalysisJobModel.id)
            .where(AnalysisJobModel.status == status)
            .where(AnalysisJobModel.completed_at < before)
        )
        job_ids = [row[0] for row in ids_result.all()]
        if not job_ids:
            return 0
        await self.session.execute(
            delete(TokenAggregateModel)
            .where(TokenAggregateModel.job_id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(AnalysisJobModel)
            .where(AnalysisJobModel.id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return len(job_ids)


# ============================================================================
# Token aggregates
# ============================================================================


@dataclass
class TokenAggregateDTO:
    """Persisted per-asset sums for one job.

    Averages are never stored independently of their sums; the properties
    below are the only way they are derived.
    """

    job_id: str
    mint: str
    total_volume_usd: float = 0.0
    total_volume_native: float = 0.0
    total_gain_loss_pct: float = 0.0
    total_pnl_usd: float = 0.0
    total_missed_usd: float = 0.0
    trade_count: int = 0
    priced_trades: int = 0
    trades_missing_price: int = 0
    sum_purchase_value: float = 0.0
    sum_trade_value: float = 0.0
    sum_ath_price: float = 0.0
    sum_tokens_traded: float = 0.0
    symbol: str | None = None
    name: str | None = None

    @property
    def average_purchase_price(self) -> float | None:
        return _safe_ratio(self.sum_purchase_value, self.sum_tokens_traded)

    @property
    def average_trade_price(self) -> float | None:
        return _safe_ratio(self.sum_trade_value, self.sum_tokens_traded)

    @property
    def average_ath_price(self) -> float | None:
        return _safe_ratio(self.sum_ath_price, self.priced_trades)

    @classmethod
    def from_model(
        cls,
        model: TokenAggregateModel,
        *,
        symbol: str | None = None,
        name: str | None = None,
    ) -> TokenAggregateDTO:
        return cls(
            job_id=model.job_id,
            mint=model.mint,
            total_volume_usd=model.total_volume_usd,
            total_volume_native=model.total_volume_native,
            total_gain_loss_pct=model.total_gain_loss_pct,
            total_pnl_usd=model.total_pnl_usd,
            total_missed_usd=model.total_missed_usd,
            trade_count=model.trade_count,
            priced_trades=model.priced_trades,
            trades_missing_price=model.trades_missing_price,
            sum_purchase_value=model.sum_purchase_value,
            sum_trade_value=model.sum_trade_value,
            sum_ath_price=model.sum_ath_price,
            sum_tokens_traded=model.sum_tokens_traded,
            symbol=symbol,
            name=name,
        )

    def to_values(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "mint": self.mint,
            "total_volume_usd": self.total_volume_usd,
            "total_volume_native": self.total_volume_native,
            "total_gain_loss_pct": self.total_gain_loss_pct,
            "total_pnl_usd": self.total_pnl_usd,
            "total_missed_usd": self.total_missed_usd,
            "trade_count": self.trade_count,
            "priced_trades": self.priced_trades,
            "trades_missing_price": self.trades_missing_price,
            "sum_purchase_value": self.sum_purchase_value,
            "sum_trade_value": self.sum_trade_value,
            "sum_ath_price": self.sum_ath_price,
            "sum_tokens_traded": self.sum_tokens_traded,
            "average_purchase_price": self.average_purchase_price,
            "average_trade_price": self.average_trade_price,
            "average_ath_price": self.average_ath_price,
        }


_AGGREGATE_UPDATE_COLUMNS = (
    "total_volume_usd",
    "total_volume_native",
    "total_gain_loss_pct",
    "total_pnl_usd",
    "total_missed_usd",
    "trade_count",
    "priced_trades",
    "trades_missing_price",
    "sum_purchase_value",
    "sum_trade_value",
    "sum_ath_price",
    "sum_tokens_traded",
    "average_purchase_price",
    "average_trade_price",
    "average_ath_price",
)


class TokenAggregateRepository:
    """Repository for per-job token aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, aggregates: Sequence[TokenAggregateDTO]) -> int:
        """Upsert aggregates keyed by (job_id, mint), in chunks."""
        if not aggregates:
            return 0
        now = datetime.now(UTC)
        for chunk in _chunks(list(aggregates), UPSERT_CHUNK_SIZE):
            rows = [{**dto.to_values(), "updated_at": now} for dto in chunk]
            stmt = _dialect_insert(self.session, TokenAggregateModel).values(rows)
            set_ = {col: getattr(stmt.excluded, col) for col in _AGGREGATE_UPDATE_COLUMNS}
            set_["updated_at"] = now
            stmt = stmt.on_conflict_do_update(index_elements=["job_id", "mint"], set_=set_)
            await self.session.execute(stmt)
        await self.session.flush()
        return len(aggregates)

    async def list_for_job(self, job_id: str) -> list[TokenAggregateDTO]:
        result = await self.session.execute(
            select(TokenAggregateModel)
            .where(TokenAggregateModel.job_id == job_id)
            .order_by(TokenAggregateModel.mint.asc())
        )
        return [TokenAggregateDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_job(self, job_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(TokenAggregateModel).where(TokenAggregateModel.job_id == job_id)
        )
        return int(result.scalar_one())

    async def page_for_job(self, job_id: str, *, offset: int, limit: int) -> list[TokenAggregateDTO]:
        """Aggregates ordered by missed-opportunity USD, with token metadata joined in."""
        result = await self.session.execute(
            select(TokenAggregateModel, TokenModel.symbol, TokenModel.name)
            .outerjoin(TokenModel, TokenModel.mint == TokenAggregateModel.mint)
            .where(TokenAggregateModel.job_id == job_id)
            .order_by(TokenAggregateModel.total_missed_usd.desc(), TokenAggregateModel.mint.asc())
            .offset(offset)
            .limit(limit)
        )
        return [
            TokenAggregateDTO.from_model(model, symbol=symbol, name=name)
            for model, symbol, name in result.all()
        ]

    async def delete_for_job(self, job_id: str) -> int:
        result = await self.session.execute(
            delete(TokenAggregateModel)
            .where(TokenAggregateModel.job_id == job_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return int(result.rowcount or 0)


# ============================================================================
# Token metadata
# ============================================================================


@dataclass(frozen=True)
class TokenMetadataDTO:
    mint: str
    symbol: str | None = None
    name: str | None = None


class TokenMetadataRepository:
    """Repository for asset symbol/name metadata."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_many(self, mints: Iterable[str]) -> dict[str, TokenMetadataDTO]:
        wanted = sorted(set(mints))
        if not wanted:
            return {}
        result = await self.session.execute(select(TokenModel).where(TokenModel.mint.in_(wanted)))
        return {
            m.mint: TokenMetadataDTO(mint=m.mint, symbol=m.symbol, name=m.name) for m in result.scalars().all()
        }

    async def upsert_many(self, metadata: Iterable[TokenMetadataDTO]) -> None:
        """Upsert metadata; null incoming values never overwrite stored ones."""
        rows_by_mint = {m.mint: m for m in metadata}
        if not rows_by_mint:
            return
        now = datetime.now(UTC)
        ordered = [rows_by_mint[mint] for mint in sorted(rows_by_mint)]
        for chunk in _chunks(ordered, UPSERT_CHUNK_SIZE):
            rows = [
                {"mint": m.mint, "symbol": m.symbol, "name": m.name, "created_at": now, "updated_at": now}
                for m in chunk
            ]
            stmt = _dialect_insert(self.session, TokenModel).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["mint"],
                set_={
                    "symbol": func.coalesce(stmt.excluded.symbol, TokenModel.symbol),
                    "name": func.coalesce(stmt.excluded.name, TokenModel.name),
                    "updated_at": now,
                },
            )
            await self.session.execute(stmt)
        await self.session.flush()


# ============================================================================
# Price cache
# ============================================================================


@dataclass
class PriceCacheDTO:
    """Data transfer object for cached price analyses."""

    mint: str
    purchase_price: float
    purchase_timestamp: int
    current_price: float
    current_price_updated_at: datetime
    ath_price: float
    ath_timestamp: int
    price_history: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PriceCacheModel) -> PriceCacheDTO:
        updated_at = model.current_price_updated_at
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=UTC)
        return cls(
            mint=model.mint,
            purchase_price=model.purchase_price,
            purchase_timestamp=model.purchase_timestamp,
            current_price=model.current_price,
            current_price_updated_at=updated_at,
            ath_price=model.ath_price,
            ath_timestamp=model.ath_timestamp,
            price_history=list(model.price_history or []),
            created_at=_as_utc(model.created_at),
        )


class PriceCacheRepository:
    """Repository for the per-mint price cache."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_many(self, mints: Iterable[str]) -> dict[str, PriceCacheDTO]:
        wanted = sorted(set(mints))
        if not wanted:
            return {}
        result = await self.session.execute(select(PriceCacheModel).where(PriceCacheModel.mint.in_(wanted)))
        return {m.mint: PriceCacheDTO.from_model(m) for m in result.scalars().all()}

    async def upsert(self, dto: PriceCacheDTO) -> None:
        """Upsert a freshly fetched analysis.

        The stored purchase point only moves to an earlier timestamp and the
        stored ATH only moves up; the current price always takes the new value.
        """
        now = datetime.now(UTC)
        values = {
            "mint": dto.mint,
            "purchase_price": dto.purchase_price,
            "purchase_timestamp": dto.purchase_timestamp,
            "current_price": dto.current_price,
            "current_price_updated_at": dto.current_price_updated_at,
            "ath_price": dto.ath_price,
            "ath_timestamp": dto.ath_timestamp,
            "price_history": dto.price_history,
            "created_at": now,
            "updated_at": now,
        }
        stmt = _dialect_insert(self.session, PriceCacheModel).values(**values)
        earlier = stmt.excluded.purchase_timestamp < PriceCacheModel.purchase_timestamp
        higher = stmt.excluded.ath_price > PriceCacheModel.ath_price
        stmt = stmt.on_conflict_do_update(
            index_elements=["mint"],
            set_={
                "purchase_price": sa.case(
                    (earlier, stmt.excluded.purchase_price), else_=PriceCacheModel.purchase_price
                ),
                "purchase_timestamp": sa.case(
                    (earlier, stmt.excluded.purchase_timestamp), else_=PriceCacheModel.purchase_timestamp
                ),
                "price_history": sa.case(
                    (
                        stmt.excluded.purchase_timestamp <= PriceCacheModel.purchase_timestamp,
                        stmt.excluded.price_history,
                    ),
                    else_=PriceCacheModel.price_history,
                ),
                "ath_price": sa.case((higher, stmt.excluded.ath_price), else_=PriceCacheModel.ath_price),
                "ath_timestamp": sa.case((higher, stmt.excluded.ath_timestamp), else_=PriceCacheModel.ath_timestamp),
                "current_price": stmt.excluded.current_price,
                "current_price_updated_at": stmt.excluded.current_price_updated_at,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def update_current_prices(self, prices: Mapping[str, float], *, now: datetime | None = None) -> int:
        """Refresh only the current-price field of existing entries."""
        now = now or datetime.now(UTC)
        updated = 0
        for mint in sorted(prices):
            result = await self.session.execute(
                update(PriceCacheModel)
                .execution_options(synchronize_session=False)
                .where(PriceCacheModel.mint == mint)
                .values(current_price=prices[mint], current_price_updated_at=now, updated_at=now)
            )
            updated += int(result.rowcount or 0)
        await self.session.flush()
        return updated

    async def delete_created_before(self, before: datetime) -> int:
        result = await self.session.execute(
            delete(PriceCacheModel)
            .where(PriceCacheModel.created_at < before)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return int(result.rowcount or 0)


# ============================================================================
# Transaction cache
# ============================================================================


@dataclass
class CachedTransactionDTO:
    """Data transfer object for cached transaction extracts."""

    signature: str
    block_time: int | None
    native_change: float
    trades: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_model(cls, model: TransactionCacheModel) -> CachedTransactionDTO:
        return cls(
            signature=model.signature,
            block_time=model.block_time,
            native_change=model.native_change,
            trades=list(model.trades or []),
        )


class TransactionCacheRepository:
    """Repository for decoded transaction extracts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_many(self, signatures: Iterable[str]) -> dict[str, CachedTransactionDTO]:
        wanted = sorted(set(signatures))
        if not wanted:
            return {}
        found: dict[str, CachedTransactionDTO] = {}
        for chunk in _chunks(wanted, 500):
            result = await self.session.execute(
                select(TransactionCacheModel).where(TransactionCacheModel.signature.in_(list(chunk)))
            )
            for model in result.scalars().all():
                found[model.signature] = CachedTransactionDTO.from_model(model)
        return found

    async def insert_many(self, dtos: Sequence[CachedTransactionDTO]) -> None:
        """Insert extracts; signatures already cached are left untouched."""
        if not dtos:
            return
        now = datetime.now(UTC)
        for chunk in _chunks(list(dtos), UPSERT_CHUNK_SIZE):
            rows = [
                {
                    "signature": dto.signature,
                    "block_time": dto.block_time,
                    "native_change": dto.native_change,
                    "trades": dto.trades,
                    "created_at": now,
                }
                for dto in chunk
            ]
            stmt = _dialect_insert(self.session, TransactionCacheModel).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["signature"])
            await self.session.execute(stmt)
        await self.session.flush()

    async def delete_created_before(self, before: datetime) -> int:
        result = await self.session.execute(
            delete(TransactionCacheModel)
            .where(TransactionCacheModel.created_at < before)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return int(result.rowcount or 0)
