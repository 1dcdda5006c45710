"""SQLAlchemy models for persistent storage.

This module defines the database schema for analysis jobs, per-job token
aggregates, token metadata, and the price and transaction caches.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Double,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AnalysisJobModel(Base):
    """One analysis job per wallet.

    The row is the single source of truth for a scan's progress: counters,
    resume cursors, heartbeat and the light summary are all checkpointed here.
    """

    __tablename__ = "analysis_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # pending | processing | completed | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    # full | incremental
    scan_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="full")

    total_signatures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_signatures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_batch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    current_results: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Newest signature seen by the last completed scan (incremental anchor).
    last_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Provider cursor for the next page of a full scan.
    pagination_token: Mapped[str | None] = mapped_column(String(256), nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("wallet_address", name="uq_analysis_jobs_wallet"),
        Index("idx_analysis_jobs_status_created", "status", "created_at"),
    )


class TokenAggregateModel(Base):
    """Running per-asset statistics for one job.

    Only sums and counts are authoritative; the average columns are
    recomputed from them on every write.
    """

    __tablename__ = "token_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False
    )
    mint: Mapped[str] = mapped_column(String(64), nullable=False)

    total_volume_usd: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    total_volume_native: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    total_gain_loss_pct: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    total_pnl_usd: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    total_missed_usd: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)

    trade_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priced_trades: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trades_missing_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    sum_purchase_value: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    sum_trade_value: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    sum_ath_price: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    sum_tokens_traded: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)

    average_purchase_price: Mapped[float | None] = mapped_column(Double, nullable=True)
    average_trade_price: Mapped[float | None] = mapped_column(Double, nullable=True)
    average_ath_price: Mapped[float | None] = mapped_column(Double, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("job_id", "mint", name="uq_token_aggregates_job_mint"),
        Index("idx_token_aggregates_job_missed", "job_id", "total_missed_usd"),
    )


class TokenModel(Base):
    """Asset metadata shared across jobs."""

    __tablename__ = "tokens"

    mint: Mapped[str] = mapped_column(String(64), primary_key=True)
    symbol: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class PriceCacheModel(Base):
    """Cached price analysis for one mint."""

    __tablename__ = "price_cache"

    mint: Mapped[str] = mapped_column(String(64), primary_key=True)

    purchase_price: Mapped[float] = mapped_column(Double, nullable=False)
    purchase_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_price: Mapped[float] = mapped_column(Double, nullable=False)
    current_price_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    ath_price: Mapped[float] = mapped_column(Double, nullable=False)
    ath_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # [{"unixTime": int, "value": float}, ...] in ascending time order
    price_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_price_cache_created_at", "created_at"),)


class TransactionCacheModel(Base):
    """Decoded, per-signature trade extract (immutable once written)."""

    __tablename__ = "transaction_cache"

    signature: Mapped[str] = mapped_column(String(128), primary_key=True)
    block_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    native_change: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    # [{"mint": str, "amount": float, "side": "buy"|"sell"}, ...]
    trades: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_transaction_cache_created_at", "created_at"),)
