"""Per-asset aggregation and the light summary.

Aggregates hold sums and counts only; averages are always derived from
them. Everything that folds over the whole aggregate map iterates in mint
order, so a scan rebuilt from persisted rows produces exactly the same
floating-point results as one that never stopped.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from solana_wallet_analyzer.ingestor.models import PriceAnalysis
from solana_wallet_analyzer.storage.repos import TokenAggregateDTO

TOP_PAIN_POINTS = 3

# Summary fields an incremental scan cannot re-derive from a partial history.
PRESERVED_ON_INCREMENTAL = (
    "total_volume_sol",
    "total_pnl",
    "success_rate",
    "winning_trades",
    "losing_trades",
    "total_trades",
    "priced_trades",
    "trades_missing_price",
    "discarded_trades",
    "nft_count",
)


def hour_bucket(timestamp: int, bucket_seconds: int = 3600) -> int:
    """Round a unix timestamp down to its bucket start."""
    return (timestamp // bucket_seconds) * bucket_seconds


def _ratio(numerator: float, denominator: float) -> float | None:
    if denominator == 0:
        return None
    return numerator / denominator


@dataclass(frozen=True)
class TradeMetrics:
    """Monetary outcome of one priced trade."""

    amount: float
    purchase_price: float
    trade_price: float
    current_price: float
    ath_price: float
    volume_usd: float
    volume_native: float
    gain_loss_pct: float
    pnl_usd: float
    missed_usd: float


def compute_trade_metrics(
    amount: float,
    analysis: PriceAnalysis,
    *,
    tx_total_volume_usd: float,
    tx_native_change: float,
) -> TradeMetrics:
    """Compute volume, PNL and missed-opportunity value for one trade.

    The trade's share of the transaction's native-currency movement is
    proportional to its share of the transaction's USD volume.
    """
    purchase = analysis.purchase_price
    current = analysis.current_price
    ath = analysis.ath_price

    volume_usd = amount * purchase
    native_change = abs(tx_native_change)
    volume_native = 0.0
    if tx_total_volume_usd > 0 and native_change > 0:
        volume_native = (volume_usd / tx_total_volume_usd) * native_change

    gain_loss_pct = (current - purchase) / purchase * 100 if purchase > 0 else 0.0
    return TradeMetrics(
        amount=amount,
        purchase_price=purchase,
        trade_price=analysis.trade_price,
        current_price=current,
        ath_price=ath,
        volume_usd=volume_usd,
        volume_native=volume_native,
        gain_loss_pct=gain_loss_pct,
        pnl_usd=amount * (current - purchase),
        missed_usd=amount * max(0.0, ath - current),
    )


def outlier_reason(metrics: TradeMetrics, *, max_price_usd: float, max_pnl_usd: float) -> str | None:
    """Why a trade must be discarded as corrupted price data, or None."""
    if (
        metrics.purchase_price > max_price_usd
        or metrics.current_price > max_price_usd
        or metrics.ath_price > max_price_usd
    ):
        return (
            f"price above ${max_price_usd:,.0f} (purchase={metrics.purchase_price}, "
            f"current={metrics.current_price}, ath={metrics.ath_price})"
        )
    if abs(metrics.pnl_usd) > max_pnl_usd:
        return f"PNL {metrics.pnl_usd:,.2f} above ${max_pnl_usd:,.0f}"
    return None


@dataclass
class TokenAggregate:
    """In-memory running sums for one mint."""

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

    @property
    def average_purchase_price(self) -> float | None:
        return _ratio(self.sum_purchase_value, self.sum_tokens_traded)

    @property
    def average_trade_price(self) -> float | None:
        return _ratio(self.sum_trade_value, self.sum_tokens_traded)

    @property
    def average_ath_price(self) -> float | None:
        return _ratio(self.sum_ath_price, self.priced_trades)

    def add_priced_trade(self, metrics: TradeMetrics) -> None:
        self.total_volume_usd += metrics.volume_usd
        self.total_volume_native += metrics.volume_native
        self.total_gain_loss_pct += metrics.gain_loss_pct
        self.total_pnl_usd += metrics.pnl_usd
        self.total_missed_usd += metrics.missed_usd
        self.trade_count += 1
        self.priced_trades += 1
        self.sum_purchase_value += metrics.amount * metrics.purchase_price
        self.sum_trade_value += metrics.amount * metrics.trade_price
        self.sum_ath_price += metrics.ath_price
        self.sum_tokens_traded += metrics.amount

    def add_unpriced_trade(self) -> None:
        self.trade_count += 1
        self.trades_missing_price += 1

    def to_dto(self, job_id: str) -> TokenAggregateDTO:
        return TokenAggregateDTO(
            job_id=job_id,
            mint=self.mint,
            total_volume_usd=self.total_volume_usd,
            total_volume_native=self.total_volume_native,
            total_gain_loss_pct=self.total_gain_loss_pct,
            total_pnl_usd=self.total_pnl_usd,
            total_missed_usd=self.total_missed_usd,
            trade_count=self.trade_count,
            priced_trades=self.priced_trades,
            trades_missing_price=self.trades_missing_price,
            sum_purchase_value=self.sum_purchase_value,
            sum_trade_value=self.sum_trade_value,
            sum_ath_price=self.sum_ath_price,
            sum_tokens_traded=self.sum_tokens_traded,
        )

    @classmethod
    def from_dto(cls, dto: TokenAggregateDTO) -> TokenAggregate:
        return cls(
            mint=dto.mint,
            total_volume_usd=dto.total_volume_usd,
            total_volume_native=dto.total_volume_native,
            total_gain_loss_pct=dto.total_gain_loss_pct,
            total_pnl_usd=dto.total_pnl_usd,
            total_missed_usd=dto.total_missed_usd,
            trade_count=dto.trade_count,
            priced_trades=dto.priced_trades,
            trades_missing_price=dto.trades_missing_price,
            sum_purchase_value=dto.sum_purchase_value,
            sum_trade_value=dto.sum_trade_value,
            sum_ath_price=dto.sum_ath_price,
            sum_tokens_traded=dto.sum_tokens_traded,
        )


def snapshot_aggregates(
    job_id: str,
    aggregates: Mapping[str, TokenAggregate],
    *,
    mints: Iterable[str] | None = None,
) -> list[TokenAggregateDTO]:
    """Serialize (a subset of) the aggregate map into persistable rows, in mint order."""
    selected = sorted(aggregates if mints is None else set(mints) & set(aggregates))
    return [aggregates[mint].to_dto(job_id) for mint in selected]


def restore_aggregates(rows: Iterable[TokenAggregateDTO]) -> dict[str, TokenAggregate]:
    """Rebuild the aggregate map from persisted rows."""
    return {row.mint: TokenAggregate.from_dto(row) for row in sorted(rows, key=lambda r: r.mint)}


@dataclass
class ScanCounters:
    """Wallet-level scalar counters that are not derivable from the aggregate map."""

    total_transactions: int = 0
    total_volume_sol: float = 0.0
    total_pnl: float = 0.0
    total_trades: int = 0
    priced_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    trades_missing_price: int = 0
    discarded_trades: int = 0
    nft_count: int = 0

    @property
    def success_rate(self) -> float:
        if self.priced_trades == 0:
            return 0.0
        return round(self.winning_trades / self.priced_trades * 100, 2)

    @classmethod
    def from_summary(cls, summary: Mapping[str, Any]) -> ScanCounters:
        """Restore counters from a light summary.

        Raises:
            ValueError: If a required field is missing or has the wrong type.
        """
        try:
            return cls(
                total_transactions=int(summary["total_transactions"]),
                total_volume_sol=float(summary["total_volume_sol"]),
                total_pnl=float(summary["total_pnl"]),
                total_trades=int(summary["total_trades"]),
                priced_trades=int(summary["priced_trades"]),
                winning_trades=int(summary["winning_trades"]),
                losing_trades=int(summary["losing_trades"]),
                trades_missing_price=int(summary["trades_missing_price"]),
                discarded_trades=int(summary.get("discarded_trades", 0)),
                nft_count=int(summary["nft_count"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Light summary is not restorable: {e!r}") from e


def _performer(aggregate: TokenAggregate, symbols: Mapping[str, str | None]) -> dict[str, Any]:
    return {
        "mint": aggregate.mint,
        "symbol": symbols.get(aggregate.mint),
        "total_pnl_usd": aggregate.total_pnl_usd,
    }


def _pain_point(aggregate: TokenAggregate, symbols: Mapping[str, str | None]) -> dict[str, Any]:
    average_ath = aggregate.average_ath_price
    average_trade = aggregate.average_trade_price
    distance = None
    if average_ath and average_trade is not None:
        distance = (average_ath - average_trade) / average_ath * 100
    return {
        "mint": aggregate.mint,
        "symbol": symbols.get(aggregate.mint),
        "total_missed_usd": aggregate.total_missed_usd,
        "average_ath_price": average_ath,
        "average_trade_price": average_trade,
        "ath_distance_pct": distance,
    }


def build_light_summary(
    aggregates: Mapping[str, TokenAggregate],
    counters: ScanCounters,
    *,
    symbols: Mapping[str, str | None] | None = None,
) -> dict[str, Any]:
    """Compact wallet-level snapshot stored on the job record after every batch."""
    symbols = symbols or {}
    ordered = [aggregates[mint] for mint in sorted(aggregates)]
    priced = [a for a in ordered if a.priced_trades > 0]

    total_missed = 0.0
    for aggregate in ordered:
        total_missed += aggregate.total_missed_usd

    best = None
    worst = None
    if priced:
        # max/min keep the first (lowest mint) on ties.
        best = _performer(max(priced, key=lambda a: a.total_pnl_usd), symbols)
        worst = _performer(min(priced, key=lambda a: a.total_pnl_usd), symbols)

    pain_candidates = sorted(
        (a for a in ordered if a.total_missed_usd > 0),
        key=lambda a: (-a.total_missed_usd, a.mint),
    )

    return {
        "total_missed_usd": total_missed,
        "total_volume_sol": counters.total_volume_sol,
        "total_pnl": counters.total_pnl,
        "success_rate": counters.success_rate,
        "winning_trades": counters.winning_trades,
        "losing_trades": counters.losing_trades,
        "total_trades": counters.total_trades,
        "priced_trades": counters.priced_trades,
        "trades_missing_price": counters.trades_missing_price,
        "discarded_trades": counters.discarded_trades,
        "tokens_discovered": len(ordered),
        "total_transactions": counters.total_transactions,
        "nft_count": counters.nft_count,
        "tokens_in_profit": sum(1 for a in priced if a.total_pnl_usd > 0),
        "tokens_in_loss": sum(1 for a in priced if a.total_pnl_usd < 0),
        "best_performer": best,
        "worst_performer": worst,
        "top_pain_points": [_pain_point(a, symbols) for a in pain_candidates[:TOP_PAIN_POINTS]],
    }
