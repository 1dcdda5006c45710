"""Data models for the ingestor module."""

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class BalanceChange:
    """Signed balance change of one mint for the transaction signer."""

    mint: str
    amount: float


@dataclass(frozen=True)
class DecodedTransaction:
    """Decoder output for one raw transaction."""

    signature: str
    block_time: int | None
    native_change: float
    balance_changes: tuple[BalanceChange, ...] = ()


@dataclass(frozen=True)
class TradeExtract:
    """Lightweight trade derived from a balance change."""

    mint: str
    amount: float
    side: Literal["buy", "sell"]

    @classmethod
    def from_balance_change(cls, change: BalanceChange) -> "TradeExtract":
        return cls(
            mint=change.mint,
            amount=abs(change.amount),
            side="buy" if change.amount > 0 else "sell",
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TradeExtract":
        """Create a TradeExtract from its cached JSON form."""
        side = str(data.get("side", "buy"))
        return cls(
            mint=str(data["mint"]),
            amount=float(data["amount"]),
            side="sell" if side == "sell" else "buy",
        )

    def to_dict(self) -> dict[str, Any]:
        return {"mint": self.mint, "amount": self.amount, "side": self.side}


@dataclass(frozen=True)
class TransactionRecord:
    """A transaction as seen by the analysis worker."""

    signature: str
    block_time: int | None
    native_change: float
    trades: tuple[TradeExtract, ...] = ()


@dataclass(frozen=True)
class TransactionPage:
    """One page of raw transactions from the transaction source, newest first."""

    transactions: tuple[dict[str, Any], ...]
    signatures: tuple[str, ...]
    next_cursor: str | None = None
    has_more: bool = False


@dataclass(frozen=True)
class RecordPage:
    """One page of decoded transaction records, in provider order."""

    records: tuple[TransactionRecord, ...]
    next_cursor: str | None = None
    has_more: bool = False

    @property
    def signatures(self) -> tuple[str, ...]:
        return tuple(r.signature for r in self.records)


@dataclass(frozen=True)
class PricePoint:
    """One sample of a price history series."""

    unix_time: int
    value: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PricePoint":
        return cls(unix_time=int(data["unixTime"]), value=float(data["value"]))

    def to_dict(self) -> dict[str, Any]:
        return {"unixTime": self.unix_time, "value": self.value}


@dataclass(frozen=True)
class AssetMetadata:
    """Symbol/name of an asset, either of which may be unknown."""

    mint: str
    symbol: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class PriceAnalysis:
    """Purchase, current and all-time-high prices of a mint.

    ``trade_price`` is the history sample at the requested timestamp; it
    differs from ``purchase_price`` when the cached purchase point is older
    than the trade.
    """

    mint: str
    purchase_price: float
    purchase_timestamp: int
    current_price: float
    ath_price: float
    ath_timestamp: int
    trade_price: float
    history: tuple[PricePoint, ...] = field(default=(), repr=False)
