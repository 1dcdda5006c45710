"""Provider interfaces consumed by the analysis pipeline, and per-job throttling.

``HeliusClient`` and ``BirdeyeClient`` satisfy these protocols; tests use
in-memory fakes. The throttled adapters route every call of one job
through that job's ``AdaptiveRateLimiter``.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from solana_wallet_analyzer.ingestor.models import AssetMetadata, PricePoint, TransactionPage
from solana_wallet_analyzer.ingestor.rate_limiter import AdaptiveRateLimiter


class TransactionSource(Protocol):
    async def fetch_transaction_page(
        self, wallet_address: str, *, limit: int, cursor: str | None = None
    ) -> TransactionPage: ...

    async def fetch_latest_signature(self, wallet_address: str) -> str | None: ...

    async def fetch_holdings_snapshot(self, wallet_address: str) -> int: ...

    async def fetch_asset_metadata_batch(self, mints: Iterable[str]) -> dict[str, AssetMetadata]: ...


class PriceSource(Protocol):
    async def fetch_price_history(self, mint: str, *, time_from: int, time_to: int) -> list[PricePoint]: ...

    async def fetch_current_prices_batch(self, mints: Iterable[str]) -> dict[str, float]: ...


class ThrottledTransactionSource:
    """TransactionSource whose calls go through one job's limiter."""

    def __init__(self, source: TransactionSource, limiter: AdaptiveRateLimiter) -> None:
        self._source = source
        self._limiter = limiter

    async def fetch_transaction_page(
        self, wallet_address: str, *, limit: int, cursor: str | None = None
    ) -> TransactionPage:
        return await self._limiter.schedule(
            lambda: self._source.fetch_transaction_page(wallet_address, limit=limit, cursor=cursor)
        )

    async def fetch_latest_signature(self, wallet_address: str) -> str | None:
        return await self._limiter.schedule(lambda: self._source.fetch_latest_signature(wallet_address))

    async def fetch_holdings_snapshot(self, wallet_address: str) -> int:
        return await self._limiter.schedule(lambda: self._source.fetch_holdings_snapshot(wallet_address))

    async def fetch_asset_metadata_batch(self, mints: Iterable[str]) -> dict[str, AssetMetadata]:
        wanted = list(mints)
        return await self._limiter.schedule(lambda: self._source.fetch_asset_metadata_batch(wanted))


class ThrottledPriceSource:
    """PriceSource whose calls go through one job's limiter."""

    def __init__(self, source: PriceSource, limiter: AdaptiveRateLimiter) -> None:
        self._source = source
        self._limiter = limiter

    async def fetch_price_history(self, mint: str, *, time_from: int, time_to: int) -> list[PricePoint]:
        return await self._limiter.schedule(
            lambda: self._source.fetch_price_history(mint, time_from=time_from, time_to=time_to)
        )

    async def fetch_current_prices_batch(self, mints: Iterable[str]) -> dict[str, float]:
        wanted = list(mints)
        return await self._limiter.schedule(lambda: self._source.fetch_current_prices_batch(wanted))
