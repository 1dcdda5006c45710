"""In-memory providers and raw transaction builders shared by the tests."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any

from solana_wallet_analyzer.ingestor.http import ProviderTransientError
from solana_wallet_analyzer.ingestor.models import AssetMetadata, PricePoint, TransactionPage

WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
BASE_TIME = 1_700_000_000
LAMPORTS = 1_000_000_000


# ============================================================================
# Raw transactions
# ============================================================================


def make_raw_transaction(
    signature: str,
    *,
    block_time: int | None,
    native_change: float = 0.0,
    token_deltas: dict[str, int] | None = None,
    signer: str = WALLET,
    failed: bool = False,
) -> dict[str, Any]:
    """Build a JSON-RPC style transaction whose signer-owned balances moved by the given deltas.

    Token amounts use zero decimals so every delta is exact.
    """
    pre_lamports = 50 * LAMPORTS
    post_lamports = pre_lamports + round(native_change * LAMPORTS)

    pre_tokens: list[dict[str, Any]] = []
    post_tokens: list[dict[str, Any]] = []
    for index, (mint, delta) in enumerate(sorted((token_deltas or {}).items()), start=1):
        before, after = (0, delta) if delta > 0 else (-delta, 0)
        for bucket, amount in ((pre_tokens, before), (post_tokens, after)):
            bucket.append(
                {
                    "accountIndex": index,
                    "mint": mint,
                    "owner": signer,
                    "uiTokenAmount": {"amount": str(amount), "decimals": 0},
                }
            )

    account_keys = [signer] + [f"ata{i}{signature[:8]}" for i in range(1, len(pre_tokens) + 1)]
    return {
        "signature": signature,
        "blockTime": block_time,
        "slot": 250_000_000,
        "transaction": {
            "signatures": [signature],
            "message": {"accountKeys": account_keys},
        },
        "meta": {
            "err": {"InstructionError": [0, "Custom"]} if failed else None,
            "fee": 5000,
            "preBalances": [pre_lamports] + [2_039_280] * len(pre_tokens),
            "postBalances": [post_lamports] + [2_039_280] * len(pre_tokens),
            "preTokenBalances": pre_tokens,
            "postTokenBalances": post_tokens,
        },
    }


# ============================================================================
# In-memory providers
# ============================================================================


class FakeTransactionSource:
    """Serves a fixed newest-first list of raw transactions in pages."""

    def __init__(
        self,
        transactions: list[dict[str, Any]],
        *,
        holdings: int = 0,
        metadata: dict[str, AssetMetadata] | None = None,
        fail_on_page_calls: Iterable[int] = (),
    ) -> None:
        self.transactions = transactions
        self.holdings = holdings
        self.metadata = metadata or {}
        self.fail_on_page_calls = set(fail_on_page_calls)
        self.page_calls: list[tuple[int, str | None]] = []
        self.metadata_calls: list[list[str]] = []

    async def fetch_transaction_page(
        self, wallet_address: str, *, limit: int, cursor: str | None = None
    ) -> TransactionPage:
        self.page_calls.append((limit, cursor))
        if len(self.page_calls) in self.fail_on_page_calls:
            raise ProviderTransientError("simulated provider outage")

        start = int(cursor) if cursor else 0
        chunk = self.transactions[start : start + limit]
        end = start + len(chunk)
        has_more = end < len(self.transactions)
        return TransactionPage(
            transactions=tuple(chunk),
            signatures=tuple(tx["signature"] for tx in chunk),
            next_cursor=str(end) if has_more else None,
            has_more=has_more,
        )

    async def fetch_latest_signature(self, wallet_address: str) -> str | None:
        return self.transactions[0]["signature"] if self.transactions else None

    async def fetch_holdings_snapshot(self, wallet_address: str) -> int:
        return self.holdings

    async def fetch_asset_metadata_batch(self, mints: Iterable[str]) -> dict[str, AssetMetadata]:
        wanted = list(mints)
        self.metadata_calls.append(wanted)
        return {mint: self.metadata[mint] for mint in wanted if mint in self.metadata}


class FakePriceSource:
    """Serves fixed price series; records every call."""

    def __init__(
        self,
        series: dict[str, list[PricePoint]],
        *,
        current: dict[str, float] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.series = series
        self.current = current if current is not None else {m: pts[-1].value for m, pts in series.items() if pts}
        self.delay_seconds = delay_seconds
        self.history_calls: list[tuple[str, int]] = []
        self.current_calls: list[list[str]] = []

    async def fetch_price_history(self, mint: str, *, time_from: int, time_to: int) -> list[PricePoint]:
        self.history_calls.append((mint, time_from))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return [p for p in self.series.get(mint, []) if time_from <= p.unix_time <= time_to]

    async def fetch_current_prices_batch(self, mints: Iterable[str]) -> dict[str, float]:
        wanted = list(mints)
        self.current_calls.append(wanted)
        return {mint: self.current[mint] for mint in wanted if mint in self.current}


def hourly_series(values: list[float], *, start: int = BASE_TIME - 3600) -> list[PricePoint]:
    return [PricePoint(unix_time=start + i * 3600, value=v) for i, v in enumerate(values)]


async def wait_until(predicate, *, timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds; background tasks get to run in between."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)
