"""Birdeye client: price history and batched current prices."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import httpx

from solana_wallet_analyzer.ingestor.http import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_TIMEOUT_SECONDS,
    JsonHttpClient,
    ProviderResponseError,
)
from solana_wallet_analyzer.ingestor.models import PricePoint

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://public-api.birdeye.so"
DEFAULT_TIMEFRAME = "1H"
MULTI_PRICE_BATCH_LIMIT = 100
MAX_HISTORY_PAGES = 50


class BirdeyeClient:
    """Async Birdeye REST client (Solana chain)."""

    def __init__(
        self,
        *,
        api_key: str,
        api_base: str = DEFAULT_API_BASE,
        timeframe: str = DEFAULT_TIMEFRAME,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeframe = timeframe
        self._http = JsonHttpClient(
            api_base,
            headers={"X-API-KEY": api_key, "x-chain": "solana", "accept": "application/json"},
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
            client=client,
        )

    async def close(self) -> None:
        await self._http.close()

    async def fetch_price_history(self, mint: str, *, time_from: int, time_to: int) -> list[PricePoint]:
        """Fetch the price series between two unix timestamps.

        Pages are requested by advancing ``time_from`` past the last returned
        sample; the merged series is de-duplicated by timestamp and sorted.
        """
        points: dict[int, PricePoint] = {}
        cursor = time_from

        for _ in range(MAX_HISTORY_PAGES):
            if cursor > time_to:
                break
            body = await self._http.request_json(
                "GET",
                "/defi/history_price",
                params={
                    "address": mint,
                    "address_type": "token",
                    "type": self._timeframe,
                    "time_from": cursor,
                    "time_to": time_to,
                },
            )
            items = _data_of(body).get("items") or []
            if not items:
                break

            last_seen = cursor - 1
            for item in items:
                try:
                    point = PricePoint.from_dict(item)
                except (KeyError, TypeError, ValueError):
                    continue
                points[point.unix_time] = point
                last_seen = max(last_seen, point.unix_time)

            if last_seen < cursor:
                break
            cursor = last_seen + 1
        else:
            logger.warning("Price history for %s truncated after %d pages", mint, MAX_HISTORY_PAGES)

        return [points[ts] for ts in sorted(points)]

    async def fetch_current_prices_batch(self, mints: Iterable[str]) -> dict[str, float]:
        """Current USD price per mint; mints without a quote are omitted."""
        wanted = sorted(set(mints))
        prices: dict[str, float] = {}
        for start in range(0, len(wanted), MULTI_PRICE_BATCH_LIMIT):
            chunk = wanted[start : start + MULTI_PRICE_BATCH_LIMIT]
            body = await self._http.request_json(
                "GET",
                "/defi/multi_price",
                params={"list_address": ",".join(chunk)},
            )
            for mint, quote in _data_of(body).items():
                value = quote.get("value") if isinstance(quote, dict) else None
                if value is None:
                    continue
                prices[str(mint)] = float(value)
        return prices


def _data_of(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ProviderResponseError(f"Unexpected Birdeye response type: {type(body).__name__}")
    if body.get("success") is False:
        raise ProviderResponseError(f"Birdeye request unsuccessful: {body.get('message')}")
    data = body.get("data")
    return data if isinstance(data, dict) else {}
