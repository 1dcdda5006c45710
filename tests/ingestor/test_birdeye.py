"""Tests for the Birdeye client."""

from typing import Any

import httpx
import pytest

from solana_wallet_analyzer.ingestor.birdeye import BirdeyeClient
from solana_wallet_analyzer.ingestor.http import ProviderResponseError
from solana_wallet_analyzer.ingestor.models import PricePoint


def _client(handler) -> BirdeyeClient:
    return BirdeyeClient(
        api_key="birdeye-key",
        api_base="https://birdeye.example.test",
        max_retries=0,
        retry_base_delay=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _items(*points: tuple[int, float]) -> dict[str, Any]:
    return {"success": True, "data": {"items": [{"unixTime": t, "value": v} for t, v in points]}}


class TestPriceHistory:
    @pytest.mark.asyncio
    async def test_single_page(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if int(request.url.params["time_from"]) > 300:
                return httpx.Response(200, json=_items())
            return httpx.Response(200, json=_items((100, 1.0), (200, 2.0), (300, 1.5)))

        history = await _client(handler).fetch_price_history("MintA", time_from=100, time_to=1000)

        assert history == [PricePoint(100, 1.0), PricePoint(200, 2.0), PricePoint(300, 1.5)]
        params = requests[0].url.params
        assert params["address"] == "MintA"
        assert params["type"] == "1H"
        assert requests[0].headers["X-API-KEY"] == "birdeye-key"
        assert requests[0].headers["x-chain"] == "solana"

    @pytest.mark.asyncio
    async def test_pages_by_advancing_time_from(self) -> None:
        pages = {
            100: _items((100, 1.0), (200, 2.0)),
            201: _items((200, 2.0), (300, 3.0)),
            301: _items(),
        }

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=pages[int(request.url.params["time_from"])])

        history = await _client(handler).fetch_price_history("MintA", time_from=100, time_to=1000)

        assert [p.unix_time for p in history] == [100, 200, 300]

    @pytest.mark.asyncio
    async def test_skips_malformed_items(self) -> None:
        body = {"success": True, "data": {"items": [{"unixTime": 100, "value": 1.0}, {"value": 2.0}]}}

        def handler(request: httpx.Request) -> httpx.Response:
            if int(request.url.params["time_from"]) > 100:
                return httpx.Response(200, json=_items())
            return httpx.Response(200, json=body)

        history = await _client(handler).fetch_price_history("MintA", time_from=100, time_to=1000)

        assert history == [PricePoint(100, 1.0)]

    @pytest.mark.asyncio
    async def test_unsuccessful_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "message": "unknown token"})

        with pytest.raises(ProviderResponseError, match="unknown token"):
            await _client(handler).fetch_price_history("MintA", time_from=100, time_to=1000)


class TestCurrentPrices:
    @pytest.mark.asyncio
    async def test_batch(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {"MintA": {"value": 1.25}, "MintB": None, "MintC": {"value": None}},
                },
            )

        prices = await _client(handler).fetch_current_prices_batch(["MintC", "MintA", "MintB"])

        assert prices == {"MintA": 1.25}
        assert len(requests) == 1
        assert requests[0].url.params["list_address"] == "MintA,MintB,MintC"

    @pytest.mark.asyncio
    async def test_large_batches_are_chunked(self) -> None:
        chunks: list[list[str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            mints = request.url.params["list_address"].split(",")
            chunks.append(mints)
            return httpx.Response(200, json={"success": True, "data": {m: {"value": 1.0} for m in mints}})

        mints = [f"Mint{i:03d}" for i in range(150)]
        prices = await _client(handler).fetch_current_prices_batch(mints)

        assert len(prices) == 150
        assert [len(c) for c in chunks] == [100, 50]
