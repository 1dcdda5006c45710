"""Tests for the Helius client."""

import json
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from fakes import BASE_TIME, WALLET, make_raw_transaction
from solana_wallet_analyzer.ingestor.helius import HeliusClient
from solana_wallet_analyzer.ingestor.http import ProviderResponseError, RetryError


class RpcStub:
    """Answers JSON-RPC calls from a per-method table and records the requests."""

    def __init__(self, results: dict[str, Any]) -> None:
        self.results = results
        self.requests: list[dict[str, Any]] = []
        self.query: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        self.query.append(dict(request.url.params))
        result = self.results[payload["method"]]
        if isinstance(result, httpx.Response):
            return result
        if callable(result):
            result = result(payload["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **result})


def _client(stub: RpcStub, **kwargs: Any) -> HeliusClient:
    return HeliusClient(
        api_key="helius-key",
        rpc_url="https://rpc.example.test",
        max_retries=1,
        retry_base_delay=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(stub)),
        **kwargs,
    )


# ============================================================================
# Transaction history
# ============================================================================


class TestTransactionHistory:
    @pytest.mark.asyncio
    async def test_first_page(self) -> None:
        txs = [make_raw_transaction(f"sig{i}", block_time=BASE_TIME - i) for i in range(3)]
        stub = RpcStub({"getTransactionsForAddress": {"result": {"data": txs, "paginationToken": "tok-1"}}})
        client = _client(stub)

        page = await client.fetch_transaction_page(WALLET, limit=3)

        assert page.signatures == ("sig0", "sig1", "sig2")
        assert page.next_cursor == "tok-1"
        assert page.has_more is True
        address, options = stub.requests[0]["params"]
        assert address == WALLET
        assert options["limit"] == 3
        assert options["sortOrder"] == "desc"
        assert options["transactionDetails"] == "full"
        assert "paginationToken" not in options
        assert stub.query[0]["api-key"] == "helius-key"

    @pytest.mark.asyncio
    async def test_cursor_is_forwarded_and_last_page_has_no_more(self) -> None:
        stub = RpcStub({"getTransactionsForAddress": {"result": {"data": [], "paginationToken": None}}})
        client = _client(stub)

        page = await client.fetch_transaction_page(WALLET, limit=10, cursor="tok-9")

        assert page.transactions == ()
        assert page.has_more is False
        assert stub.requests[0]["params"][1]["paginationToken"] == "tok-9"

    @pytest.mark.asyncio
    async def test_rpc_error(self) -> None:
        stub = RpcStub({"getTransactionsForAddress": {"error": {"code": -32602, "message": "invalid address"}}})
        with pytest.raises(ProviderResponseError, match="invalid address"):
            await _client(stub).fetch_transaction_page("bad", limit=10)

    @pytest.mark.asyncio
    async def test_rate_limit_error_is_retried(self) -> None:
        stub = RpcStub({"getTransactionsForAddress": {"error": {"code": -32429, "message": "slow down"}}})
        with pytest.raises(RetryError):
            await _client(stub).fetch_transaction_page(WALLET, limit=10)
        assert len(stub.requests) == 2

    @pytest.mark.asyncio
    async def test_recovers_after_rate_limit_error(self) -> None:
        replies = iter(
            [
                {"error": {"code": -32429, "message": "slow down"}},
                {"result": [{"signature": "newest", "slot": 1}]},
            ]
        )
        stub = RpcStub({"getSignaturesForAddress": lambda params: next(replies)})

        assert await _client(stub).fetch_latest_signature(WALLET) == "newest"
        assert len(stub.requests) == 2

    @pytest.mark.asyncio
    async def test_latest_signature(self) -> None:
        stub = RpcStub({"getSignaturesForAddress": {"result": [{"signature": "newest", "slot": 1}]}})
        assert await _client(stub).fetch_latest_signature(WALLET) == "newest"
        assert stub.requests[0]["params"] == [WALLET, {"limit": 1}]

    @pytest.mark.asyncio
    async def test_latest_signature_of_empty_wallet(self) -> None:
        stub = RpcStub({"getSignaturesForAddress": {"result": []}})
        assert await _client(stub).fetch_latest_signature(WALLET) is None

    @pytest.mark.asyncio
    async def test_holdings_snapshot(self) -> None:
        stub = RpcStub({"getAssetsByOwner": {"result": {"total": 7, "items": []}}})
        assert await _client(stub).fetch_holdings_snapshot(WALLET) == 7
        assert stub.requests[0]["params"]["displayOptions"] == {"showFungible": False}


# ============================================================================
# Asset metadata
# ============================================================================


def _asset(mint: str, symbol: str | None, name: str | None = None) -> dict[str, Any]:
    return {"id": mint, "content": {"metadata": {"symbol": symbol, "name": name}}}


class TestAssetMetadata:
    @pytest.mark.asyncio
    async def test_batch_lookup(self) -> None:
        stub = RpcStub({"getAssetBatch": {"result": [_asset("MintA", "AAA", "Token A"), None]}})

        found = await _client(stub).fetch_asset_metadata_batch(["MintB", "MintA", "MintA"])

        assert set(found) == {"MintA"}
        assert found["MintA"].symbol == "AAA"
        assert found["MintA"].name == "Token A"
        assert stub.requests[0]["params"] == {"ids": ["MintA", "MintB"]}

    @pytest.mark.asyncio
    async def test_symbol_falls_back_to_token_info(self) -> None:
        asset = {"id": "MintA", "content": {"metadata": {}}, "token_info": {"symbol": "TI"}}
        stub = RpcStub({"getAssetBatch": {"result": [asset]}})

        found = await _client(stub).fetch_asset_metadata_batch(["MintA"])

        assert found["MintA"].symbol == "TI"
        assert found["MintA"].name is None

    @pytest.mark.asyncio
    async def test_uses_redis_cache(self) -> None:
        redis = AsyncMock()
        redis.get.side_effect = lambda key: (
            json.dumps({"symbol": "CCC", "name": None}).encode() if key.endswith("MintC") else None
        )
        stub = RpcStub({"getAssetBatch": {"result": [_asset("MintA", "AAA")]}})

        found = await _client(stub, redis=redis).fetch_asset_metadata_batch(["MintA", "MintC"])

        assert found["MintC"].symbol == "CCC"
        assert found["MintA"].symbol == "AAA"
        assert stub.requests[0]["params"] == {"ids": ["MintA"]}
        redis.set.assert_awaited_once()
        key, value = redis.set.await_args.args
        assert key == "helius:asset_meta:MintA"
        assert json.loads(value) == {"symbol": "AAA", "name": None}

    @pytest.mark.asyncio
    async def test_cache_failures_fall_through_to_rpc(self) -> None:
        redis = AsyncMock()
        redis.get.side_effect = ConnectionError("redis down")
        redis.set.side_effect = ConnectionError("redis down")
        stub = RpcStub({"getAssetBatch": {"result": [_asset("MintA", "AAA")]}})

        found = await _client(stub, redis=redis).fetch_asset_metadata_batch(["MintA"])

        assert found["MintA"].symbol == "AAA"
