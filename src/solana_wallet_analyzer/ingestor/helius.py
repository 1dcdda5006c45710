"""Helius client: transaction history, holdings and asset metadata.

This module provides the transaction source used by the analysis worker:
- Paged full-transaction history (``getTransactionsForAddress``)
- Latest on-chain signature for incremental-scan detection
- Non-fungible holdings snapshot (DAS ``getAssetsByOwner``)
- Batched symbol/name lookup (DAS ``getAssetBatch``) with optional Redis caching
"""

from __future__ import annotations

import itertools
import json
import logging
from collections.abc import Iterable
from typing import Any

import httpx
from redis.asyncio import Redis

from solana_wallet_analyzer.ingestor.http import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_TIMEOUT_SECONDS,
    JsonHttpClient,
    ProviderResponseError,
    ProviderTransientError,
)
from solana_wallet_analyzer.ingestor.models import AssetMetadata, TransactionPage

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://mainnet.helius-rpc.com"
DEFAULT_METADATA_CACHE_TTL_SECONDS = 24 * 3600
ASSET_BATCH_LIMIT = 1000
HOLDINGS_PAGE_LIMIT = 1000

# JSON-RPC error code Helius returns when the plan's rate limit is hit.
RPC_RATE_LIMITED_CODE = -32429


class HeliusClient:
    """Async Helius JSON-RPC client.

    Example:
        ```python
        client = HeliusClient(api_key="...", redis=redis)
        page = await client.fetch_transaction_page(wallet, limit=25)
        metadata = await client.fetch_asset_metadata_batch(["So111..."])
        await client.close()
        ```
    """

    def __init__(
        self,
        *,
        api_key: str,
        rpc_url: str = DEFAULT_RPC_URL,
        redis: Redis | None = None,
        metadata_cache_ttl_seconds: int = DEFAULT_METADATA_CACHE_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._redis = redis
        self._metadata_cache_ttl = metadata_cache_ttl_seconds
        self._http = JsonHttpClient(
            rpc_url,
            headers={"Content-Type": "application/json"},
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
            client=client,
        )
        self._request_ids = itertools.count(1)
        self._cache_prefix = "helius:asset_meta:"

    async def close(self) -> None:
        await self._http.close()

    async def _rpc(self, method: str, params: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }

        def unwrap(body: Any) -> Any:
            if not isinstance(body, dict):
                raise ProviderResponseError(f"Unexpected {method} response type: {type(body).__name__}")
            error = body.get("error")
            if error:
                code = error.get("code") if isinstance(error, dict) else None
                message = error.get("message") if isinstance(error, dict) else str(error)
                if code == RPC_RATE_LIMITED_CODE:
                    raise ProviderTransientError(f"{method} rate limited: {message}")
                raise ProviderResponseError(f"{method} failed ({code}): {message}")
            return body.get("result")

        return await self._http.request_json(
            "POST", "/", params={"api-key": self._api_key}, json=payload, check=unwrap
        )

    # ------------------------------------------------------------------
    # Transaction history
    # ------------------------------------------------------------------

    async def fetch_transaction_page(
        self,
        wallet_address: str,
        *,
        limit: int,
        cursor: str | None = None,
    ) -> TransactionPage:
        """Fetch one page of full transactions, newest first."""
        options: dict[str, Any] = {
            "transactionDetails": "full",
            "sortOrder": "desc",
            "limit": limit,
            "encoding": "json",
            "maxSupportedTransactionVersion": 0,
        }
        if cursor:
            options["paginationToken"] = cursor

        result = await self._rpc("getTransactionsForAddress", [wallet_address, options])
        if not isinstance(result, dict):
            raise ProviderResponseError("getTransactionsForAddress returned no result object")

        transactions = tuple(tx for tx in result.get("data") or [] if isinstance(tx, dict))
        signatures = tuple(_signature_of(tx) for tx in transactions)
        next_cursor = result.get("paginationToken") or None
        return TransactionPage(
            transactions=transactions,
            signatures=signatures,
            next_cursor=next_cursor,
            has_more=next_cursor is not None,
        )

    async def fetch_latest_signature(self, wallet_address: str) -> str | None:
        """Most recent signature involving the wallet, or None for an empty wallet."""
        result = await self._rpc("getSignaturesForAddress", [wallet_address, {"limit": 1}])
        if not result:
            return None
        first = result[0]
        signature = first.get("signature") if isinstance(first, dict) else None
        return str(signature) if signature else None

    async def fetch_holdings_snapshot(self, wallet_address: str) -> int:
        """Number of non-fungible assets currently held by the wallet."""
        result = await self._rpc(
            "getAssetsByOwner",
            {
                "ownerAddress": wallet_address,
                "page": 1,
                "limit": HOLDINGS_PAGE_LIMIT,
                "displayOptions": {"showFungible": False},
            },
        )
        if not isinstance(result, dict):
            return 0
        total = result.get("total")
        if total is None:
            total = len(result.get("items") or [])
        return int(total)

    # ------------------------------------------------------------------
    # Asset metadata
    # ------------------------------------------------------------------

    async def fetch_asset_metadata_batch(self, mints: Iterable[str]) -> dict[str, AssetMetadata]:
        """Resolve symbol/name for each mint; unknown mints are omitted."""
        wanted = sorted(set(mints))
        found: dict[str, AssetMetadata] = {}
        missing: list[str] = []

        for mint in wanted:
            cached = await self._get_cached(self._cache_key(mint))
            if cached is None:
                missing.append(mint)
                continue
            try:
                data = json.loads(cached)
                found[mint] = AssetMetadata(mint=mint, symbol=data.get("symbol"), name=data.get("name"))
            except (ValueError, AttributeError):
                missing.append(mint)

        for start in range(0, len(missing), ASSET_BATCH_LIMIT):
            chunk = missing[start : start + ASSET_BATCH_LIMIT]
            result = await self._rpc("getAssetBatch", {"ids": chunk})
            for asset in result or []:
                metadata = _parse_asset_metadata(asset)
                if metadata is None:
                    continue
                found[metadata.mint] = metadata
                await self._set_cached(
                    self._cache_key(metadata.mint),
                    json.dumps({"symbol": metadata.symbol, "name": metadata.name}),
                )

        return found

    def _cache_key(self, mint: str) -> str:
        return f"{self._cache_prefix}{mint}"

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._metadata_cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)


def _signature_of(tx: dict[str, Any]) -> str:
    signature = tx.get("signature")
    if signature:
        return str(signature)
    transaction = tx.get("transaction") or {}
    signatures = transaction.get("signatures") if isinstance(transaction, dict) else None
    if signatures:
        return str(signatures[0])
    raise ProviderResponseError("Transaction without signature in history page")


def _parse_asset_metadata(asset: Any) -> AssetMetadata | None:
    if not isinstance(asset, dict) or not asset.get("id"):
        return None
    content = asset.get("content") or {}
    metadata = content.get("metadata") or {} if isinstance(content, dict) else {}
    token_info = asset.get("token_info") or {}
    symbol = metadata.get("symbol") or token_info.get("symbol") or None
    name = metadata.get("name") or None
    return AssetMetadata(mint=str(asset["id"]), symbol=symbol, name=name)
