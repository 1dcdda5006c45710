"""Signature-keyed cache of decoded transaction extracts.

Each page of raw transactions is checked against the cache in one bulk
query; only the misses are decoded (concurrently) and written back. The
returned records keep the provider's page order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from solana_wallet_analyzer.ingestor.decoder import TransactionDecoder
from solana_wallet_analyzer.ingestor.models import RecordPage, TradeExtract, TransactionRecord
from solana_wallet_analyzer.ingestor.sources import TransactionSource
from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.repos import CachedTransactionDTO, TransactionCacheRepository

logger = logging.getLogger(__name__)


def record_from_cached(dto: CachedTransactionDTO) -> TransactionRecord:
    trades = []
    for item in dto.trades:
        try:
            trades.append(TradeExtract.from_dict(item))
        except (KeyError, TypeError, ValueError):
            logger.warning("Dropping malformed cached trade in %s: %r", dto.signature, item)
    return TransactionRecord(
        signature=dto.signature,
        block_time=dto.block_time,
        native_change=dto.native_change,
        trades=tuple(trades),
    )


def record_to_cached(record: TransactionRecord) -> CachedTransactionDTO:
    return CachedTransactionDTO(
        signature=record.signature,
        block_time=record.block_time,
        native_change=record.native_change,
        trades=[trade.to_dict() for trade in record.trades],
    )


class TransactionCache:
    """Fetches transaction pages and turns them into trade records, caching decodes."""

    def __init__(self, db: DatabaseManager, source: TransactionSource, decoder: TransactionDecoder) -> None:
        self._db = db
        self._source = source
        self._decoder = decoder

    async def fetch_page(self, wallet_address: str, *, limit: int, cursor: str | None = None) -> RecordPage:
        page = await self._source.fetch_transaction_page(wallet_address, limit=limit, cursor=cursor)
        if not page.transactions:
            return RecordPage(records=(), next_cursor=page.next_cursor, has_more=page.has_more)

        async with self._db.get_async_session() as session:
            cached = await TransactionCacheRepository(session).get_many(page.signatures)

        misses = [
            (signature, raw)
            for signature, raw in zip(page.signatures, page.transactions, strict=True)
            if signature not in cached
        ]
        decoded = await asyncio.gather(*(asyncio.to_thread(self._decode, sig, raw) for sig, raw in misses))
        fresh = {record.signature: record for record in decoded if record is not None}

        if fresh:
            try:
                async with self._db.get_async_session() as session:
                    await TransactionCacheRepository(session).insert_many(
                        [record_to_cached(record) for record in fresh.values()]
                    )
            except Exception as e:
                logger.warning("Failed to cache %d decoded transactions: %s", len(fresh), e)

        logger.debug(
            "Transaction page for %s: %d cached, %d decoded, %d undecodable",
            wallet_address,
            len(cached),
            len(fresh),
            len(misses) - len(fresh),
        )

        records = []
        for signature in page.signatures:
            if signature in cached:
                records.append(record_from_cached(cached[signature]))
            elif signature in fresh:
                records.append(fresh[signature])
            else:
                # Undecodable transactions still count as processed.
                records.append(TransactionRecord(signature=signature, block_time=None, native_change=0.0))
        return RecordPage(records=tuple(records), next_cursor=page.next_cursor, has_more=page.has_more)

    def _decode(self, signature: str, raw: dict[str, Any]) -> TransactionRecord | None:
        try:
            decoded = self._decoder.decode(raw)
        except Exception as e:
            logger.warning("Failed to decode transaction %s: %s", signature, e)
            return None
        return TransactionRecord(
            signature=signature,
            block_time=decoded.block_time,
            native_change=decoded.native_change,
            trades=tuple(TradeExtract.from_balance_change(change) for change in decoded.balance_changes),
        )
