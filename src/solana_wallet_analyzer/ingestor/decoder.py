"""Transaction decoding.

The analysis pipeline only needs the signer's balance changes, so any
decoder that maps a raw transaction to signed per-mint deltas can be plugged
in. ``BalanceChangeDecoder`` works directly on JSON-RPC transaction objects
and does not need protocol-specific instruction parsers.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from solana_wallet_analyzer.ingestor.models import BalanceChange, DecodedTransaction

LAMPORTS_PER_SOL = Decimal(1_000_000_000)
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


class DecodeError(Exception):
    """Raised when a raw transaction cannot be decoded."""


class TransactionDecoder(Protocol):
    def decode(self, raw: dict[str, Any]) -> DecodedTransaction: ...


class BalanceChangeDecoder:
    """Derive the fee payer's balance changes from pre/post balances."""

    def __init__(self, *, ignored_mints: frozenset[str] = frozenset({WRAPPED_SOL_MINT})) -> None:
        self._ignored_mints = ignored_mints

    def decode(self, raw: dict[str, Any]) -> DecodedTransaction:
        transaction = raw.get("transaction")
        meta = raw.get("meta")
        if not isinstance(transaction, dict) or not isinstance(meta, dict):
            raise DecodeError("Transaction is missing 'transaction' or 'meta'")

        signatures = transaction.get("signatures") or []
        signature = raw.get("signature") or (signatures[0] if signatures else None)
        if not signature:
            raise DecodeError("Transaction has no signature")

        account_keys = _account_keys(transaction)
        if not account_keys:
            raise DecodeError(f"Transaction {signature} has no account keys")
        signer = account_keys[0]

        block_time = raw.get("blockTime")
        native_change = _native_change(meta)

        if meta.get("err") is not None:
            # Failed transactions only move the fee.
            return DecodedTransaction(
                signature=str(signature),
                block_time=int(block_time) if block_time is not None else None,
                native_change=native_change,
            )

        deltas: dict[str, Decimal] = defaultdict(Decimal)
        for entry in meta.get("preTokenBalances") or []:
            mint, amount = _owned_amount(entry, signer, account_keys)
            if mint is not None:
                deltas[mint] -= amount
        for entry in meta.get("postTokenBalances") or []:
            mint, amount = _owned_amount(entry, signer, account_keys)
            if mint is not None:
                deltas[mint] += amount

        changes = tuple(
            BalanceChange(mint=mint, amount=float(delta))
            for mint, delta in sorted(deltas.items())
            if delta != 0 and mint not in self._ignored_mints
        )
        return DecodedTransaction(
            signature=str(signature),
            block_time=int(block_time) if block_time is not None else None,
            native_change=native_change,
            balance_changes=changes,
        )


def _account_keys(transaction: dict[str, Any]) -> list[str]:
    message = transaction.get("message") or {}
    keys = []
    for key in message.get("accountKeys") or []:
        if isinstance(key, dict):
            key = key.get("pubkey")
        if key:
            keys.append(str(key))
    return keys


def _native_change(meta: dict[str, Any]) -> float:
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    if not pre or not post:
        return 0.0
    return float((Decimal(int(post[0])) - Decimal(int(pre[0]))) / LAMPORTS_PER_SOL)


def _owned_amount(
    entry: dict[str, Any], signer: str, account_keys: list[str]
) -> tuple[str | None, Decimal]:
    owner = entry.get("owner")
    if owner is None:
        index = entry.get("accountIndex")
        owner = account_keys[index] if isinstance(index, int) and index < len(account_keys) else None
    mint = entry.get("mint")
    if owner != signer or not mint:
        return None, Decimal(0)

    ui = entry.get("uiTokenAmount") or {}
    try:
        raw_amount = Decimal(str(ui["amount"]))
        decimals = int(ui.get("decimals") or 0)
        return str(mint), raw_amount.scaleb(-decimals)
    except (KeyError, InvalidOperation, ValueError):
        ui_string = ui.get("uiAmountString")
        if ui_string is None:
            return None, Decimal(0)
        try:
            return str(mint), Decimal(str(ui_string))
        except InvalidOperation:
            return None, Decimal(0)
