"""Storage layer for analysis jobs, token aggregates and provider caches."""

from solana_wallet_analyzer.storage.database import DatabaseManager
from solana_wallet_analyzer.storage.models import (
    AnalysisJobModel,
    Base,
    PriceCacheModel,
    TokenAggregateModel,
    TokenModel,
    TransactionCacheModel,
)

__all__ = [
    "AnalysisJobModel",
    "Base",
    "DatabaseManager",
    "PriceCacheModel",
    "TokenAggregateModel",
    "TokenModel",
    "TransactionCacheModel",
]
