"""Analysis core: aggregation, caches, worker, queue and job control."""

from solana_wallet_analyzer.analysis.aggregates import (
    ScanCounters,
    TokenAggregate,
    build_light_summary,
    hour_bucket,
    restore_aggregates,
    snapshot_aggregates,
)
from solana_wallet_analyzer.analysis.jobs import JobService, StartAnalysisResult
from solana_wallet_analyzer.analysis.price_cache import (
    CachedPriceResolver,
    PriceRequest,
    PriceResolver,
    RemotePriceResolver,
)
from solana_wallet_analyzer.analysis.queue import QueueManager, QueueState
from solana_wallet_analyzer.analysis.retention import RetentionStats, RetentionSweeper
from solana_wallet_analyzer.analysis.transaction_cache import TransactionCache
from solana_wallet_analyzer.analysis.worker import (
    AnalysisError,
    AnalysisWorker,
    JobNotFoundError,
    ResumeStateError,
    ScanStalledError,
)

__all__ = [
    "AnalysisError",
    "AnalysisWorker",
    "CachedPriceResolver",
    "JobNotFoundError",
    "JobService",
    "PriceRequest",
    "PriceResolver",
    "QueueManager",
    "QueueState",
    "RemotePriceResolver",
    "ResumeStateError",
    "RetentionStats",
    "RetentionSweeper",
    "ScanCounters",
    "ScanStalledError",
    "StartAnalysisResult",
    "TokenAggregate",
    "TransactionCache",
    "build_light_summary",
    "hour_bucket",
    "restore_aggregates",
    "snapshot_aggregates",
]
