"""Remote providers (Helius, Birdeye), decoding and rate limiting."""

from solana_wallet_analyzer.ingestor.birdeye import BirdeyeClient
from solana_wallet_analyzer.ingestor.decoder import BalanceChangeDecoder, DecodeError, TransactionDecoder
from solana_wallet_analyzer.ingestor.helius import HeliusClient
from solana_wallet_analyzer.ingestor.http import (
    ProviderError,
    ProviderResponseError,
    ProviderTransientError,
    RetryError,
)
from solana_wallet_analyzer.ingestor.rate_limiter import (
    ActiveJobCounter,
    AdaptiveRateLimiter,
    ProviderRateLimits,
)
from solana_wallet_analyzer.ingestor.sources import (
    PriceSource,
    ThrottledPriceSource,
    ThrottledTransactionSource,
    TransactionSource,
)

__all__ = [
    "ActiveJobCounter",
    "AdaptiveRateLimiter",
    "BalanceChangeDecoder",
    "BirdeyeClient",
    "DecodeError",
    "HeliusClient",
    "PriceSource",
    "ProviderError",
    "ProviderRateLimits",
    "ProviderResponseError",
    "ProviderTransientError",
    "RetryError",
    "ThrottledPriceSource",
    "ThrottledTransactionSource",
    "TransactionDecoder",
    "TransactionSource",
]
