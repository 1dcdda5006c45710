"""Environment-driven settings for the analyzer.

One settings group per concern (database, cache, providers, rate limits,
queue, scan tuning, retention), composed under ``Settings`` and read once
per process through ``get_settings()``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        alias="DATABASE_MAX_OVERFLOW",
        ge=0,
        le=100,
        description="Maximum overflow connections above pool_size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    metadata_ttl_seconds: int = Field(
        default=24 * 3600,
        alias="REDIS_METADATA_TTL_SECONDS",
        ge=60,
        le=30 * 24 * 3600,
        description="TTL for cached asset symbol/name lookups",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class HeliusSettings(BaseSettings):
    """Helius RPC / DAS settings (transaction source)."""

    model_config = SettingsConfigDict(env_prefix="HELIUS_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="HELIUS_API_KEY",
        description="Helius API key",
    )
    rpc_url: str = Field(
        default="https://mainnet.helius-rpc.com",
        alias="HELIUS_RPC_URL",
        description="Helius JSON-RPC endpoint",
    )
    max_rps: float = Field(
        default=200,
        alias="HELIUS_MAX_RPS",
        gt=0,
        le=10_000,
        description="Requests per second allowed by the Helius plan",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="HELIUS_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="HTTP timeout for a single Helius request",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("HELIUS_RPC_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class BirdeyeSettings(BaseSettings):
    """Birdeye API settings (price source)."""

    model_config = SettingsConfigDict(env_prefix="BIRDEYE_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="BIRDEYE_API_KEY",
        description="Birdeye API key",
    )
    api_base: str = Field(
        default="https://public-api.birdeye.so",
        alias="BIRDEYE_API_BASE",
        description="Birdeye API host",
    )
    max_rps: float = Field(
        default=50,
        alias="BIRDEYE_MAX_RPS",
        gt=0,
        le=10_000,
        description="Requests per second allowed by the Birdeye plan",
    )
    price_timeframe: Literal["1m", "5m", "15m", "30m", "1H", "4H", "1D"] = Field(
        default="1H",
        alias="BIRDEYE_PRICE_TIMEFRAME",
        description="Candle resolution used for price history",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="BIRDEYE_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="HTTP timeout for a single Birdeye request",
    )

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("BIRDEYE_API_BASE must be an HTTP(S) endpoint")
        return v.rstrip("/")


class RateLimitSettings(BaseSettings):
    """Adaptive rate limiter settings shared by all providers."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    usage_percent: float = Field(
        default=80,
        alias="API_USAGE_PERCENT",
        gt=0,
        le=100,
        description="Share of each provider's RPS budget this service may use",
    )
    min_delay_ms: float = Field(
        default=1,
        alias="RATE_LIMIT_MIN_DELAY_MS",
        ge=0,
        description="Lower bound for the delay between two calls of one job",
    )
    max_delay_ms: float = Field(
        default=5000,
        alias="RATE_LIMIT_MAX_DELAY_MS",
        gt=0,
        description="Upper bound for the delay between two calls of one job",
    )
    target_batch_seconds: float = Field(
        default=60,
        alias="RATE_LIMIT_TARGET_BATCH_SECONDS",
        gt=0,
        description="Wall-clock target for one batch when sizing batches",
    )
    calls_per_token: int = Field(
        default=2,
        alias="RATE_LIMIT_CALLS_PER_TOKEN",
        ge=1,
        le=100,
        description="Expected remote calls needed to price one token",
    )


class QueueSettings(BaseSettings):
    """Job queue admission settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    max_concurrent_jobs: int = Field(
        default=15,
        alias="MAX_CONCURRENT_JOBS",
        ge=1,
        le=1000,
        description="Maximum number of jobs in 'processing' at once",
    )
    poll_interval_seconds: float = Field(
        default=10,
        alias="QUEUE_POLL_INTERVAL_SECONDS",
        gt=0,
        le=3600,
        description="Interval between periodic admission passes",
    )
    db_retry_delay_seconds: float = Field(
        default=2,
        alias="QUEUE_DB_RETRY_DELAY_SECONDS",
        gt=0,
        le=300,
        description="Delay before re-checking an unreachable database on start",
    )
    zombie_timeout_seconds: float = Field(
        default=120,
        alias="QUEUE_ZOMBIE_TIMEOUT_SECONDS",
        gt=0,
        description="Heartbeat age after which a processing job is presumed crashed",
    )


class AnalysisSettings(BaseSettings):
    """Analysis worker settings."""

    model_config = SettingsConfigDict(env_prefix="ANALYSIS_", extra="ignore")

    hour_bucket_seconds: int = Field(
        default=3600,
        alias="ANALYSIS_HOUR_BUCKET_SECONDS",
        ge=60,
        le=7 * 24 * 3600,
        description="Granularity used to match a trade to a price sample",
    )
    max_price_usd: float = Field(
        default=1_000_000,
        alias="ANALYSIS_MAX_PRICE_USD",
        gt=0,
        description="Prices above this ceiling are treated as corrupted data",
    )
    max_pnl_usd: float = Field(
        default=100_000,
        alias="ANALYSIS_MAX_PNL_USD",
        gt=0,
        description="Per-trade absolute PNL above this ceiling is treated as corrupted data",
    )
    max_consecutive_empty_batches: int = Field(
        default=5,
        alias="ANALYSIS_MAX_CONSECUTIVE_EMPTY_BATCHES",
        ge=1,
        le=100,
    )
    fetch_timeout_seconds: float = Field(
        default=120,
        alias="ANALYSIS_FETCH_TIMEOUT_SECONDS",
        gt=0,
        description="Timeout for one transaction page fetch (including decoding)",
    )
    min_price_timeout_seconds: float = Field(
        default=15,
        alias="ANALYSIS_MIN_PRICE_TIMEOUT_SECONDS",
        gt=0,
    )
    per_token_timeout_seconds: float = Field(
        default=3,
        alias="ANALYSIS_PER_TOKEN_TIMEOUT_SECONDS",
        gt=0,
    )
    inter_batch_pause_seconds: float = Field(
        default=0.1,
        alias="ANALYSIS_INTER_BATCH_PAUSE_SECONDS",
        ge=0,
        le=60,
    )
    price_fresh_seconds: float = Field(
        default=60,
        alias="ANALYSIS_PRICE_FRESH_SECONDS",
        gt=0,
        description="How long a cached current price is served without a refresh",
    )
    min_batch_size: int = Field(default=5, alias="ANALYSIS_MIN_BATCH_SIZE", ge=1, le=1000)
    max_batch_size: int = Field(default=50, alias="ANALYSIS_MAX_BATCH_SIZE", ge=1, le=1000)
    max_auto_resumes: int = Field(
        default=3,
        alias="ANALYSIS_MAX_AUTO_RESUMES",
        ge=0,
        le=100,
        description="Failed jobs are resumed from their checkpoint at most this many times",
    )


class RetentionSettings(BaseSettings):
    """Periodic retention sweep settings."""

    model_config = SettingsConfigDict(env_prefix="RETENTION_", extra="ignore")

    completed_job_days: int = Field(default=7, alias="RETENTION_COMPLETED_JOB_DAYS", ge=1, le=3650)
    failed_job_days: int = Field(default=1, alias="RETENTION_FAILED_JOB_DAYS", ge=1, le=3650)
    price_cache_days: int = Field(default=30, alias="RETENTION_PRICE_CACHE_DAYS", ge=1, le=3650)
    transaction_cache_days: int = Field(
        default=90, alias="RETENTION_TRANSACTION_CACHE_DAYS", ge=1, le=3650
    )
    sweep_interval_seconds: int = Field(
        default=3600,
        alias="RETENTION_SWEEP_INTERVAL_SECONDS",
        ge=60,
        le=7 * 24 * 3600,
    )


class Settings(BaseSettings):
    """All settings groups, read from the environment and an optional ``.env`` file.

    Example:
        ```python
        from solana_wallet_analyzer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.queue.max_concurrent_jobs)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    helius: HeliusSettings = Field(
        default_factory=lambda: HeliusSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    birdeye: BirdeyeSettings = Field(
        default_factory=lambda: BirdeyeSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rate_limit: RateLimitSettings = Field(
        default_factory=lambda: RateLimitSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    queue: QueueSettings = Field(
        default_factory=lambda: QueueSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    analysis: AnalysisSettings = Field(
        default_factory=lambda: AnalysisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retention: RetentionSettings = Field(
        default_factory=lambda: RetentionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    agent_id: str = Field(
        default="default",
        alias="AGENT_ID",
        description="Owning-agent id recorded on jobs started by this process",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "helius": {
                "rpc_url": self.helius.rpc_url,
                "api_key": "(set)" if self.helius.api_key else "(not set)",
                "max_rps": str(self.helius.max_rps),
            },
            "birdeye": {
                "api_base": self.birdeye.api_base,
                "api_key": "(set)" if self.birdeye.api_key else "(not set)",
                "max_rps": str(self.birdeye.max_rps),
                "price_timeframe": self.birdeye.price_timeframe,
            },
            "rate_limit": {
                "usage_percent": str(self.rate_limit.usage_percent),
            },
            "queue": {
                "max_concurrent_jobs": str(self.queue.max_concurrent_jobs),
                "poll_interval_seconds": str(self.queue.poll_interval_seconds),
            },
            "analysis": {
                "hour_bucket_seconds": str(self.analysis.hour_bucket_seconds),
                "max_price_usd": str(self.analysis.max_price_usd),
                "max_pnl_usd": str(self.analysis.max_pnl_usd),
            },
            "log_level": self.log_level,
            "agent_id": self.agent_id,
        }

    def validate_requirements(self, *, command: Literal["run", "init-db", "sweep"]) -> None:
        """Validate command-specific requirements.

        Commands that talk to remote providers refuse to start without
        credentials rather than failing on the first job.
        """
        if command == "run":
            if not self.helius.api_key:
                raise ValueError("HELIUS_API_KEY is required to fetch wallet transactions")
            if not self.birdeye.api_key:
                raise ValueError("BIRDEYE_API_KEY is required to resolve token prices")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings; raises ``ValidationError`` on a bad environment."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear the cached settings (useful in tests)."""
    get_settings.cache_clear()
