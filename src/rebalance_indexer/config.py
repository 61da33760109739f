"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
rebalance indexer, loading and validating environment variables at
startup. Each supported chain has its own settings group so that chains
can be enabled, pointed at different RPC endpoints and started from
their own deployment blocks independently.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rebalance_indexer.errors import UnknownChainError

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _validate_address(v: str | None) -> str | None:
    if v is None or v == "":
        return None
    if not (v.startswith("0x") and len(v) == 42):
        raise ValueError("Contract address must be a 0x-prefixed 20-byte hex string")
    int(v[2:], 16)
    return v.lower()


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./rebalance_indexer.db",
        alias="DATABASE_URL",
        description="PostgreSQL (production) or SQLite (local/testing) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Per-chain RPC endpoints, contract addresses and deployment block.

    Subclasses bind the environment prefix and the chain identity.
    """

    model_config = SettingsConfigDict(extra="ignore")

    name: str
    chain_id: int
    enabled: bool = Field(default=True, description="Index this chain")
    rpc_url: str = Field(description="Primary RPC endpoint")
    fallback_rpc_url: str | None = Field(default=None, description="Fallback RPC endpoint")
    start_block: int = Field(
        default=0,
        ge=0,
        description="Block the contracts were deployed at (backfill default start)",
    )
    strategy_registry: str | None = Field(default=None, description="StrategyRegistry address")
    rebalance_executor: str | None = Field(default=None, description="RebalanceExecutor address")

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("strategy_registry", "rebalance_executor")
    @classmethod
    def validate_contract(cls, v: str | None) -> str | None:
        return _validate_address(v)

    @property
    def contract_addresses(self) -> list[str]:
        """Configured contract addresses to pull logs from."""
        return [a for a in (self.strategy_registry, self.rebalance_executor) if a]


class MonadSettings(ChainSettings):
    """Monad testnet."""

    model_config = SettingsConfigDict(env_prefix="MONAD_", extra="ignore")

    name: str = "monad"
    chain_id: int = 10143
    rpc_url: str = Field(default="https://testnet-rpc.monad.xyz", description="Primary RPC endpoint")


class BaseSepoliaSettings(ChainSettings):
    """Base Sepolia testnet."""

    model_config = SettingsConfigDict(env_prefix="BASE_", extra="ignore")

    name: str = "base-sepolia"
    chain_id: int = 84532
    rpc_url: str = Field(default="https://sepolia.base.org", description="Primary RPC endpoint")


class BackfillSettings(BaseSettings):
    """Historical scan settings."""

    model_config = SettingsConfigDict(env_prefix="BACKFILL_", extra="ignore")

    batch_size: int = Field(
        default=1000,
        alias="BACKFILL_BATCH_SIZE",
        ge=1,
        le=100_000,
        description="Blocks per eth_getLogs batch",
    )
    pause_seconds: float = Field(
        default=0.1,
        alias="BACKFILL_PAUSE_SECONDS",
        ge=0.0,
        le=60.0,
        description="Cooperative pause between batches (upstream rate limits)",
    )
    lease_ttl_seconds: int = Field(
        default=300,
        alias="BACKFILL_LEASE_TTL_SECONDS",
        ge=10,
        le=24 * 3600,
        description="Per-chain backfill lease TTL; renewed after every batch",
    )


class QueueSettings(BaseSettings):
    """Ingestion queue settings."""

    model_config = SettingsConfigDict(env_prefix="QUEUE_", extra="ignore")

    backend: Literal["redis", "memory"] = Field(
        default="redis",
        alias="QUEUE_BACKEND",
        description="Queue implementation (memory is single-process only)",
    )
    key_prefix: str = Field(
        default="rebalance_indexer:queue:",
        alias="QUEUE_KEY_PREFIX",
        description="Redis key prefix for queue lists",
    )
    max_attempts: int = Field(
        default=3,
        alias="QUEUE_MAX_ATTEMPTS",
        ge=1,
        le=50,
        description="Attempts before an item is dead-lettered",
    )
    backoff_base_seconds: float = Field(
        default=2.0,
        alias="QUEUE_BACKOFF_BASE_SECONDS",
        ge=0.0,
        description="Initial retry delay (doubles per attempt)",
    )
    backoff_max_seconds: float = Field(
        default=60.0,
        alias="QUEUE_BACKOFF_MAX_SECONDS",
        ge=0.0,
        description="Retry delay cap",
    )
    consumers: int = Field(
        default=4,
        alias="QUEUE_CONSUMERS",
        ge=1,
        le=64,
        description="Concurrent reducer consumers",
    )


class LiveSettings(BaseSettings):
    """Live head-following settings."""

    model_config = SettingsConfigDict(env_prefix="LIVE_", extra="ignore")

    enabled: bool = Field(default=True, alias="LIVE_ENABLED", description="Follow new blocks")
    poll_interval_seconds: float = Field(
        default=3.0,
        alias="LIVE_POLL_INTERVAL_SECONDS",
        ge=0.1,
        le=600.0,
        description="Head polling cadence",
    )
    max_range_blocks: int = Field(
        default=1000,
        alias="LIVE_MAX_RANGE_BLOCKS",
        ge=1,
        description="Largest block range fetched in a single poll",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from rebalance_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print([c.name for c in settings.chains])
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
    monad: MonadSettings = Field(
        default_factory=lambda: MonadSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    base_sepolia: BaseSepoliaSettings = Field(
        default_factory=lambda: BaseSepoliaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    backfill: BackfillSettings = Field(
        default_factory=lambda: BackfillSettings(
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
    live: LiveSettings = Field(
        default_factory=lambda: LiveSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    notifier_redis_enabled: bool = Field(
        default=True,
        alias="NOTIFIER_REDIS_ENABLED",
        description="Mirror change notifications onto Redis pub/sub channels",
    )

    @property
    def chains(self) -> list[ChainSettings]:
        """Enabled chains."""
        return [c for c in (self.monad, self.base_sepolia) if c.enabled]

    def get_chain(self, chain: str | int) -> ChainSettings:
        """Resolve a chain by name or chain id.

        Raises:
            UnknownChainError: If no enabled chain matches.
        """
        for c in self.chains:
            if c.name == chain or c.chain_id == chain or str(c.chain_id) == str(chain):
                return c
        raise UnknownChainError(f"Unknown or disabled chain: {chain}")

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
            "chains": {
                c.name: f"id={c.chain_id} rpc={self._redact_url(c.rpc_url)} start={c.start_block}"
                for c in self.chains
            },
            "backfill": {
                "batch_size": str(self.backfill.batch_size),
                "pause_seconds": str(self.backfill.pause_seconds),
            },
            "queue": {
                "backend": self.queue.backend,
                "max_attempts": str(self.queue.max_attempts),
                "consumers": str(self.queue.consumers),
            },
            "live_enabled": str(self.live.enabled),
            "log_level": self.log_level,
        }

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
    """Get the application settings singleton.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
