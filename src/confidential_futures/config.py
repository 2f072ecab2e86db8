"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
confidential futures coordinator and its gateway worker, loading and
validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

UINT64_MAX = 2**64 - 1


class DatabaseSettings(BaseSettings):
    """Ledger database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./ledger.db",
        alias="DATABASE_URL",
        description="Ledger database connection string",
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
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """EVM chain RPC and gateway signing settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://sepolia.infura.io/v3/YOUR-PROJECT-ID",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    coordinator_address: str | None = Field(
        default=None,
        alias="CHAIN_COORDINATOR_ADDRESS",
        description="Deployed settlement coordinator contract address",
    )
    gateway_private_key: SecretStr | None = Field(
        default=None,
        alias="CHAIN_GATEWAY_PRIVATE_KEY",
        description="Funded key used to sign gateway callback transactions",
    )
    log_poll_interval_seconds: float = Field(
        default=5.0,
        alias="CHAIN_LOG_POLL_INTERVAL_SECONDS",
        ge=0.5,
        le=600.0,
        description="How often to poll eth_getLogs for coordinator events",
    )
    callback_gas_limit: int = Field(
        default=500_000,
        alias="CHAIN_CALLBACK_GAS_LIMIT",
        ge=21_000,
        le=30_000_000,
        description="Gas limit for callback transactions",
    )
    min_operator_balance_eth: Decimal = Field(
        default=Decimal("0.1"),
        alias="CHAIN_MIN_OPERATOR_BALANCE_ETH",
        description="Balance below which the health check warns",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("coordinator_address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError("CHAIN_COORDINATOR_ADDRESS must be a 0x-prefixed 20-byte address")
        return v


class ProtocolSettings(BaseSettings):
    """Settlement protocol constants."""

    model_config = SettingsConfigDict(env_prefix="PROTOCOL_", extra="ignore")

    settlement_interval_seconds: int = Field(
        default=4 * 3600,
        alias="PROTOCOL_SETTLEMENT_INTERVAL",
        ge=1,
        description="Global settlement window period",
    )
    decryption_timeout_seconds: int = Field(
        default=24 * 3600,
        alias="PROTOCOL_DECRYPTION_TIMEOUT",
        ge=1,
        description="Age after which a pending decryption is force-refunded",
    )
    contract_duration_seconds: int = Field(
        default=24 * 3600,
        alias="PROTOCOL_CONTRACT_DURATION",
        ge=1,
        description="Lifetime of a futures contract from creation to expiry",
    )
    max_position_amount: int = Field(
        default=1_000_000,
        alias="PROTOCOL_MAX_POSITION_AMOUNT",
        ge=1,
        le=UINT64_MAX,
        description="Upper bound for a position amount",
    )
    max_collateral_amount: int = Field(
        default=1_000_000_000,
        alias="PROTOCOL_MAX_COLLATERAL_AMOUNT",
        ge=1,
        le=UINT64_MAX,
        description="Upper bound for position collateral",
    )
    price_obfuscation_factor: int = Field(
        default=1000,
        alias="PROTOCOL_PRICE_OBFUSCATION_FACTOR",
        ge=1,
        description="Multiplier applied to reference prices before encryption",
    )
    pnl_scale: int = Field(
        default=100,
        alias="PROTOCOL_PNL_SCALE",
        ge=1,
        description="Divisor converting price-difference x amount into collateral units",
    )
    rate_limit_cooldown_seconds: int = Field(
        default=1,
        alias="PROTOCOL_RATE_LIMIT_COOLDOWN",
        ge=0,
        le=3600,
        description="Minimum spacing between state-changing calls of one actor",
    )
    owner_address: str = Field(
        default="0x" + "0" * 39 + "1",
        alias="PROTOCOL_OWNER_ADDRESS",
        description="Coordinator owner (contract deployer)",
    )
    gateway_address: str | None = Field(
        default=None,
        alias="PROTOCOL_GATEWAY_ADDRESS",
        description="Initial authorized gateway address",
    )
    dev_mode: bool = Field(
        default=False,
        alias="PROTOCOL_DEV_MODE",
        description="Allow the owner to deliver decryption callbacks",
    )


class GatewaySettings(BaseSettings):
    """Gateway worker settings."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_", extra="ignore")

    max_retries: int = Field(
        default=3,
        alias="GATEWAY_MAX_RETRIES",
        ge=0,
        le=100,
        description="Retries per request after the first attempt",
    )
    retry_delay_seconds: float = Field(
        default=5.0,
        alias="GATEWAY_RETRY_DELAY",
        ge=0.0,
        le=3600.0,
        description="Fixed delay between retries",
    )
    timeout_check_interval_seconds: float = Field(
        default=60.0,
        alias="GATEWAY_TIMEOUT_CHECK_INTERVAL",
        ge=1.0,
        le=86_400.0,
        description="How often the timeout sweep runs",
    )
    status_interval_seconds: float = Field(
        default=300.0,
        alias="GATEWAY_STATUS_INTERVAL",
        ge=1.0,
        le=86_400.0,
        description="How often the pending-status report is logged",
    )
    max_concurrency: int = Field(
        default=16,
        alias="GATEWAY_MAX_CONCURRENCY",
        ge=1,
        le=1024,
        description="Maximum requests processed concurrently",
    )
    state_backend: Literal["redis", "file"] = Field(
        default="redis",
        alias="GATEWAY_STATE_BACKEND",
        description="Where tracking state is persisted across restarts",
    )
    state_file: Path = Field(
        default=Path(".gateway-state.json"),
        alias="GATEWAY_STATE_FILE",
        description="State file used by the file backend",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from confidential_futures.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.protocol.decryption_timeout_seconds)
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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    protocol: ProtocolSettings = Field(
        default_factory=lambda: ProtocolSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    gateway: GatewaySettings = Field(
        default_factory=lambda: GatewaySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
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
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "coordinator_address": self.chain.coordinator_address or "(not set)",
                "gateway_private_key": "(set)" if self.chain.gateway_private_key else "(not set)",
            },
            "protocol": {
                "settlement_interval_seconds": str(self.protocol.settlement_interval_seconds),
                "decryption_timeout_seconds": str(self.protocol.decryption_timeout_seconds),
                "max_position_amount": str(self.protocol.max_position_amount),
                "max_collateral_amount": str(self.protocol.max_collateral_amount),
                "owner_address": self.protocol.owner_address,
                "gateway_address": self.protocol.gateway_address or "(not set)",
                "dev_mode": str(self.protocol.dev_mode),
            },
            "gateway": {
                "max_retries": str(self.gateway.max_retries),
                "retry_delay_seconds": str(self.gateway.retry_delay_seconds),
                "state_backend": self.gateway.state_backend,
            },
            "log_level": self.log_level,
        }

    def validate_requirements(
        self,
        *,
        command: Literal["simulate", "sweep", "health", "status", "init-db", "gateway"],
    ) -> None:
        """Validate command-specific requirements.

        If a capability is required for a command and not configured, the
        application must refuse to run.
        """
        if command == "health":
            if not self.chain.gateway_private_key:
                raise ValueError("CHAIN_GATEWAY_PRIVATE_KEY is required for the gateway health check")
        if command == "gateway":
            if not self.chain.coordinator_address:
                raise ValueError("CHAIN_COORDINATOR_ADDRESS is required to run the gateway worker")
            if not self.chain.gateway_private_key:
                raise ValueError("CHAIN_GATEWAY_PRIVATE_KEY is required to sign gateway callbacks")
        if command in ("status", "gateway") and self.gateway.state_backend == "file":
            if not self.gateway.state_file:
                raise ValueError("GATEWAY_STATE_FILE is required for the file state backend")

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

    Returns:
        The Settings instance.

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
