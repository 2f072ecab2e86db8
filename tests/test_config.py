"""Tests for configuration loading."""

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from confidential_futures.config import Settings, clear_settings_cache, get_settings
from confidential_futures.coordinator.models import ProtocolConfig


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Run each test without a .env file and with a fresh settings cache."""
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_URL", "REDIS_URL", "CHAIN_GATEWAY_PRIVATE_KEY", "CHAIN_COORDINATOR_ADDRESS", "GATEWAY_STATE_BACKEND", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestSettings:
    def test_defaults(self) -> None:
        settings = get_settings()

        assert settings.database.url.startswith("sqlite+aiosqlite://")
        assert settings.protocol.settlement_interval_seconds == 4 * 3600
        assert settings.protocol.decryption_timeout_seconds == 24 * 3600
        assert settings.gateway.max_retries == 3
        assert settings.gateway.state_backend == "redis"
        assert settings.chain.gateway_private_key is None

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://ledger:secret@db:5432/ledger")
        monkeypatch.setenv("PROTOCOL_DECRYPTION_TIMEOUT", "600")
        monkeypatch.setenv("PROTOCOL_DEV_MODE", "true")
        monkeypatch.setenv("GATEWAY_STATE_BACKEND", "file")
        monkeypatch.setenv("CHAIN_MIN_OPERATOR_BALANCE_ETH", "0.25")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = get_settings()

        assert settings.protocol.decryption_timeout_seconds == 600
        assert settings.protocol.dev_mode is True
        assert settings.gateway.state_backend == "file"
        assert settings.chain.min_operator_balance_eth == Decimal("0.25")
        assert settings.get_logging_level() == 10

    def test_reads_env_file(self, tmp_path: Path) -> None:
        (tmp_path / ".env").write_text("PROTOCOL_PNL_SCALE=1000\n", encoding="utf-8")

        assert get_settings().protocol.pnl_scale == 1000

    def test_settings_are_cached(self) -> None:
        assert get_settings() is get_settings()

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("DATABASE_URL", "mysql://localhost/ledger"),
            ("REDIS_URL", "http://localhost:6379"),
            ("CHAIN_RPC_URL", "ws://localhost:8546"),
            ("CHAIN_COORDINATOR_ADDRESS", "0x1234"),
            ("PROTOCOL_RATE_LIMIT_COOLDOWN", "-1"),
            ("GATEWAY_STATE_BACKEND", "memcached"),
        ],
    )
    def test_invalid_values(self, monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
        monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            Settings()

    def test_redacted_summary_hides_secrets(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://ledger:secret@db:5432/ledger")
        monkeypatch.setenv("CHAIN_GATEWAY_PRIVATE_KEY", "0x" + "11" * 32)

        summary = get_settings().redacted_summary()

        assert summary["database_url"] == "postgresql+asyncpg://ledger:***@db:5432/ledger"
        assert summary["chain"]["gateway_private_key"] == "(set)"
        assert "11" * 32 not in str(summary)


class TestValidateRequirements:
    def test_health_needs_gateway_key(self) -> None:
        with pytest.raises(ValueError, match="CHAIN_GATEWAY_PRIVATE_KEY"):
            get_settings().validate_requirements(command="health")

    def test_health_with_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHAIN_GATEWAY_PRIVATE_KEY", "0x" + "11" * 32)
        get_settings().validate_requirements(command="health")

    def test_gateway_needs_coordinator_and_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHAIN_GATEWAY_PRIVATE_KEY", "0x" + "11" * 32)
        with pytest.raises(ValueError, match="CHAIN_COORDINATOR_ADDRESS"):
            get_settings().validate_requirements(command="gateway")

        monkeypatch.setenv("CHAIN_COORDINATOR_ADDRESS", "0x" + "c0" * 20)
        monkeypatch.delenv("CHAIN_GATEWAY_PRIVATE_KEY")
        clear_settings_cache()
        with pytest.raises(ValueError, match="CHAIN_GATEWAY_PRIVATE_KEY"):
            get_settings().validate_requirements(command="gateway")

    def test_simulate_has_no_requirements(self) -> None:
        get_settings().validate_requirements(command="simulate")


class TestProtocolConfig:
    def test_from_settings_lowercases_addresses(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROTOCOL_OWNER_ADDRESS", "0x" + "AB" * 20)
        monkeypatch.setenv("PROTOCOL_GATEWAY_ADDRESS", "0x" + "CD" * 20)
        monkeypatch.setenv("PROTOCOL_RATE_LIMIT_COOLDOWN", "0")

        config = ProtocolConfig.from_settings(get_settings().protocol)

        assert config.owner == "0x" + "ab" * 20
        assert config.gateway == "0x" + "cd" * 20
        assert config.rate_limit_cooldown_seconds == 0
