"""Pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from confidential_futures.coordinator.encryption import LocalFheEngine
from confidential_futures.coordinator.events import EventRecorder
from confidential_futures.coordinator.models import ProtocolConfig
from confidential_futures.coordinator.resolver import LocalResolver
from confidential_futures.coordinator.settlement import SettlementCoordinator
from confidential_futures.storage.database import DatabaseManager

pytest.importorskip("aiosqlite", exc_type=ImportError)

OWNER = "0x" + "0a" * 20
GATEWAY = "0x" + "6a" * 20
OPERATOR = "0x" + "0b" * 20
TRADER_A = "0x" + "a1" * 20
TRADER_B = "0x" + "b2" * 20
TRADER_C = "0x" + "c3" * 20
STRANGER = "0x" + "ee" * 20

START_TIME = 1_700_000_000


class ManualClock:
    """Clock fixture that only moves when told to."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
async def db():
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def engine() -> LocalFheEngine:
    return LocalFheEngine()


@pytest.fixture
def resolver(engine: LocalFheEngine) -> LocalResolver:
    return LocalResolver(engine)


@pytest.fixture
def config() -> ProtocolConfig:
    return ProtocolConfig(owner=OWNER, gateway=GATEWAY, rate_limit_cooldown_seconds=0)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
async def coordinator(db, engine, resolver, config, clock, recorder) -> SettlementCoordinator:
    coord = SettlementCoordinator(db, engine, resolver, config, clock=clock)
    coord.bus.subscribe_all(recorder)
    await coord.initialize()
    return coord
