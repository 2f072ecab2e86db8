"""Tests for ledger repositories."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from confidential_futures.storage.database import DatabaseManager, normalize_async_database_url
from confidential_futures.storage.models import Base, PositionStatus, RequestKind, RequestStatus
from confidential_futures.storage.repos import (
    AuditRepository,
    BalanceRepository,
    ContractRepository,
    DecryptionRequestDTO,
    DecryptionRequestRepository,
    PositionRepository,
    ProcessedRequestRepository,
    ProtocolStateRepository,
    TraderPositionDTO,
    WithdrawalRequestDTO,
    WithdrawalRequestRepository,
)

TRADER = "0x1234567890abcdef1234567890abcdef12345678"
OWNER = "0xabcdef1234567890abcdef1234567890abcdef12"

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


def make_position(contract_id: int, trader: str = TRADER) -> TraderPositionDTO:
    return TraderPositionDTO(
        contract_id=contract_id,
        trader=trader,
        amount="0x" + "01" * 32,
        entry_price="0x" + "02" * 32,
        collateral="0x" + "03" * 32,
        nonce="0x" + "04" * 32,
        is_long=True,
        status=PositionStatus.ACTIVE,
        entry_time=100,
    )


# ============================================================================
# Contract Tests
# ============================================================================


class TestContractRepository:
    @pytest.mark.asyncio
    async def test_create_and_get(self, async_session: AsyncSession) -> None:
        repo = ContractRepository(async_session)
        contract_id = await repo.create(underlying="BTC", created_by=OWNER.upper().replace("0X", "0x"), creation_time=100, expiry_time=200)

        contract = await repo.get(contract_id)
        assert contract is not None
        assert contract.underlying == "BTC"
        assert contract.created_by == OWNER
        assert not contract.price_set
        assert contract.active_decryption_request_id is None

    @pytest.mark.asyncio
    async def test_get_not_found(self, async_session: AsyncSession) -> None:
        assert await ContractRepository(async_session).get(42) is None

    @pytest.mark.asyncio
    async def test_update_fields_stores_request_id_as_text(self, async_session: AsyncSession) -> None:
        repo = ContractRepository(async_session)
        contract_id = await repo.create(underlying="BTC", created_by=OWNER, creation_time=100, expiry_time=200)
        big_id = 2**200

        await repo.update_fields(contract_id, active_decryption_request_id=big_id, price_set=True)

        contract = await repo.get(contract_id)
        assert contract.active_decryption_request_id == big_id
        assert contract.price_set

    @pytest.mark.asyncio
    async def test_count_active(self, async_session: AsyncSession) -> None:
        repo = ContractRepository(async_session)
        live = await repo.create(underlying="BTC", created_by=OWNER, creation_time=100, expiry_time=200)
        settled = await repo.create(underlying="ETH", created_by=OWNER, creation_time=100, expiry_time=200)
        await repo.create(underlying="SOL", created_by=OWNER, creation_time=100, expiry_time=200)
        await repo.update_fields(live, price_set=True)
        await repo.update_fields(settled, price_set=True, settled=True)

        assert await repo.count_active(now=150) == 1
        assert await repo.count_active(now=200) == 0


# ============================================================================
# Position Tests
# ============================================================================


class TestPositionRepository:
    @pytest.mark.asyncio
    async def test_insert_and_get_lowercases_trader(self, async_session: AsyncSession) -> None:
        repo = PositionRepository(async_session)
        await repo.insert(make_position(1, trader=TRADER.replace("abcdef", "ABCDEF")))

        position = await repo.get(1, TRADER)
        assert position is not None
        assert position.trader == TRADER
        assert position.status == PositionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, async_session: AsyncSession) -> None:
        repo = PositionRepository(async_session)
        await repo.insert(make_position(1))

        assert await repo.transition(
            1, TRADER, from_status=PositionStatus.ACTIVE, to_status=PositionStatus.SETTLED, at=300
        )
        assert not await repo.transition(
            1, TRADER, from_status=PositionStatus.ACTIVE, to_status=PositionStatus.REFUNDED, at=400
        )
        position = await repo.get(1, TRADER)
        assert position.status == PositionStatus.SETTLED
        assert position.closed_at == 300

    @pytest.mark.asyncio
    async def test_list_by_status_in_join_order(self, async_session: AsyncSession) -> None:
        repo = PositionRepository(async_session)
        traders = [OWNER, TRADER]
        for trader in traders:
            await repo.insert(make_position(1, trader=trader))
        await repo.insert(make_position(2))

        active = await repo.list_by_status(1, PositionStatus.ACTIVE)
        assert [p.trader for p in active] == traders
        assert await repo.list_by_status(1, PositionStatus.REFUNDED) == []


# ============================================================================
# Balance / Request Tests
# ============================================================================


class TestBalanceRepository:
    @pytest.mark.asyncio
    async def test_set_creates_then_updates(self, async_session: AsyncSession) -> None:
        repo = BalanceRepository(async_session)
        assert await repo.get(TRADER) is None

        await repo.set(TRADER, "0x" + "aa" * 32, at=1)
        await repo.set(TRADER, "0x" + "bb" * 32, at=2)

        assert await repo.get(TRADER) == "0x" + "bb" * 32


class TestRequestRepositories:
    @pytest.mark.asyncio
    async def test_decryption_resolve_and_stale(self, async_session: AsyncSession) -> None:
        repo = DecryptionRequestRepository(async_session)
        for request_id, ts in ((1, 100), (2, 500)):
            await repo.insert(
                DecryptionRequestDTO(
                    request_id=request_id,
                    contract_id=1,
                    requestor=OWNER,
                    timestamp=ts,
                    status=RequestStatus.PENDING,
                )
            )

        assert [r.request_id for r in await repo.list_stale(older_than=100)] == [1]

        await repo.resolve(1, status=RequestStatus.FULFILLED, at=150, decrypted_price=51_000)
        request = await repo.get(1)
        assert request.status == RequestStatus.FULFILLED
        assert request.decrypted_price == 51_000
        assert request.resolved_at == 150
        assert await repo.list_stale(older_than=100) == []

        await repo.resolve(2, status=RequestStatus.FAILED, at=600)
        assert [r.request_id for r in await repo.list_stale(older_than=1_000)] == [2]

    @pytest.mark.asyncio
    async def test_withdrawal_resolve(self, async_session: AsyncSession) -> None:
        repo = WithdrawalRequestRepository(async_session)
        await repo.insert(
            WithdrawalRequestDTO(
                request_id=9,
                trader=TRADER,
                balance="0x" + "aa" * 32,
                timestamp=100,
                status=RequestStatus.PENDING,
            )
        )

        await repo.resolve(9, status=RequestStatus.FULFILLED, at=200, amount=5_800)

        withdrawal = await repo.get(9)
        assert withdrawal.amount == 5_800
        assert withdrawal.status == RequestStatus.FULFILLED
        assert await repo.list_stale(older_than=1_000) == []

    @pytest.mark.asyncio
    async def test_processed_set_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = ProcessedRequestRepository(async_session)
        assert not await repo.contains(5)

        await repo.add(5, kind=RequestKind.SETTLEMENT, at=1)
        await repo.add(5, kind=RequestKind.SETTLEMENT, at=2)

        assert await repo.contains(5)
        assert await repo.count() == 1

    @pytest.mark.asyncio
    async def test_negative_request_id_is_rejected(self, async_session: AsyncSession) -> None:
        with pytest.raises(ValueError):
            await ProcessedRequestRepository(async_session).contains(-1)


# ============================================================================
# Protocol State / Audit Tests
# ============================================================================


class TestProtocolStateRepository:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, async_session: AsyncSession) -> None:
        repo = ProtocolStateRepository(async_session)
        await repo.set("gateway", OWNER, at=1)
        await repo.set("gateway", TRADER, at=2)
        assert await repo.get("gateway") == TRADER

        await repo.delete("gateway")
        await repo.delete("gateway")
        assert await repo.get("gateway") is None


class TestAuditRepository:
    @pytest.mark.asyncio
    async def test_record_updates_activity(self, async_session: AsyncSession) -> None:
        repo = AuditRepository(async_session)
        assert await repo.get_activity(OWNER) is None

        await repo.record(actor=OWNER, action="create_contract", contract_id=1, at=100)
        await repo.record(actor=OWNER, action="set_reference_price", contract_id=1, at=105)
        await repo.record(actor=TRADER, action="open_position", contract_id=1, at=110)

        activity = await repo.get_activity(OWNER)
        assert activity.last_action_at == 105
        assert activity.action_count == 2
        assert [e.action for e in await repo.list_entries(actor=OWNER)] == ["create_contract", "set_reference_price"]
        assert len(await repo.list_entries(limit=2)) == 2


# ============================================================================
# DatabaseManager Tests
# ============================================================================


class TestDatabaseManager:
    @pytest.mark.asyncio
    async def test_in_memory_sessions_share_data(self) -> None:
        db = DatabaseManager("sqlite+aiosqlite:///:memory:")
        await db.init_schema_async()
        try:
            async with db.get_async_session() as session:
                await BalanceRepository(session).set(TRADER, "0x" + "aa" * 32, at=1)
            async with db.get_async_session() as session:
                assert await BalanceRepository(session).get(TRADER) == "0x" + "aa" * 32
        finally:
            await db.dispose_async()

    @pytest.mark.asyncio
    async def test_missing_tables(self, tmp_path) -> None:
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
        try:
            assert "processed_requests" in await db.missing_tables()
            await db.init_schema_async()
            assert await db.missing_tables() == []
        finally:
            await db.dispose_async()

    def test_sync_urls_are_upgraded(self) -> None:
        assert normalize_async_database_url("postgresql://u:p@db/ledger") == "postgresql+asyncpg://u:p@db/ledger"
        assert normalize_async_database_url("sqlite:///ledger.db") == "sqlite+aiosqlite:///ledger.db"
        assert normalize_async_database_url("sqlite+aiosqlite:///:memory:") == "sqlite+aiosqlite:///:memory:"
        assert DatabaseManager("sqlite+aiosqlite:///:memory:").is_memory

    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self) -> None:
        db = DatabaseManager("sqlite+aiosqlite:///:memory:")
        await db.init_schema_async()
        try:
            with pytest.raises(RuntimeError):
                async with db.get_async_session() as session:
                    await BalanceRepository(session).set(TRADER, "0x" + "aa" * 32, at=1)
                    raise RuntimeError("boom")
            async with db.get_async_session() as session:
                assert await BalanceRepository(session).get(TRADER) is None
        finally:
            await db.dispose_async()
