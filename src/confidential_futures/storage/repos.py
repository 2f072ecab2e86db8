"""Repository pattern implementations for ledger access.

Repositories wrap one `AsyncSession`; the settlement coordinator opens one
session per operation so that every operation commits or rolls back as a
unit. Request ids are converted between `int` (domain) and decimal strings
(storage) here and nowhere else.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update

from confidential_futures.storage.models import (
    ActorActivityModel,
    AuditLogModel,
    DecryptionRequestModel,
    FuturesContractModel,
    PositionStatus,
    ProcessedRequestModel,
    ProtocolStateModel,
    RequestKind,
    RequestStatus,
    TraderBalanceModel,
    TraderPositionModel,
    WithdrawalRequestModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _rid(request_id: int) -> str:
    if request_id < 0:
        raise ValueError("request_id must be >= 0")
    return str(request_id)


@dataclass
class FuturesContractDTO:
    """Data transfer object for futures contracts."""

    contract_id: int
    underlying: str
    settlement_price: str | None
    price_set: bool
    settled: bool
    total_volume: str | None
    expiry_time: int
    creation_time: int
    created_by: str
    active_decryption_request_id: int | None = None
    settlement_requested_at: int | None = None
    traders: list[str] = field(default_factory=list)

    @classmethod
    def from_model(cls, model: FuturesContractModel, *, traders: list[str] | None = None) -> FuturesContractDTO:
        return cls(
            contract_id=model.contract_id,
            underlying=model.underlying,
            settlement_price=model.settlement_price,
            price_set=model.price_set,
            settled=model.settled,
            total_volume=model.total_volume,
            expiry_time=model.expiry_time,
            creation_time=model.creation_time,
            created_by=model.created_by,
            active_decryption_request_id=(
                int(model.active_decryption_request_id)
                if model.active_decryption_request_id is not None
                else None
            ),
            settlement_requested_at=model.settlement_requested_at,
            traders=list(traders or []),
        )

    def is_active(self, now: int) -> bool:
        return self.price_set and not self.settled and now < self.expiry_time


@dataclass
class TraderPositionDTO:
    """Data transfer object for trader positions."""

    contract_id: int
    trader: str
    amount: str
    entry_price: str
    collateral: str
    nonce: str
    is_long: bool
    status: PositionStatus
    entry_time: int
    closed_at: int | None = None

    @classmethod
    def from_model(cls, model: TraderPositionModel) -> TraderPositionDTO:
        return cls(
            contract_id=model.contract_id,
            trader=model.trader,
            amount=model.amount,
            entry_price=model.entry_price,
            collateral=model.collateral,
            nonce=model.nonce,
            is_long=model.is_long,
            status=PositionStatus(model.status),
            entry_time=model.entry_time,
            closed_at=model.closed_at,
        )


@dataclass
class DecryptionRequestDTO:
    """Data transfer object for settlement decryption requests."""

    request_id: int
    contract_id: int
    requestor: str
    timestamp: int
    status: RequestStatus
    is_settlement: bool = True
    decrypted_price: int | None = None
    resolved_at: int | None = None

    @classmethod
    def from_model(cls, model: DecryptionRequestModel) -> DecryptionRequestDTO:
        return cls(
            request_id=int(model.request_id),
            contract_id=model.contract_id,
            requestor=model.requestor,
            timestamp=model.timestamp,
            status=RequestStatus(model.status),
            is_settlement=model.is_settlement,
            decrypted_price=model.decrypted_price,
            resolved_at=model.resolved_at,
        )


@dataclass
class WithdrawalRequestDTO:
    """Data transfer object for withdrawal requests."""

    request_id: int
    trader: str
    balance: str
    timestamp: int
    status: RequestStatus
    amount: int | None = None
    resolved_at: int | None = None

    @classmethod
    def from_model(cls, model: WithdrawalRequestModel) -> WithdrawalRequestDTO:
        return cls(
            request_id=int(model.request_id),
            trader=model.trader,
            balance=model.balance,
            timestamp=model.timestamp,
            status=RequestStatus(model.status),
            amount=model.amount,
            resolved_at=model.resolved_at,
        )


@dataclass
class AuditEntryDTO:
    """Data transfer object for audit log entries."""

    actor: str
    action: str
    contract_id: int | None
    timestamp: int

    @classmethod
    def from_model(cls, model: AuditLogModel) -> AuditEntryDTO:
        return cls(
            actor=model.actor,
            action=model.action,
            contract_id=model.contract_id,
            timestamp=model.timestamp,
        )


@dataclass
class ActorActivityDTO:
    actor: str
    last_action_at: int
    action_count: int


class ContractRepository:
    """Repository for futures contracts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, *, underlying: str, created_by: str, creation_time: int, expiry_time: int) -> int:
        model = FuturesContractModel(
            underlying=underlying,
            price_set=False,
            settled=False,
            creation_time=creation_time,
            expiry_time=expiry_time,
            created_by=created_by.lower(),
        )
        self.session.add(model)
        await self.session.flush()
        return model.contract_id

    async def get(self, contract_id: int, *, with_traders: bool = False) -> FuturesContractDTO | None:
        result = await self.session.execute(
            select(FuturesContractModel).where(FuturesContractModel.contract_id == contract_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        traders: list[str] = []
        if with_traders:
            rows = await self.session.execute(
                select(TraderPositionModel.trader)
                .where(TraderPositionModel.contract_id == contract_id)
                .order_by(TraderPositionModel.id.asc())
            )
            traders = [row[0] for row in rows.all()]
        return FuturesContractDTO.from_model(model, traders=traders)

    async def update_fields(self, contract_id: int, **values: object) -> None:
        request_id = values.get("active_decryption_request_id")
        if isinstance(request_id, int):
            values["active_decryption_request_id"] = _rid(request_id)
        await self.session.execute(
            update(FuturesContractModel)
            .where(FuturesContractModel.contract_id == contract_id)
            .values(**values)
        )
        await self.session.flush()

    async def count_active(self, *, now: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(FuturesContractModel)
            .where(
                (FuturesContractModel.price_set.is_(True))
                & (FuturesContractModel.settled.is_(False))
                & (FuturesContractModel.expiry_time > now)
            )
        )
        return int(result.scalar_one())


class PositionRepository:
    """Repository for trader positions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contract_id: int, trader: str) -> TraderPositionDTO | None:
        result = await self.session.execute(
            select(TraderPositionModel).where(
                (TraderPositionModel.contract_id == contract_id)
                & (TraderPositionModel.trader == trader.lower())
            )
        )
        model = result.scalar_one_or_none()
        return TraderPositionDTO.from_model(model) if model else None

    async def insert(self, dto: TraderPositionDTO) -> TraderPositionDTO:
        model = TraderPositionModel(
            contract_id=dto.contract_id,
            trader=dto.trader.lower(),
            amount=dto.amount,
            entry_price=dto.entry_price,
            collateral=dto.collateral,
            nonce=dto.nonce,
            is_long=dto.is_long,
            status=dto.status.value,
            entry_time=dto.entry_time,
        )
        self.session.add(model)
        await self.session.flush()
        return dto

    async def list_by_status(self, contract_id: int, status: PositionStatus) -> list[TraderPositionDTO]:
        """Positions in join order."""
        result = await self.session.execute(
            select(TraderPositionModel)
            .where(
                (TraderPositionModel.contract_id == contract_id)
                & (TraderPositionModel.status == status.value)
            )
            .order_by(TraderPositionModel.id.asc())
        )
        return [TraderPositionDTO.from_model(m) for m in result.scalars().all()]

    async def transition(
        self,
        contract_id: int,
        trader: str,
        *,
        from_status: PositionStatus,
        to_status: PositionStatus,
        at: int,
    ) -> bool:
        """Compare-and-set a position status; returns False if it was not `from_status`."""
        result = await self.session.execute(
            update(TraderPositionModel)
            .where(
                (TraderPositionModel.contract_id == contract_id)
                & (TraderPositionModel.trader == trader.lower())
                & (TraderPositionModel.status == from_status.value)
            )
            .values(status=to_status.value, closed_at=at if to_status.is_terminal else None)
        )
        await self.session.flush()
        return bool(result.rowcount)


class BalanceRepository:
    """Repository for encrypted trader balances."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, trader: str) -> str | None:
        result = await self.session.execute(
            select(TraderBalanceModel.balance).where(TraderBalanceModel.trader == trader.lower())
        )
        return result.scalar_one_or_none()

    async def set(self, trader: str, balance: str | None, *, at: int) -> None:
        key = trader.lower()
        result = await self.session.execute(select(TraderBalanceModel).where(TraderBalanceModel.trader == key))
        model = result.scalar_one_or_none()
        if model is None:
            self.session.add(TraderBalanceModel(trader=key, balance=balance, updated_at=at))
        else:
            model.balance = balance
            model.updated_at = at
        await self.session.flush()


class DecryptionRequestRepository:
    """Repository for settlement decryption requests."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: DecryptionRequestDTO) -> DecryptionRequestDTO:
        self.session.add(
            DecryptionRequestModel(
                request_id=_rid(dto.request_id),
                contract_id=dto.contract_id,
                requestor=dto.requestor.lower(),
                timestamp=dto.timestamp,
                status=dto.status.value,
                is_settlement=dto.is_settlement,
                decrypted_price=dto.decrypted_price,
            )
        )
        await self.session.flush()
        return dto

    async def get(self, request_id: int) -> DecryptionRequestDTO | None:
        result = await self.session.execute(
            select(DecryptionRequestModel).where(DecryptionRequestModel.request_id == _rid(request_id))
        )
        model = result.scalar_one_or_none()
        return DecryptionRequestDTO.from_model(model) if model else None

    async def resolve(
        self,
        request_id: int,
        *,
        status: RequestStatus,
        at: int,
        decrypted_price: int | None = None,
    ) -> None:
        values: dict[str, object] = {"status": status.value, "resolved_at": at}
        if decrypted_price is not None:
            values["decrypted_price"] = decrypted_price
        await self.session.execute(
            update(DecryptionRequestModel)
            .where(DecryptionRequestModel.request_id == _rid(request_id))
            .values(**values)
        )
        await self.session.flush()

    async def list_stale(self, *, older_than: int) -> list[DecryptionRequestDTO]:
        """Non-terminal requests issued at or before `older_than`."""
        result = await self.session.execute(
            select(DecryptionRequestModel)
            .where(
                DecryptionRequestModel.status.in_(
                    [RequestStatus.PENDING.value, RequestStatus.FAILED.value]
                )
                & (DecryptionRequestModel.timestamp <= older_than)
            )
            .order_by(DecryptionRequestModel.timestamp.asc())
        )
        return [DecryptionRequestDTO.from_model(m) for m in result.scalars().all()]


class WithdrawalRequestRepository:
    """Repository for withdrawal requests."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: WithdrawalRequestDTO) -> WithdrawalRequestDTO:
        self.session.add(
            WithdrawalRequestModel(
                request_id=_rid(dto.request_id),
                trader=dto.trader.lower(),
                balance=dto.balance,
                timestamp=dto.timestamp,
                status=dto.status.value,
            )
        )
        await self.session.flush()
        return dto

    async def get(self, request_id: int) -> WithdrawalRequestDTO | None:
        result = await self.session.execute(
            select(WithdrawalRequestModel).where(WithdrawalRequestModel.request_id == _rid(request_id))
        )
        model = result.scalar_one_or_none()
        return WithdrawalRequestDTO.from_model(model) if model else None

    async def resolve(
        self,
        request_id: int,
        *,
        status: RequestStatus,
        at: int,
        amount: int | None = None,
    ) -> None:
        values: dict[str, object] = {"status": status.value, "resolved_at": at}
        if amount is not None:
            values["amount"] = amount
        await self.session.execute(
            update(WithdrawalRequestModel)
            .where(WithdrawalRequestModel.request_id == _rid(request_id))
            .values(**values)
        )
        await self.session.flush()

    async def list_stale(self, *, older_than: int) -> list[WithdrawalRequestDTO]:
        result = await self.session.execute(
            select(WithdrawalRequestModel)
            .where(
                WithdrawalRequestModel.status.in_(
                    [RequestStatus.PENDING.value, RequestStatus.FAILED.value]
                )
                & (WithdrawalRequestModel.timestamp <= older_than)
            )
            .order_by(WithdrawalRequestModel.timestamp.asc())
        )
        return [WithdrawalRequestDTO.from_model(m) for m in result.scalars().all()]


class ProcessedRequestRepository:
    """The global processed-request set."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def contains(self, request_id: int) -> bool:
        result = await self.session.execute(
            select(ProcessedRequestModel.request_id).where(ProcessedRequestModel.request_id == _rid(request_id))
        )
        return result.scalar_one_or_none() is not None

    async def add(self, request_id: int, *, kind: RequestKind, at: int) -> None:
        if await self.contains(request_id):
            return
        self.session.add(ProcessedRequestModel(request_id=_rid(request_id), kind=kind.value, processed_at=at))
        await self.session.flush()

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(ProcessedRequestModel))
        return int(result.scalar_one())


class ProtocolStateRepository:
    """Key/value protocol state."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(
            select(ProtocolStateModel.value).where(ProtocolStateModel.key == key)
        )
        return result.scalar_one_or_none()

    async def set(self, key: str, value: str, *, at: int) -> None:
        result = await self.session.execute(select(ProtocolStateModel).where(ProtocolStateModel.key == key))
        model = result.scalar_one_or_none()
        if model is None:
            self.session.add(ProtocolStateModel(key=key, value=value, updated_at=at))
        else:
            model.value = value
            model.updated_at = at
        await self.session.flush()

    async def delete(self, key: str) -> None:
        result = await self.session.execute(select(ProtocolStateModel).where(ProtocolStateModel.key == key))
        model = result.scalar_one_or_none()
        if model is not None:
            await self.session.delete(model)
            await self.session.flush()


class AuditRepository:
    """Append-only audit log plus rate-limit counters."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_activity(self, actor: str) -> ActorActivityDTO | None:
        result = await self.session.execute(
            select(ActorActivityModel).where(ActorActivityModel.actor == actor.lower())
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return ActorActivityDTO(
            actor=model.actor,
            last_action_at=model.last_action_at,
            action_count=model.action_count,
        )

    async def record(self, *, actor: str, action: str, contract_id: int | None, at: int) -> AuditEntryDTO:
        key = actor.lower()
        self.session.add(AuditLogModel(actor=key, action=action, contract_id=contract_id, timestamp=at))
        result = await self.session.execute(select(ActorActivityModel).where(ActorActivityModel.actor == key))
        activity = result.scalar_one_or_none()
        if activity is None:
            self.session.add(ActorActivityModel(actor=key, last_action_at=at, action_count=1))
        else:
            activity.last_action_at = at
            activity.action_count += 1
        await self.session.flush()
        return AuditEntryDTO(actor=key, action=action, contract_id=contract_id, timestamp=at)

    async def list_entries(self, *, actor: str | None = None, limit: int = 1000) -> list[AuditEntryDTO]:
        stmt = select(AuditLogModel).order_by(AuditLogModel.id.asc()).limit(limit)
        if actor is not None:
            stmt = stmt.where(AuditLogModel.actor == actor.lower())
        result = await self.session.execute(stmt)
        return [AuditEntryDTO.from_model(m) for m in result.scalars().all()]
