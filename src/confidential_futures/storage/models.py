"""SQLAlchemy models for the settlement ledger.

This module defines the durable schema owned by the settlement coordinator:
futures contracts, trader positions and balances, decryption and withdrawal
requests, the processed-request set, protocol key/values, and the audit log.

Timestamps are stored as integer epoch seconds (ledger time), request ids as
decimal strings (they are uint256 on chain), and encrypted values as opaque
ciphertext handles.
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

HANDLE_LENGTH = 66
ADDRESS_LENGTH = 42
REQUEST_ID_LENGTH = 80


class PositionStatus(str, Enum):
    """Trader position lifecycle states."""

    ACTIVE = "ACTIVE"
    SETTLEMENT_PENDING = "SETTLEMENT_PENDING"
    SETTLED = "SETTLED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in (PositionStatus.SETTLED, PositionStatus.REFUNDED)


class RequestStatus(str, Enum):
    """Decryption / withdrawal request lifecycle states."""

    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.FULFILLED, RequestStatus.REFUNDED)


class RequestKind(str, Enum):
    SETTLEMENT = "settlement"
    WITHDRAWAL = "withdrawal"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class FuturesContractModel(Base):
    """One tradable instrument-period."""

    __tablename__ = "futures_contracts"

    contract_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    underlying: Mapped[str] = mapped_column(String(10), nullable=False)

    settlement_price: Mapped[str | None] = mapped_column(String(HANDLE_LENGTH), nullable=True)
    price_set: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_volume: Mapped[str | None] = mapped_column(String(HANDLE_LENGTH), nullable=True)

    expiry_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creation_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_by: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)

    active_decryption_request_id: Mapped[str | None] = mapped_column(
        String(REQUEST_ID_LENGTH), nullable=True
    )
    settlement_requested_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (Index("idx_futures_contracts_settled_expiry", "settled", "expiry_time"),)


class TraderPositionModel(Base):
    """A trader's position in one contract. Never deleted."""

    __tablename__ = "trader_positions"

    # Autoincrement id doubles as the contract's trader join order.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    trader: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)

    amount: Mapped[str] = mapped_column(String(HANDLE_LENGTH), nullable=False)
    entry_price: Mapped[str] = mapped_column(String(HANDLE_LENGTH), nullable=False)
    collateral: Mapped[str] = mapped_column(String(HANDLE_LENGTH), nullable=False)
    nonce: Mapped[str] = mapped_column(String(HANDLE_LENGTH), nullable=False)
    is_long: Mapped[bool] = mapped_column(Boolean, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    entry_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    closed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint("contract_id", "trader", name="uq_trader_positions_contract_trader"),
        Index("idx_trader_positions_contract_status", "contract_id", "status"),
        Index("idx_trader_positions_trader", "trader"),
    )


class TraderBalanceModel(Base):
    """Encrypted per-trader balance credited by settlement and refunds."""

    __tablename__ = "trader_balances"

    trader: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), primary_key=True)
    balance: Mapped[str | None] = mapped_column(String(HANDLE_LENGTH), nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class DecryptionRequestModel(Base):
    """A settlement decryption request issued to the resolver."""

    __tablename__ = "decryption_requests"

    request_id: Mapped[str] = mapped_column(String(REQUEST_ID_LENGTH), primary_key=True)
    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    requestor: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    decrypted_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_settlement: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    resolved_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("idx_decryption_requests_status_ts", "status", "timestamp"),
        Index("idx_decryption_requests_contract", "contract_id"),
    )


class WithdrawalRequestModel(Base):
    """A withdrawal decryption request over a trader's balance."""

    __tablename__ = "withdrawal_requests"

    request_id: Mapped[str] = mapped_column(String(REQUEST_ID_LENGTH), primary_key=True)
    trader: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    balance: Mapped[str] = mapped_column(String(HANDLE_LENGTH), nullable=False)
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    resolved_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("idx_withdrawal_requests_status_ts", "status", "timestamp"),
        Index("idx_withdrawal_requests_trader", "trader"),
    )


class ProcessedRequestModel(Base):
    """Global processed-request set guarding against callback replay."""

    __tablename__ = "processed_requests"

    request_id: Mapped[str] = mapped_column(String(REQUEST_ID_LENGTH), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ProtocolStateModel(Base):
    """Durable protocol key/values (gateway, operators, settlement clock)."""

    __tablename__ = "protocol_state"

    key: Mapped[str] = mapped_column(String(80), primary_key=True)
    value: Mapped[str] = mapped_column(String(200), nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class AuditLogModel(Base):
    """Append-only audit record of state-changing calls."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    contract_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_audit_log_actor_ts", "actor", "timestamp"),)


class ActorActivityModel(Base):
    """Per-actor rate-limit counters."""

    __tablename__ = "actor_activity"

    actor: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), primary_key=True)
    last_action_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
