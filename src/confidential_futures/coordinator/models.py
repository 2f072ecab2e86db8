"""Event and configuration models for the settlement coordinator."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from confidential_futures.config import ProtocolSettings

HOUR = 3600


@dataclass(frozen=True)
class ProtocolConfig:
    """Protocol constants used by the coordinator.

    Attributes:
        owner: Coordinator owner; always an authorized operator.
        gateway: Initial authorized gateway (may be changed via `set_gateway`).
        settlement_interval_seconds: Global settlement window period.
        decryption_timeout_seconds: Age after which pending decryptions are refunded.
        contract_duration_seconds: Contract lifetime from creation to expiry.
        max_position_amount: Upper bound on position amounts.
        max_collateral_amount: Upper bound on collateral.
        price_obfuscation_factor: Multiplier applied to reference prices.
        pnl_scale: Divisor from price-difference x amount to collateral units.
        rate_limit_cooldown_seconds: Minimum spacing between one actor's calls.
        dev_mode: Allow the owner to deliver callbacks.
    """

    owner: str
    gateway: str | None = None
    settlement_interval_seconds: int = 4 * HOUR
    decryption_timeout_seconds: int = 24 * HOUR
    contract_duration_seconds: int = 24 * HOUR
    max_position_amount: int = 1_000_000
    max_collateral_amount: int = 1_000_000_000
    price_obfuscation_factor: int = 1000
    pnl_scale: int = 100
    rate_limit_cooldown_seconds: int = 1
    dev_mode: bool = False

    @classmethod
    def from_settings(cls, settings: ProtocolSettings) -> ProtocolConfig:
        return cls(
            owner=settings.owner_address.lower(),
            gateway=settings.gateway_address.lower() if settings.gateway_address else None,
            settlement_interval_seconds=settings.settlement_interval_seconds,
            decryption_timeout_seconds=settings.decryption_timeout_seconds,
            contract_duration_seconds=settings.contract_duration_seconds,
            max_position_amount=settings.max_position_amount,
            max_collateral_amount=settings.max_collateral_amount,
            price_obfuscation_factor=settings.price_obfuscation_factor,
            pnl_scale=settings.pnl_scale,
            rate_limit_cooldown_seconds=settings.rate_limit_cooldown_seconds,
            dev_mode=settings.dev_mode,
        )


@dataclass(frozen=True)
class LedgerEvent:
    """Base class for events emitted by the coordinator after commit."""

    name: ClassVar[str] = "LedgerEvent"

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for logging and event transport."""
        return {"event": self.name, **asdict(self)}


@dataclass(frozen=True)
class ContractCreated(LedgerEvent):
    name: ClassVar[str] = "ContractCreated"

    contract_id: int
    underlying: str
    expiry_time: int


@dataclass(frozen=True)
class ReferencePriceSet(LedgerEvent):
    name: ClassVar[str] = "ReferencePriceSet"

    contract_id: int
    timestamp: int


@dataclass(frozen=True)
class PositionOpened(LedgerEvent):
    name: ClassVar[str] = "PositionOpened"

    trader: str
    contract_id: int
    is_long: bool


@dataclass(frozen=True)
class DecryptionRequested(LedgerEvent):
    name: ClassVar[str] = "DecryptionRequested"

    request_id: int
    contract_id: int
    timestamp: int


@dataclass(frozen=True)
class DecryptionFailed(LedgerEvent):
    name: ClassVar[str] = "DecryptionFailed"

    request_id: int
    reason: str


@dataclass(frozen=True)
class ContractSettled(LedgerEvent):
    name: ClassVar[str] = "ContractSettled"

    contract_id: int
    settlement_price: int


@dataclass(frozen=True)
class ProfitDistributed(LedgerEvent):
    name: ClassVar[str] = "ProfitDistributed"

    trader: str
    contract_id: int


@dataclass(frozen=True)
class RefundProcessed(LedgerEvent):
    name: ClassVar[str] = "RefundProcessed"

    trader: str
    contract_id: int
    reason: str


@dataclass(frozen=True)
class TimeoutProtectionTriggered(LedgerEvent):
    name: ClassVar[str] = "TimeoutProtectionTriggered"

    request_id: int
    contract_id: int
    refunded_positions: int


@dataclass(frozen=True)
class WithdrawalRequested(LedgerEvent):
    name: ClassVar[str] = "WithdrawalRequested"

    request_id: int
    trader: str
    timestamp: int


@dataclass(frozen=True)
class WithdrawalProcessed(LedgerEvent):
    name: ClassVar[str] = "WithdrawalProcessed"

    request_id: int
    trader: str
    amount: int


@dataclass(frozen=True)
class WithdrawalRejected(LedgerEvent):
    name: ClassVar[str] = "WithdrawalRejected"

    request_id: int
    trader: str
    reason: str


@dataclass(frozen=True)
class GatewayCallbackProcessed(LedgerEvent):
    name: ClassVar[str] = "GatewayCallbackProcessed"

    request_id: int
    success: bool


@dataclass(frozen=True)
class AuditLog(LedgerEvent):
    name: ClassVar[str] = "AuditLog"

    actor: str
    action: str
    contract_id: int | None
    timestamp: int
