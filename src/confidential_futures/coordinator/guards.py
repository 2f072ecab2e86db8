"""Authorization, rate-limit and input guards.

Each guard is a pure predicate over (caller, current state, timestamp) and
returns `Allowed` or `Denied(kind, reason)`. Operations evaluate their guards
before touching state and turn the first denial into an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Union

from web3 import Web3

if TYPE_CHECKING:
    from collections.abc import Iterable

    from confidential_futures.storage.repos import ActorActivityDTO, FuturesContractDTO

UINT64_MAX = 2**64 - 1
MAX_UNDERLYING_LENGTH = 10


class DenialKind(str, Enum):
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"


@dataclass(frozen=True)
class Allowed:
    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    kind: DenialKind
    reason: str

    def __bool__(self) -> bool:
        return False


GuardResult = Union[Allowed, Denied]

ALLOWED = Allowed()


def first_denial(results: Iterable[GuardResult]) -> Denied | None:
    """Return the first `Denied` in evaluation order, if any."""
    for result in results:
        if isinstance(result, Denied):
            return result
    return None


def saturating_mul(a: int, b: int, *, limit: int = UINT64_MAX) -> int:
    """Multiply, clamping to `limit` instead of wrapping."""
    if a < 0 or b < 0:
        raise ValueError("saturating_mul operands must be non-negative")
    if a == 0 or b == 0:
        return 0
    if a > limit // b:
        return limit
    return min(a * b, limit)


def only_owner(caller: str, *, owner: str) -> GuardResult:
    if caller.lower() != owner.lower():
        return Denied(DenialKind.AUTHORIZATION, "caller is not the owner")
    return ALLOWED


def only_operator(caller: str, *, owner: str, operators: set[str]) -> GuardResult:
    key = caller.lower()
    if key != owner.lower() and key not in operators:
        return Denied(DenialKind.AUTHORIZATION, "caller is not an authorized operator")
    return ALLOWED


def only_gateway(caller: str, *, gateway: str | None, owner: str, dev_mode: bool) -> GuardResult:
    key = caller.lower()
    if gateway is not None and key == gateway.lower():
        return ALLOWED
    if dev_mode and key == owner.lower():
        return ALLOWED
    return Denied(DenialKind.AUTHORIZATION, "caller is not the authorized gateway")


def rate_limit(activity: ActorActivityDTO | None, *, now: int, cooldown_seconds: int) -> GuardResult:
    if activity is None or cooldown_seconds <= 0:
        return ALLOWED
    if now - activity.last_action_at < cooldown_seconds:
        return Denied(
            DenialKind.RATE_LIMIT,
            f"rate limited: last action {now - activity.last_action_at}s ago (cooldown {cooldown_seconds}s)",
        )
    return ALLOWED


def valid_underlying(underlying: str) -> GuardResult:
    if not (1 <= len(underlying) <= MAX_UNDERLYING_LENGTH):
        return Denied(
            DenialKind.VALIDATION,
            f"underlying must be 1-{MAX_UNDERLYING_LENGTH} characters",
        )
    return ALLOWED


def contract_active(contract: FuturesContractDTO, *, now: int) -> GuardResult:
    if not contract.price_set:
        return Denied(DenialKind.VALIDATION, "contract price not set")
    if contract.settled:
        return Denied(DenialKind.VALIDATION, "contract already settled")
    if now >= contract.expiry_time:
        return Denied(DenialKind.VALIDATION, "contract expired")
    return ALLOWED


def bounded_amount(value: int, *, maximum: int, label: str) -> GuardResult:
    if value <= 0:
        return Denied(DenialKind.VALIDATION, f"{label} must be greater than zero")
    if value > maximum:
        return Denied(DenialKind.VALIDATION, f"{label} exceeds maximum {maximum}")
    return ALLOWED


def no_overflow(a: int, b: int, *, label: str, addend: int = 0) -> GuardResult:
    if a < 0 or b < 0 or addend < 0:
        return Denied(DenialKind.VALIDATION, f"{label} operands must be non-negative")
    product = saturating_mul(a, b)
    if product == UINT64_MAX or product > UINT64_MAX - addend:
        return Denied(DenialKind.VALIDATION, f"{label} overflows uint64")
    return ALLOWED


def settlement_allowed(
    contract: FuturesContractDTO,
    *,
    now: int,
    last_settlement_time: int,
    settlement_interval_seconds: int,
) -> GuardResult:
    if not contract.price_set:
        return Denied(DenialKind.VALIDATION, "contract price not set")
    if contract.settled:
        return Denied(DenialKind.VALIDATION, "contract already settled")
    if contract.active_decryption_request_id is not None:
        return Denied(DenialKind.VALIDATION, "settlement already pending")
    expired = now >= contract.expiry_time
    window_open = now >= last_settlement_time + settlement_interval_seconds
    if not (expired or window_open):
        return Denied(DenialKind.VALIDATION, "not settlement time")
    return ALLOWED


def manual_refund_allowed(
    contract: FuturesContractDTO,
    *,
    now: int,
    decryption_timeout_seconds: int,
) -> GuardResult:
    if now < contract.expiry_time + decryption_timeout_seconds:
        return Denied(DenialKind.VALIDATION, "refund window not reached")
    return ALLOWED


def valid_address(address: str) -> GuardResult:
    if not Web3.is_address(address):
        return Denied(DenialKind.VALIDATION, f"invalid address {address!r}")
    return ALLOWED
