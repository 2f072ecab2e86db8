"""Settlement coordinator: the authoritative state machine over the ledger.

Every public operation runs under one coordinator-wide lock inside one
database transaction. Guards are evaluated before any mutation; a rejected
call raises and the transaction rolls back, so it leaves no trace. Events
are collected during the transaction and published only after it commits.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, NoReturn

from web3 import Web3

from confidential_futures.coordinator import guards
from confidential_futures.coordinator.events import EventBus
from confidential_futures.coordinator.models import (
    AuditLog,
    ContractCreated,
    ContractSettled,
    DecryptionFailed,
    DecryptionRequested,
    GatewayCallbackProcessed,
    LedgerEvent,
    PositionOpened,
    ProfitDistributed,
    ProtocolConfig,
    ReferencePriceSet,
    RefundProcessed,
    TimeoutProtectionTriggered,
    WithdrawalProcessed,
    WithdrawalRejected,
    WithdrawalRequested,
)
from confidential_futures.coordinator.payoff import credit, settlement_payout
from confidential_futures.storage.models import PositionStatus, RequestKind, RequestStatus
from confidential_futures.storage.repos import (
    AuditEntryDTO,
    AuditRepository,
    BalanceRepository,
    ContractRepository,
    DecryptionRequestDTO,
    DecryptionRequestRepository,
    FuturesContractDTO,
    PositionRepository,
    ProcessedRequestRepository,
    ProtocolStateRepository,
    TraderPositionDTO,
    WithdrawalRequestDTO,
    WithdrawalRequestRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from confidential_futures.coordinator.encryption import Ciphertext, FheEngine
    from confidential_futures.coordinator.resolver import ResolverClient
    from confidential_futures.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

GATEWAY_KEY = "gateway"
OPERATOR_KEY_PREFIX = "operator:"
LAST_SETTLEMENT_KEY = "last_settlement_time"
SYSTEM_ACTOR = "0x0000000000000000000000000000000000000000"
NONCE_MODULUS = 2**32

_OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.FAILED)


class CoordinatorError(Exception):
    """Base exception for rejected coordinator operations."""


class AuthorizationError(CoordinatorError):
    """Raised when the caller lacks the required role."""


class ValidationError(CoordinatorError):
    """Raised when inputs or current state do not allow the operation."""


class RateLimitedError(CoordinatorError):
    """Raised when the caller acts again within the cooldown."""


_ERRORS: dict[guards.DenialKind, type[CoordinatorError]] = {
    guards.DenialKind.AUTHORIZATION: AuthorizationError,
    guards.DenialKind.VALIDATION: ValidationError,
    guards.DenialKind.RATE_LIMIT: RateLimitedError,
}


def position_nonce(trader: str, contract_id: int, timestamp: int) -> int:
    """Per-position blinding value: keccak(trader, contract_id, timestamp) mod 2**32."""
    packed = (
        Web3.to_bytes(hexstr=trader)
        + contract_id.to_bytes(32, "big")
        + timestamp.to_bytes(32, "big")
    )
    return int.from_bytes(Web3.keccak(packed), "big") % NONCE_MODULUS


class _Ledger:
    """Repositories bound to the session of one coordinator transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.contracts = ContractRepository(session)
        self.positions = PositionRepository(session)
        self.balances = BalanceRepository(session)
        self.decryptions = DecryptionRequestRepository(session)
        self.withdrawals = WithdrawalRequestRepository(session)
        self.processed = ProcessedRequestRepository(session)
        self.state = ProtocolStateRepository(session)
        self.audit = AuditRepository(session)


class SettlementCoordinator:
    """Holds contracts, positions and balances whose values stay encrypted.

    The coordinator cannot decrypt anything itself. Settlement and
    withdrawal go through the resolver, and the outcome comes back through
    `handle_settlement_callback` / `handle_withdrawal_callback`, delivered
    by the authorized gateway. If the outcome never arrives, the timeout
    sweep refunds the affected positions.

    Example:
        ```python
        coordinator = SettlementCoordinator(db, engine, resolver, config)
        await coordinator.initialize()
        contract_id = await coordinator.create_contract(owner, "BTC")
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        engine: FheEngine,
        resolver: ResolverClient,
        config: ProtocolConfig,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._engine = engine
        self._resolver = resolver
        self.config = config
        self.bus = bus or EventBus()
        self._clock = clock
        self._lock = asyncio.Lock()

    def _now(self) -> int:
        return int(self._clock())

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[_Ledger]:
        async with self._lock:
            async with self._db.get_async_session() as session:
                yield _Ledger(session)

    def _enforce(self, *results: guards.GuardResult) -> None:
        denial = guards.first_denial(results)
        if denial is None:
            return
        logger.warning("Rejected (%s): %s", denial.kind.value, denial.reason)
        raise _ERRORS[denial.kind](denial.reason)

    async def _check_rate(self, ledger: _Ledger, caller: str, now: int) -> None:
        activity = await ledger.audit.get_activity(caller)
        self._enforce(
            guards.rate_limit(
                activity,
                now=now,
                cooldown_seconds=self.config.rate_limit_cooldown_seconds,
            )
        )

    async def _require_operator(self, ledger: _Ledger, caller: str) -> None:
        operators = set()
        if await ledger.state.get(OPERATOR_KEY_PREFIX + caller.lower()) is not None:
            operators.add(caller.lower())
        self._enforce(guards.only_operator(caller, owner=self.config.owner, operators=operators))

    async def _require_gateway(self, ledger: _Ledger, caller: str) -> None:
        gateway = await ledger.state.get(GATEWAY_KEY)
        self._enforce(
            guards.only_gateway(
                caller,
                gateway=gateway,
                owner=self.config.owner,
                dev_mode=self.config.dev_mode,
            )
        )

    async def _require_contract(self, ledger: _Ledger, contract_id: int) -> FuturesContractDTO:
        contract = await ledger.contracts.get(contract_id)
        if contract is None:
            self._reject(f"unknown contract {contract_id}")
        return contract

    def _reject(self, reason: str) -> NoReturn:
        logger.warning("Rejected (%s): %s", guards.DenialKind.VALIDATION.value, reason)
        raise ValidationError(reason)

    def _is_stale(self, timestamp: int, now: int) -> bool:
        return now - timestamp >= self.config.decryption_timeout_seconds

    async def _record(
        self,
        ledger: _Ledger,
        events: list[LedgerEvent],
        actor: str,
        action: str,
        now: int,
        *,
        contract_id: int | None = None,
    ) -> None:
        entry = await ledger.audit.record(actor=actor, action=action, contract_id=contract_id, at=now)
        events.append(
            AuditLog(
                actor=entry.actor,
                action=entry.action,
                contract_id=entry.contract_id,
                timestamp=entry.timestamp,
            )
        )

    async def _last_settlement_time(self, ledger: _Ledger) -> int:
        value = await ledger.state.get(LAST_SETTLEMENT_KEY)
        return int(value) if value is not None else 0

    async def initialize(self) -> None:
        """Seed protocol state that is missing from the ledger.

        The configured gateway becomes the authorized gateway and the
        settlement window starts counting from now.
        """
        now = self._now()
        async with self._transaction() as ledger:
            if self.config.gateway and await ledger.state.get(GATEWAY_KEY) is None:
                await ledger.state.set(GATEWAY_KEY, self.config.gateway.lower(), at=now)
                logger.info("Gateway initialized to %s", self.config.gateway)
            if await ledger.state.get(LAST_SETTLEMENT_KEY) is None:
                await ledger.state.set(LAST_SETTLEMENT_KEY, str(now), at=now)

    # ------------------------------------------------------------------
    # Contracts and positions
    # ------------------------------------------------------------------

    async def create_contract(self, caller: str, underlying: str) -> int:
        """Create a futures contract that expires after the contract duration."""
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._require_operator(ledger, caller)
            await self._check_rate(ledger, caller, now)
            self._enforce(guards.valid_underlying(underlying))

            expiry_time = now + self.config.contract_duration_seconds
            contract_id = await ledger.contracts.create(
                underlying=underlying,
                created_by=caller,
                creation_time=now,
                expiry_time=expiry_time,
            )
            events.append(ContractCreated(contract_id=contract_id, underlying=underlying, expiry_time=expiry_time))
            await self._record(ledger, events, caller, "create_contract", now, contract_id=contract_id)

        logger.info("Contract %d created for %s (expires %d)", contract_id, underlying, expiry_time)
        await self.bus.publish_all(events)
        return contract_id

    async def set_reference_price(self, caller: str, contract_id: int, price: int, nonce: int) -> None:
        """Store the obfuscated reference price and open the contract for trading."""
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._require_operator(ledger, caller)
            await self._check_rate(ledger, caller, now)
            contract = await self._require_contract(ledger, contract_id)
            if contract.price_set:
                self._reject("reference price already set")
            if nonce < 0:
                self._reject("nonce must be non-negative")
            self._enforce(
                guards.bounded_amount(price, maximum=guards.UINT64_MAX, label="price"),
                guards.no_overflow(
                    price,
                    self.config.price_obfuscation_factor,
                    label="obfuscated price",
                    addend=nonce,
                ),
            )

            obfuscated = price * self.config.price_obfuscation_factor + nonce
            await ledger.contracts.update_fields(
                contract_id,
                settlement_price=self._engine.encrypt(obfuscated),
                price_set=True,
            )
            events.append(ReferencePriceSet(contract_id=contract_id, timestamp=now))
            await self._record(ledger, events, caller, "set_reference_price", now, contract_id=contract_id)

        logger.info("Reference price set for contract %d", contract_id)
        await self.bus.publish_all(events)

    async def open_position(
        self,
        caller: str,
        contract_id: int,
        entry_price: int,
        amount: int,
        collateral: int,
        is_long: bool,
    ) -> None:
        """Open the caller's single position on an active contract."""
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._check_rate(ledger, caller, now)
            contract = await self._require_contract(ledger, contract_id)
            self._enforce(
                guards.valid_address(caller),
                guards.contract_active(contract, now=now),
                guards.bounded_amount(amount, maximum=self.config.max_position_amount, label="amount"),
                guards.bounded_amount(collateral, maximum=self.config.max_collateral_amount, label="collateral"),
                guards.bounded_amount(entry_price, maximum=guards.UINT64_MAX, label="entry price"),
                guards.no_overflow(entry_price, amount, label="position value"),
            )
            if await ledger.positions.get(contract_id, caller) is not None:
                self._reject("position already exists")

            encrypted_amount = self._engine.encrypt(amount)
            await ledger.positions.insert(
                TraderPositionDTO(
                    contract_id=contract_id,
                    trader=caller,
                    amount=encrypted_amount,
                    entry_price=self._engine.encrypt(entry_price),
                    collateral=self._engine.encrypt(collateral),
                    nonce=self._engine.encrypt(position_nonce(caller, contract_id, now)),
                    is_long=is_long,
                    status=PositionStatus.ACTIVE,
                    entry_time=now,
                )
            )
            volume = contract.total_volume or self._engine.zero()
            await ledger.contracts.update_fields(
                contract_id, total_volume=self._engine.add(volume, encrypted_amount)
            )
            events.append(PositionOpened(trader=caller.lower(), contract_id=contract_id, is_long=is_long))
            await self._record(ledger, events, caller, "open_position", now, contract_id=contract_id)

        logger.info(
            "Position opened: trader=%s contract=%d side=%s",
            caller,
            contract_id,
            "long" if is_long else "short",
        )
        await self.bus.publish_all(events)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def request_settlement(self, caller: str, contract_id: int, final_price: int) -> int:
        """Encrypt the final price and ask the resolver to decrypt it.

        Returns:
            The resolver request id, also stored as the contract's active
            decryption request.
        """
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._require_operator(ledger, caller)
            await self._check_rate(ledger, caller, now)
            contract = await self._require_contract(ledger, contract_id)
            self._enforce(
                guards.settlement_allowed(
                    contract,
                    now=now,
                    last_settlement_time=await self._last_settlement_time(ledger),
                    settlement_interval_seconds=self.config.settlement_interval_seconds,
                ),
                guards.bounded_amount(final_price, maximum=guards.UINT64_MAX, label="final price"),
                guards.no_overflow(final_price, self.config.max_position_amount, label="settlement value"),
            )

            encrypted_price = self._engine.encrypt(final_price)
            request_id = await self._resolver.request_decryption([encrypted_price])
            if await ledger.decryptions.get(request_id) is not None or await ledger.processed.contains(request_id):
                raise CoordinatorError(f"Resolver reused request id {request_id}")

            await ledger.decryptions.insert(
                DecryptionRequestDTO(
                    request_id=request_id,
                    contract_id=contract_id,
                    requestor=caller,
                    timestamp=now,
                    status=RequestStatus.PENDING,
                )
            )
            await ledger.contracts.update_fields(
                contract_id,
                settlement_price=encrypted_price,
                active_decryption_request_id=request_id,
                settlement_requested_at=now,
            )
            events.append(DecryptionRequested(request_id=request_id, contract_id=contract_id, timestamp=now))
            await self._record(ledger, events, caller, "request_settlement", now, contract_id=contract_id)

        logger.info("Settlement requested for contract %d (request %d)", contract_id, request_id)
        await self.bus.publish_all(events)
        return request_id

    async def handle_settlement_callback(
        self,
        caller: str,
        request_id: int,
        plaintext_price: int,
        proof: Sequence[bytes] = (),
    ) -> RequestStatus:
        """Apply a decrypted settlement price delivered by the gateway.

        A request that was already processed is left untouched and its
        current status is returned. A zero price is treated as a failed
        decryption: the request becomes FAILED (and may be redelivered), or
        is refunded outright once it is older than the decryption timeout.

        Returns:
            The request status after the call.
        """
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._require_gateway(ledger, caller)

            request = await ledger.decryptions.get(request_id)
            if request is None:
                self._reject(f"unknown request {request_id}")
            if await ledger.processed.contains(request_id):
                logger.debug("Settlement callback %d already processed", request_id)
                return request.status
            if request.status not in _OPEN_STATUSES:
                self._reject(f"request {request_id} is {request.status.value}")
            if plaintext_price < 0:
                self._reject("plaintext price must be non-negative")
            self._enforce(
                guards.no_overflow(plaintext_price, self.config.max_position_amount, label="settlement value")
            )
            logger.debug("Settlement callback %d with %d proof(s)", request_id, len(proof))

            if plaintext_price == 0:
                status = await self._fail_settlement(ledger, events, request, reason="zero plaintext", now=now)
                events.append(GatewayCallbackProcessed(request_id=request_id, success=False))
            else:
                await self._settle(ledger, events, request, final_price=plaintext_price, now=now)
                status = RequestStatus.FULFILLED
                events.append(GatewayCallbackProcessed(request_id=request_id, success=True))
            await self._record(ledger, events, caller, "settlement_callback", now, contract_id=request.contract_id)

        await self.bus.publish_all(events)
        return status

    async def _settle(
        self,
        ledger: _Ledger,
        events: list[LedgerEvent],
        request: DecryptionRequestDTO,
        *,
        final_price: int,
        now: int,
    ) -> None:
        contract_id = request.contract_id
        await ledger.contracts.update_fields(contract_id, settled=True, active_decryption_request_id=None)
        await ledger.decryptions.resolve(
            request.request_id, status=RequestStatus.FULFILLED, at=now, decrypted_price=final_price
        )
        await ledger.processed.add(request.request_id, kind=RequestKind.SETTLEMENT, at=now)
        await ledger.state.set(LAST_SETTLEMENT_KEY, str(now), at=now)
        events.append(ContractSettled(contract_id=contract_id, settlement_price=final_price))

        positions = await ledger.positions.list_by_status(contract_id, PositionStatus.ACTIVE)
        for position in positions:
            payout = settlement_payout(
                self._engine, position, final_price=final_price, pnl_scale=self.config.pnl_scale
            )
            await self._credit(ledger, position.trader, payout, now=now)
            await ledger.positions.transition(
                contract_id,
                position.trader,
                from_status=PositionStatus.ACTIVE,
                to_status=PositionStatus.SETTLED,
                at=now,
            )
            events.append(ProfitDistributed(trader=position.trader, contract_id=contract_id))

        logger.info(
            "Contract %d settled at %d (request %d, %d positions)",
            contract_id,
            final_price,
            request.request_id,
            len(positions),
        )

    async def _fail_settlement(
        self,
        ledger: _Ledger,
        events: list[LedgerEvent],
        request: DecryptionRequestDTO,
        *,
        reason: str,
        now: int,
    ) -> RequestStatus:
        if self._is_stale(request.timestamp, now):
            await self._refund_contract(ledger, events, request, now=now)
            return RequestStatus.REFUNDED

        await ledger.decryptions.resolve(request.request_id, status=RequestStatus.FAILED, at=now)
        events.append(DecryptionFailed(request_id=request.request_id, reason=reason))
        logger.warning("Settlement request %d failed: %s", request.request_id, reason)
        return RequestStatus.FAILED

    async def _refund_contract(
        self,
        ledger: _Ledger,
        events: list[LedgerEvent],
        request: DecryptionRequestDTO,
        *,
        now: int,
    ) -> int:
        contract_id = request.contract_id
        positions = await ledger.positions.list_by_status(contract_id, PositionStatus.ACTIVE)
        refunds: list[LedgerEvent] = []
        for position in positions:
            await self._credit(ledger, position.trader, position.collateral, now=now)
            await ledger.positions.transition(
                contract_id,
                position.trader,
                from_status=PositionStatus.ACTIVE,
                to_status=PositionStatus.REFUNDED,
                at=now,
            )
            refunds.append(RefundProcessed(trader=position.trader, contract_id=contract_id, reason="decryption timeout"))

        await ledger.contracts.update_fields(contract_id, settled=True, active_decryption_request_id=None)
        await ledger.decryptions.resolve(request.request_id, status=RequestStatus.REFUNDED, at=now)
        await ledger.processed.add(request.request_id, kind=RequestKind.SETTLEMENT, at=now)

        events.append(
            TimeoutProtectionTriggered(
                request_id=request.request_id,
                contract_id=contract_id,
                refunded_positions=len(positions),
            )
        )
        events.extend(refunds)
        logger.error(
            "Decryption timeout for request %d: refunded %d positions on contract %d",
            request.request_id,
            len(positions),
            contract_id,
        )
        return len(positions)

    async def _credit(self, ledger: _Ledger, trader: str, amount: Ciphertext, *, now: int) -> None:
        balance = await ledger.balances.get(trader)
        await ledger.balances.set(trader, credit(self._engine, balance, amount), at=now)

    # ------------------------------------------------------------------
    # Timeouts and refunds
    # ------------------------------------------------------------------

    async def sweep_timeouts(self, caller: str | None = None) -> list[int]:
        """Refund every request that has been open for the decryption timeout.

        Settlement requests refund all active positions of their contract.
        Withdrawal requests are closed as REFUNDED and the balance stays
        withdrawable. Anyone may call this.

        Returns:
            Ids of the requests that were refunded.
        """
        now = self._now()
        events: list[LedgerEvent] = []
        refunded: list[int] = []
        actor = caller or SYSTEM_ACTOR
        async with self._transaction() as ledger:
            cutoff = now - self.config.decryption_timeout_seconds
            for request in await ledger.decryptions.list_stale(older_than=cutoff):
                await self._refund_contract(ledger, events, request, now=now)
                refunded.append(request.request_id)
            for withdrawal in await ledger.withdrawals.list_stale(older_than=cutoff):
                if await ledger.processed.contains(withdrawal.request_id):
                    continue
                await self._expire_withdrawal(ledger, events, withdrawal, now=now)
                refunded.append(withdrawal.request_id)
            if refunded:
                await self._record(ledger, events, actor, "sweep_timeouts", now)

        if refunded:
            logger.info("Timeout sweep refunded %d requests", len(refunded))
        await self.bus.publish_all(events)
        return refunded

    async def process_timeout(self, request_id: int, caller: str | None = None) -> bool:
        """Run the timeout path for one request.

        Returns:
            True if the request was refunded, False if it is already
            terminal or not yet old enough.
        """
        now = self._now()
        events: list[LedgerEvent] = []
        actor = caller or SYSTEM_ACTOR
        async with self._transaction() as ledger:
            request = await ledger.decryptions.get(request_id)
            withdrawal = None if request else await ledger.withdrawals.get(request_id)
            if request is None and withdrawal is None:
                self._reject(f"unknown request {request_id}")
            if await ledger.processed.contains(request_id):
                return False

            if request is not None:
                if request.status not in _OPEN_STATUSES or not self._is_stale(request.timestamp, now):
                    return False
                await self._refund_contract(ledger, events, request, now=now)
                contract_id: int | None = request.contract_id
            elif withdrawal is not None:
                if withdrawal.status not in _OPEN_STATUSES or not self._is_stale(withdrawal.timestamp, now):
                    return False
                await self._expire_withdrawal(ledger, events, withdrawal, now=now)
                contract_id = None
            await self._record(ledger, events, actor, "process_timeout", now, contract_id=contract_id)

        await self.bus.publish_all(events)
        return True

    async def _expire_withdrawal(
        self,
        ledger: _Ledger,
        events: list[LedgerEvent],
        withdrawal: WithdrawalRequestDTO,
        *,
        now: int,
    ) -> None:
        await ledger.withdrawals.resolve(withdrawal.request_id, status=RequestStatus.REFUNDED, at=now)
        await ledger.processed.add(withdrawal.request_id, kind=RequestKind.WITHDRAWAL, at=now)
        events.append(
            WithdrawalRejected(request_id=withdrawal.request_id, trader=withdrawal.trader, reason="decryption timeout")
        )
        logger.warning("Withdrawal request %d timed out; balance left in place", withdrawal.request_id)

    async def request_manual_refund(self, caller: str, contract_id: int) -> None:
        """Refund the caller's active position once the contract is long past expiry."""
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._check_rate(ledger, caller, now)
            contract = await self._require_contract(ledger, contract_id)
            self._enforce(
                guards.manual_refund_allowed(
                    contract,
                    now=now,
                    decryption_timeout_seconds=self.config.decryption_timeout_seconds,
                )
            )
            position = await ledger.positions.get(contract_id, caller)
            if position is None or position.status != PositionStatus.ACTIVE:
                self._reject("no active position")

            await self._credit(ledger, caller, position.collateral, now=now)
            await ledger.positions.transition(
                contract_id,
                caller,
                from_status=PositionStatus.ACTIVE,
                to_status=PositionStatus.REFUNDED,
                at=now,
            )
            events.append(RefundProcessed(trader=caller.lower(), contract_id=contract_id, reason="manual refund"))
            await self._record(ledger, events, caller, "request_manual_refund", now, contract_id=contract_id)

        logger.info("Manual refund for %s on contract %d", caller, contract_id)
        await self.bus.publish_all(events)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    async def request_withdrawal(self, caller: str) -> int:
        """Ask the resolver to decrypt the caller's balance for withdrawal."""
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._check_rate(ledger, caller, now)
            balance = await ledger.balances.get(caller)
            if balance is None:
                self._reject("no balance to withdraw")

            request_id = await self._resolver.request_decryption([balance])
            if await ledger.withdrawals.get(request_id) is not None or await ledger.processed.contains(request_id):
                raise CoordinatorError(f"Resolver reused request id {request_id}")
            await ledger.withdrawals.insert(
                WithdrawalRequestDTO(
                    request_id=request_id,
                    trader=caller,
                    balance=balance,
                    timestamp=now,
                    status=RequestStatus.PENDING,
                )
            )
            events.append(WithdrawalRequested(request_id=request_id, trader=caller.lower(), timestamp=now))
            await self._record(ledger, events, caller, "request_withdrawal", now)

        logger.info("Withdrawal requested by %s (request %d)", caller, request_id)
        await self.bus.publish_all(events)
        return request_id

    async def handle_withdrawal_callback(
        self,
        caller: str,
        request_id: int,
        plaintext_amount: int,
        proof: Sequence[bytes] = (),
    ) -> RequestStatus:
        """Complete a withdrawal with the decrypted balance.

        The request is rejected (FAILED) when the trader's balance has been
        replaced since it was requested, for example by a concurrent
        withdrawal that already zeroed it.
        """
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            await self._require_gateway(ledger, caller)

            withdrawal = await ledger.withdrawals.get(request_id)
            if withdrawal is None:
                self._reject(f"unknown request {request_id}")
            if await ledger.processed.contains(request_id):
                logger.debug("Withdrawal callback %d already processed", request_id)
                return withdrawal.status
            if withdrawal.status not in _OPEN_STATUSES:
                self._reject(f"request {request_id} is {withdrawal.status.value}")
            logger.debug("Withdrawal callback %d with %d proof(s)", request_id, len(proof))

            if await ledger.balances.get(withdrawal.trader) != withdrawal.balance:
                await ledger.withdrawals.resolve(request_id, status=RequestStatus.FAILED, at=now)
                await ledger.processed.add(request_id, kind=RequestKind.WITHDRAWAL, at=now)
                events.append(
                    WithdrawalRejected(request_id=request_id, trader=withdrawal.trader, reason="balance changed")
                )
                events.append(GatewayCallbackProcessed(request_id=request_id, success=False))
                status = RequestStatus.FAILED
                logger.warning("Withdrawal %d rejected: balance changed since request", request_id)
            else:
                self._enforce(
                    guards.bounded_amount(plaintext_amount, maximum=guards.UINT64_MAX, label="withdrawal amount")
                )
                await ledger.balances.set(withdrawal.trader, self._engine.zero(), at=now)
                await ledger.withdrawals.resolve(
                    request_id, status=RequestStatus.FULFILLED, at=now, amount=plaintext_amount
                )
                await ledger.processed.add(request_id, kind=RequestKind.WITHDRAWAL, at=now)
                events.append(
                    WithdrawalProcessed(request_id=request_id, trader=withdrawal.trader, amount=plaintext_amount)
                )
                events.append(GatewayCallbackProcessed(request_id=request_id, success=True))
                status = RequestStatus.FULFILLED
                logger.info("Withdrawal %d processed: %s withdrew %d", request_id, withdrawal.trader, plaintext_amount)
            await self._record(ledger, events, caller, "withdrawal_callback", now)

        await self.bus.publish_all(events)
        return status

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def _update_role(self, caller: str, address: str, *, action: str, key: str, grant: bool) -> None:
        now = self._now()
        events: list[LedgerEvent] = []
        async with self._transaction() as ledger:
            self._enforce(guards.only_owner(caller, owner=self.config.owner))
            await self._check_rate(ledger, caller, now)
            self._enforce(guards.valid_address(address))
            if grant:
                await ledger.state.set(key, address.lower(), at=now)
            else:
                await ledger.state.delete(key)
            await self._record(ledger, events, caller, action, now)

        logger.info("%s: %s", action, address)
        await self.bus.publish_all(events)

    async def set_gateway(self, caller: str, address: str) -> None:
        await self._update_role(caller, address, action="set_gateway", key=GATEWAY_KEY, grant=True)

    async def authorize_operator(self, caller: str, address: str) -> None:
        await self._update_role(
            caller, address, action="authorize_operator", key=OPERATOR_KEY_PREFIX + address.lower(), grant=True
        )

    async def revoke_operator(self, caller: str, address: str) -> None:
        await self._update_role(
            caller, address, action="revoke_operator", key=OPERATOR_KEY_PREFIX + address.lower(), grant=False
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[_Ledger]:
        async with self._db.get_async_session() as session:
            yield _Ledger(session)

    async def get_contract(self, contract_id: int) -> FuturesContractDTO | None:
        async with self._read() as ledger:
            return await ledger.contracts.get(contract_id, with_traders=True)

    async def get_position(self, contract_id: int, trader: str) -> TraderPositionDTO | None:
        async with self._read() as ledger:
            return await ledger.positions.get(contract_id, trader)

    async def get_decryption_request(self, request_id: int) -> DecryptionRequestDTO | None:
        async with self._read() as ledger:
            return await ledger.decryptions.get(request_id)

    async def get_withdrawal_request(self, request_id: int) -> WithdrawalRequestDTO | None:
        async with self._read() as ledger:
            return await ledger.withdrawals.get(request_id)

    async def get_balance_handle(self, trader: str) -> Ciphertext | None:
        async with self._read() as ledger:
            return await ledger.balances.get(trader)

    async def get_gateway(self) -> str | None:
        async with self._read() as ledger:
            return await ledger.state.get(GATEWAY_KEY)

    async def is_operator(self, address: str) -> bool:
        if address.lower() == self.config.owner.lower():
            return True
        async with self._read() as ledger:
            return await ledger.state.get(OPERATOR_KEY_PREFIX + address.lower()) is not None

    async def is_processed(self, request_id: int) -> bool:
        async with self._read() as ledger:
            return await ledger.processed.contains(request_id)

    async def is_contract_active(self, contract_id: int) -> bool:
        contract = await self.get_contract(contract_id)
        return contract is not None and contract.is_active(self._now())

    async def is_settlement_time(self) -> bool:
        return await self.time_to_next_settlement() == 0

    async def time_to_next_settlement(self) -> int:
        """Seconds until the global settlement window opens (0 if open)."""
        async with self._read() as ledger:
            last = await self._last_settlement_time(ledger)
        return max(0, last + self.config.settlement_interval_seconds - self._now())

    async def active_contracts_count(self) -> int:
        async with self._read() as ledger:
            return await ledger.contracts.count_active(now=self._now())

    async def audit_trail(self, actor: str | None = None, *, limit: int = 1000) -> list[AuditEntryDTO]:
        async with self._read() as ledger:
            return await ledger.audit.list_entries(actor=actor, limit=limit)
