"""Delivery of decryption results back to the coordinator."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

from web3.exceptions import ContractLogicError, Web3Exception

from confidential_futures.coordinator.settlement import CoordinatorError
from confidential_futures.gateway.abi import COORDINATOR_ABI
from confidential_futures.gateway.chain import ChainClientError, RPCError

if TYPE_CHECKING:
    from confidential_futures.coordinator.settlement import SettlementCoordinator
    from confidential_futures.gateway.chain import ChainClient

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_GAS_LIMIT = 500_000


class GatewayError(Exception):
    """Base exception for gateway worker errors."""


class CallbackSubmissionError(GatewayError):
    """Raised when a callback could not be delivered.

    `retryable` is False when the coordinator rejected the call outright
    (for example the request is already terminal); retrying cannot help.
    """

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


class CallbackSubmitter(Protocol):
    async def submit_settlement(self, request_id: int, plaintext: int, proof: Sequence[bytes] = ()) -> None: ...

    async def submit_withdrawal(self, request_id: int, plaintext: int, proof: Sequence[bytes] = ()) -> None: ...

    async def submit_timeout(self, request_id: int) -> None: ...


class CoordinatorCallbackSubmitter:
    """Calls an in-process coordinator as the gateway address."""

    def __init__(self, coordinator: SettlementCoordinator, gateway_address: str) -> None:
        self._coordinator = coordinator
        self._gateway = gateway_address

    async def submit_settlement(self, request_id: int, plaintext: int, proof: Sequence[bytes] = ()) -> None:
        try:
            await self._coordinator.handle_settlement_callback(self._gateway, request_id, plaintext, proof)
        except CoordinatorError as e:
            raise CallbackSubmissionError(f"settlement callback {request_id} rejected: {e}", retryable=False) from e

    async def submit_withdrawal(self, request_id: int, plaintext: int, proof: Sequence[bytes] = ()) -> None:
        try:
            await self._coordinator.handle_withdrawal_callback(self._gateway, request_id, plaintext, proof)
        except CoordinatorError as e:
            raise CallbackSubmissionError(f"withdrawal callback {request_id} rejected: {e}", retryable=False) from e

    async def submit_timeout(self, request_id: int) -> None:
        try:
            await self._coordinator.process_timeout(request_id, caller=self._gateway)
        except CoordinatorError as e:
            raise CallbackSubmissionError(f"timeout for {request_id} rejected: {e}", retryable=False) from e


class ChainCallbackSubmitter:
    """Signs and sends callback transactions with the gateway key.

    Transactions are sent one at a time so that nonces stay sequential.
    """

    def __init__(
        self,
        client: ChainClient,
        coordinator_address: str,
        private_key: str,
        *,
        gas_limit: int = DEFAULT_CALLBACK_GAS_LIMIT,
    ) -> None:
        self._client = client
        self._contract = client.contract(coordinator_address, COORDINATOR_ABI)
        self._account = client.account_from_key(private_key)
        self._gas_limit = gas_limit
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return str(self._account.address)

    async def _send(self, description: str, function: Any) -> str:
        async with self._lock:
            try:
                tx = await function.build_transaction(
                    {
                        "from": self._account.address,
                        "nonce": await self._client.get_transaction_count(self._account.address),
                        "gas": self._gas_limit,
                        "gasPrice": await self._client.get_gas_price(),
                        "chainId": await self._client.get_chain_id(),
                    }
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._client.send_raw_transaction(signed.raw_transaction)
                logger.info("%s sent: %s", description, tx_hash)
                await self._client.wait_for_receipt(tx_hash)
            except RPCError as e:
                raise CallbackSubmissionError(f"{description} failed: {e}", retryable=True) from e
            except ChainClientError as e:
                raise CallbackSubmissionError(f"{description} failed: {e}", retryable=False) from e
            except ContractLogicError as e:
                raise CallbackSubmissionError(f"{description} reverted: {e}", retryable=False) from e
            except Web3Exception as e:
                raise CallbackSubmissionError(f"{description} failed: {e}", retryable=True) from e
        logger.info("%s confirmed: %s", description, tx_hash)
        return tx_hash

    async def submit_settlement(self, request_id: int, plaintext: int, proof: Sequence[bytes] = ()) -> None:
        function = self._contract.functions.processSettlementCallback(request_id, plaintext, list(proof))
        await self._send(f"Settlement callback {request_id}", function)

    async def submit_withdrawal(self, request_id: int, plaintext: int, proof: Sequence[bytes] = ()) -> None:
        function = self._contract.functions.processWithdrawalCallback(request_id, plaintext, list(proof))
        await self._send(f"Withdrawal callback {request_id}", function)

    async def submit_timeout(self, request_id: int) -> None:
        function = self._contract.functions.processTimeout(request_id)
        await self._send(f"Timeout {request_id}", function)
