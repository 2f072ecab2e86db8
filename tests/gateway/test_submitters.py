"""Tests for callback submitters."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ContractLogicError

from confidential_futures.coordinator.settlement import AuthorizationError, ValidationError
from confidential_futures.gateway.chain import RPCError, TransactionError
from confidential_futures.gateway.submitters import (
    CallbackSubmissionError,
    ChainCallbackSubmitter,
    CoordinatorCallbackSubmitter,
)

GATEWAY = "0x" + "6a" * 20
COORDINATOR_ADDRESS = "0x" + "cc" * 20


class TestCoordinatorCallbackSubmitter:
    @pytest.fixture
    def coordinator(self) -> MagicMock:
        coordinator = MagicMock()
        coordinator.handle_settlement_callback = AsyncMock()
        coordinator.handle_withdrawal_callback = AsyncMock()
        coordinator.process_timeout = AsyncMock(return_value=True)
        return coordinator

    @pytest.mark.asyncio
    async def test_calls_as_gateway(self, coordinator: MagicMock) -> None:
        submitter = CoordinatorCallbackSubmitter(coordinator, GATEWAY)

        await submitter.submit_settlement(1, 51_000)
        await submitter.submit_withdrawal(2, 900, [b"sig"])
        await submitter.submit_timeout(3)

        coordinator.handle_settlement_callback.assert_awaited_once_with(GATEWAY, 1, 51_000, ())
        coordinator.handle_withdrawal_callback.assert_awaited_once_with(GATEWAY, 2, 900, [b"sig"])
        coordinator.process_timeout.assert_awaited_once_with(3, caller=GATEWAY)

    @pytest.mark.asyncio
    async def test_rejections_are_not_retryable(self, coordinator: MagicMock) -> None:
        coordinator.handle_settlement_callback.side_effect = AuthorizationError("not the gateway")
        coordinator.process_timeout.side_effect = ValidationError("unknown request 3")
        submitter = CoordinatorCallbackSubmitter(coordinator, GATEWAY)

        with pytest.raises(CallbackSubmissionError) as exc_info:
            await submitter.submit_settlement(1, 51_000)
        assert exc_info.value.retryable is False
        assert "not the gateway" in str(exc_info.value)

        with pytest.raises(CallbackSubmissionError) as exc_info:
            await submitter.submit_timeout(3)
        assert exc_info.value.retryable is False


class TestChainCallbackSubmitter:
    @pytest.fixture
    def function(self) -> MagicMock:
        function = MagicMock()
        function.build_transaction = AsyncMock(return_value={"to": COORDINATOR_ADDRESS, "data": "0x"})
        return function

    @pytest.fixture
    def client(self, function: MagicMock) -> MagicMock:
        client = MagicMock()
        contract = client.contract.return_value
        contract.functions.processSettlementCallback.return_value = function
        contract.functions.processWithdrawalCallback.return_value = function
        contract.functions.processTimeout.return_value = function

        account = client.account_from_key.return_value
        account.address = GATEWAY
        account.sign_transaction.return_value = MagicMock(raw_transaction=b"\x01\x02")

        client.get_transaction_count = AsyncMock(return_value=4)
        client.get_gas_price = AsyncMock(return_value=10**9)
        client.get_chain_id = AsyncMock(return_value=11155111)
        client.send_raw_transaction = AsyncMock(return_value="0xhash")
        client.wait_for_receipt = AsyncMock(return_value={"status": 1})
        return client

    @pytest.mark.asyncio
    async def test_signs_and_sends_settlement(self, client: MagicMock, function: MagicMock) -> None:
        submitter = ChainCallbackSubmitter(client, COORDINATOR_ADDRESS, "0x" + "11" * 32)

        await submitter.submit_settlement(7, 51_000, [b"sig"])

        assert submitter.address == GATEWAY
        client.contract.return_value.functions.processSettlementCallback.assert_called_once_with(7, 51_000, [b"sig"])
        tx_params = function.build_transaction.await_args.args[0]
        assert tx_params["from"] == GATEWAY
        assert tx_params["nonce"] == 4
        assert tx_params["chainId"] == 11155111
        client.send_raw_transaction.assert_awaited_once_with(b"\x01\x02")
        client.wait_for_receipt.assert_awaited_once_with("0xhash")

    @pytest.mark.asyncio
    async def test_timeout_transaction(self, client: MagicMock) -> None:
        submitter = ChainCallbackSubmitter(client, COORDINATOR_ADDRESS, "0x" + "11" * 32)

        await submitter.submit_timeout(7)

        client.contract.return_value.functions.processTimeout.assert_called_once_with(7)

    @pytest.mark.asyncio
    async def test_rpc_failure_is_retryable(self, client: MagicMock) -> None:
        client.send_raw_transaction.side_effect = RPCError("provider down")
        submitter = ChainCallbackSubmitter(client, COORDINATOR_ADDRESS, "0x" + "11" * 32)

        with pytest.raises(CallbackSubmissionError) as exc_info:
            await submitter.submit_withdrawal(7, 900)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_revert_is_not_retryable(self, client: MagicMock, function: MagicMock) -> None:
        client.wait_for_receipt.side_effect = TransactionError("reverted")
        submitter = ChainCallbackSubmitter(client, COORDINATOR_ADDRESS, "0x" + "11" * 32)

        with pytest.raises(CallbackSubmissionError) as exc_info:
            await submitter.submit_settlement(7, 51_000)
        assert exc_info.value.retryable is False

        function.build_transaction.side_effect = ContractLogicError("already processed")
        with pytest.raises(CallbackSubmissionError) as exc_info:
            await submitter.submit_settlement(7, 51_000)
        assert exc_info.value.retryable is False
