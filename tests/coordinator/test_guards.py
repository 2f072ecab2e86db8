"""Tests for coordinator guards."""

from __future__ import annotations

import pytest

from confidential_futures.coordinator import guards
from confidential_futures.coordinator.guards import UINT64_MAX, Allowed, Denied, DenialKind
from confidential_futures.storage.repos import ActorActivityDTO, FuturesContractDTO

OWNER = "0x" + "0a" * 20
GATEWAY = "0x" + "6a" * 20


def make_contract(**overrides) -> FuturesContractDTO:
    values = {
        "contract_id": 1,
        "underlying": "BTC",
        "settlement_price": None,
        "price_set": True,
        "settled": False,
        "total_volume": None,
        "expiry_time": 1_000,
        "creation_time": 0,
        "created_by": OWNER,
    }
    values.update(overrides)
    return FuturesContractDTO(**values)


class TestResults:
    def test_allowed_is_truthy_and_denied_is_falsy(self) -> None:
        assert Allowed()
        assert not Denied(DenialKind.VALIDATION, "nope")

    def test_first_denial_keeps_evaluation_order(self) -> None:
        first = Denied(DenialKind.AUTHORIZATION, "first")
        second = Denied(DenialKind.VALIDATION, "second")
        assert guards.first_denial([guards.ALLOWED, first, second]) is first
        assert guards.first_denial([guards.ALLOWED]) is None


class TestRoles:
    def test_only_owner_is_case_insensitive(self) -> None:
        assert guards.only_owner(OWNER.upper().replace("0X", "0x"), owner=OWNER)
        denied = guards.only_owner(GATEWAY, owner=OWNER)
        assert isinstance(denied, Denied)
        assert denied.kind == DenialKind.AUTHORIZATION

    def test_only_operator_accepts_owner_and_operators(self) -> None:
        operator = "0x" + "0b" * 20
        assert guards.only_operator(OWNER, owner=OWNER, operators=set())
        assert guards.only_operator(operator, owner=OWNER, operators={operator})
        assert not guards.only_operator(GATEWAY, owner=OWNER, operators={operator})

    def test_only_gateway(self) -> None:
        assert guards.only_gateway(GATEWAY, gateway=GATEWAY, owner=OWNER, dev_mode=False)
        assert not guards.only_gateway(OWNER, gateway=GATEWAY, owner=OWNER, dev_mode=False)
        assert not guards.only_gateway(GATEWAY, gateway=None, owner=OWNER, dev_mode=False)

    def test_dev_mode_lets_owner_deliver_callbacks(self) -> None:
        assert guards.only_gateway(OWNER, gateway=GATEWAY, owner=OWNER, dev_mode=True)


class TestRateLimit:
    def test_first_action_is_allowed(self) -> None:
        assert guards.rate_limit(None, now=100, cooldown_seconds=1)

    def test_action_within_cooldown_is_denied(self) -> None:
        activity = ActorActivityDTO(actor=OWNER, last_action_at=100, action_count=1)
        result = guards.rate_limit(activity, now=100, cooldown_seconds=1)
        assert isinstance(result, Denied)
        assert result.kind == DenialKind.RATE_LIMIT

    def test_action_after_cooldown_is_allowed(self) -> None:
        activity = ActorActivityDTO(actor=OWNER, last_action_at=100, action_count=1)
        assert guards.rate_limit(activity, now=101, cooldown_seconds=1)

    def test_zero_cooldown_disables_limit(self) -> None:
        activity = ActorActivityDTO(actor=OWNER, last_action_at=100, action_count=5)
        assert guards.rate_limit(activity, now=100, cooldown_seconds=0)


class TestAmounts:
    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_amount_is_denied(self, value: int) -> None:
        assert not guards.bounded_amount(value, maximum=10, label="amount")

    def test_amount_at_maximum_is_allowed(self) -> None:
        assert guards.bounded_amount(10, maximum=10, label="amount")
        assert not guards.bounded_amount(11, maximum=10, label="amount")

    def test_saturating_mul_clamps(self) -> None:
        assert guards.saturating_mul(2**40, 2**40) == UINT64_MAX
        assert guards.saturating_mul(3, 4) == 12
        assert guards.saturating_mul(0, UINT64_MAX) == 0

    def test_no_overflow(self) -> None:
        assert guards.no_overflow(50_000, 1000, label="price", addend=999)
        assert not guards.no_overflow(2**40, 2**40, label="price")
        assert not guards.no_overflow(UINT64_MAX, 1, label="price", addend=1)
        assert not guards.no_overflow(-1, 5, label="price")

    def test_underlying_length(self) -> None:
        assert guards.valid_underlying("BTC")
        assert not guards.valid_underlying("")
        assert not guards.valid_underlying("X" * 11)

    def test_valid_address(self) -> None:
        assert guards.valid_address(OWNER)
        assert not guards.valid_address("not-an-address")


class TestContractState:
    def test_contract_active(self) -> None:
        assert guards.contract_active(make_contract(), now=999)
        assert not guards.contract_active(make_contract(), now=1_000)
        assert not guards.contract_active(make_contract(price_set=False), now=0)
        assert not guards.contract_active(make_contract(settled=True), now=0)

    def test_settlement_window_or_expiry(self) -> None:
        contract = make_contract()
        # window open
        assert guards.settlement_allowed(contract, now=500, last_settlement_time=0, settlement_interval_seconds=400)
        # neither window nor expiry
        assert not guards.settlement_allowed(
            contract, now=500, last_settlement_time=200, settlement_interval_seconds=400
        )
        # expired contract settles regardless of the window
        assert guards.settlement_allowed(
            contract, now=1_000, last_settlement_time=999, settlement_interval_seconds=400
        )

    def test_settlement_rejected_while_request_pending(self) -> None:
        contract = make_contract(active_decryption_request_id=7)
        result = guards.settlement_allowed(
            contract, now=2_000, last_settlement_time=0, settlement_interval_seconds=1
        )
        assert isinstance(result, Denied)
        assert "pending" in result.reason

    def test_manual_refund_window(self) -> None:
        contract = make_contract()
        assert not guards.manual_refund_allowed(contract, now=1_099, decryption_timeout_seconds=100)
        assert guards.manual_refund_allowed(contract, now=1_100, decryption_timeout_seconds=100)
