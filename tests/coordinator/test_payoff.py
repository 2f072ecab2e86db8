"""Tests for encrypted settlement payouts."""

from __future__ import annotations

import pytest

from confidential_futures.coordinator.encryption import LocalFheEngine
from confidential_futures.coordinator.payoff import credit, settlement_payout
from confidential_futures.storage.models import PositionStatus
from confidential_futures.storage.repos import TraderPositionDTO


def make_position(
    engine: LocalFheEngine,
    *,
    entry_price: int,
    amount: int,
    collateral: int,
    is_long: bool,
) -> TraderPositionDTO:
    return TraderPositionDTO(
        contract_id=1,
        trader="0x" + "a1" * 20,
        amount=engine.encrypt(amount),
        entry_price=engine.encrypt(entry_price),
        collateral=engine.encrypt(collateral),
        nonce=engine.encrypt(0),
        is_long=is_long,
        status=PositionStatus.ACTIVE,
        entry_time=0,
    )


@pytest.mark.parametrize(
    ("entry_price", "final_price", "is_long", "expected"),
    [
        # long, price up 800 * 100 / 100 = 800 profit
        (50_200, 51_000, True, 5_800),
        # long, price down 1200 * 100 / 100 = 1200 loss
        (50_200, 49_000, True, 3_800),
        # short, price down is profit
        (50_200, 49_000, False, 6_200),
        # short, price up is loss
        (50_200, 51_000, False, 4_200),
        # unchanged price returns the collateral
        (50_000, 50_000, True, 5_000),
    ],
)
def test_payout_by_direction(entry_price: int, final_price: int, is_long: bool, expected: int) -> None:
    engine = LocalFheEngine()
    position = make_position(engine, entry_price=entry_price, amount=100, collateral=5_000, is_long=is_long)

    payout = settlement_payout(engine, position, final_price=final_price, pnl_scale=100)

    assert engine.reveal(payout) == expected


def test_profit_and_loss_are_capped_at_collateral() -> None:
    engine = LocalFheEngine()
    winner = make_position(engine, entry_price=100, amount=1_000, collateral=500, is_long=True)
    loser = make_position(engine, entry_price=100, amount=1_000, collateral=500, is_long=False)

    assert engine.reveal(settlement_payout(engine, winner, final_price=10_000, pnl_scale=1)) == 1_000
    assert engine.reveal(settlement_payout(engine, loser, final_price=10_000, pnl_scale=1)) == 0


def test_pnl_scale_divides_the_move() -> None:
    engine = LocalFheEngine()
    position = make_position(engine, entry_price=1_000, amount=10, collateral=1_000, is_long=True)

    payout = settlement_payout(engine, position, final_price=1_300, pnl_scale=1_000)

    # 300 * 10 / 1000 = 3
    assert engine.reveal(payout) == 1_003


def test_credit_creates_or_adds() -> None:
    engine = LocalFheEngine()
    first = credit(engine, None, engine.encrypt(40))
    assert engine.reveal(first) == 40
    second = credit(engine, first, engine.encrypt(2))
    assert engine.reveal(second) == 42
