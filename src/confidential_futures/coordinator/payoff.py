"""Encrypted settlement payout arithmetic."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from confidential_futures.coordinator.encryption import Ciphertext, FheEngine
    from confidential_futures.storage.repos import TraderPositionDTO


def settlement_payout(
    engine: FheEngine,
    position: TraderPositionDTO,
    *,
    final_price: int,
    pnl_scale: int,
) -> Ciphertext:
    """Compute the encrypted amount credited to a position at settlement.

    favorable = max(final - entry, 0) for longs, max(entry - final, 0) for
    shorts; adverse is the other side. Profit and loss are each
    `move * amount / pnl_scale` capped at the collateral, so the payout is
    `collateral + profit - loss` and lies in [0, 2 * collateral].

    Both branches are evaluated and chosen with `select`, so the
    ciphertext trace does not depend on the direction of the move.
    """
    final = engine.encrypt(final_price)
    zero = engine.zero()
    went_up = engine.ge(final, position.entry_price)
    rise = engine.select(went_up, engine.sub(final, position.entry_price), zero)
    fall = engine.select(went_up, zero, engine.sub(position.entry_price, final))

    favorable, adverse = (rise, fall) if position.is_long else (fall, rise)

    profit = engine.min(
        engine.div_plain(engine.mul(favorable, position.amount), pnl_scale),
        position.collateral,
    )
    loss = engine.min(
        engine.div_plain(engine.mul(adverse, position.amount), pnl_scale),
        position.collateral,
    )
    return engine.sub(engine.add(position.collateral, profit), loss)


def credit(engine: FheEngine, balance: Ciphertext | None, amount: Ciphertext) -> Ciphertext:
    """Add `amount` to an encrypted balance that may not exist yet."""
    if balance is None:
        return engine.add(engine.zero(), amount)
    return engine.add(balance, amount)
