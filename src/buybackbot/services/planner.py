from __future__ import annotations

from collections.abc import Iterable

from buybackbot.domain.amounts import percentage_of
from buybackbot.domain.models import AllocationConfig, AllocationPlan, FeeEvent


def build_allocation_plan(total_amount: int, allocation: AllocationConfig) -> AllocationPlan:
    """Split ``total_amount`` lamports by the configured percentages.

    Each component is truncated independently (ROUND_DOWN) and nothing is
    redistributed, so ``plan.rounding_remainder`` is always in ``[0, 3)``.
    """

    if total_amount < 0:
        raise ValueError(f"total_amount must be >= 0, got {total_amount}")
    return AllocationPlan(
        buyback_amount=percentage_of(total_amount, allocation.buyback_pct),
        add_liquidity_amount=percentage_of(total_amount, allocation.add_liquidity_pct),
        treasury_amount=percentage_of(total_amount, allocation.treasury_pct),
        total_amount=total_amount,
    )


def burn_amount_for(amount_out: int, allocation: AllocationConfig) -> int:
    return percentage_of(amount_out, allocation.burn_pct_of_buyback)


def sum_native_fees(
    fees: Iterable[FeeEvent], native_asset: str
) -> tuple[int, list[FeeEvent]]:
    """Return the native-asset total and the events left out of it."""
    total = 0
    ignored: list[FeeEvent] = []
    for fee in fees:
        if fee.asset_id == native_asset:
            total += fee.amount
        else:
            ignored.append(fee)
    return total, ignored
