from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from buybackbot.domain.amounts import format_sol, sol_to_lamports
from buybackbot.domain.models import AllocationPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskParameters:
    """Immutable safety bounds; amounts are lamports."""

    max_budget_per_epoch: int
    min_interval_seconds: float
    max_slippage_bps: int
    max_price_impact_bps: int
    min_liquidity_threshold: int

    @classmethod
    def from_sol(
        cls,
        *,
        max_budget_per_epoch_sol: Decimal | str | float,
        min_interval_seconds: float,
        max_slippage_bps: int,
        max_price_impact_bps: int,
        min_liquidity_threshold_sol: Decimal | str | float,
    ) -> RiskParameters:
        return cls(
            max_budget_per_epoch=sol_to_lamports(max_budget_per_epoch_sol),
            min_interval_seconds=min_interval_seconds,
            max_slippage_bps=max_slippage_bps,
            max_price_impact_bps=max_price_impact_bps,
            min_liquidity_threshold=sol_to_lamports(min_liquidity_threshold_sol),
        )


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls(valid=True)

    @classmethod
    def reject(cls, reason: str) -> ValidationResult:
        return cls(valid=False, reason=reason)


@dataclass(frozen=True)
class SwapCheck:
    input_amount: int
    expected_output: int
    min_output_amount: int
    actual_slippage_bps: int
    price_impact_bps: int


class RiskManager:
    def __init__(
        self,
        params: RiskParameters,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.params = params
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._last_execution_at: datetime | None = None

    @property
    def last_execution_at(self) -> datetime | None:
        return self._last_execution_at

    def _elapsed_seconds(self) -> float | None:
        if self._last_execution_at is None:
            return None
        return (self.now_provider() - self._last_execution_at).total_seconds()

    def can_execute_now(self) -> bool:
        elapsed = self._elapsed_seconds()
        if elapsed is None:
            return True
        if elapsed < self.params.min_interval_seconds:
            logger.warning(
                "risk_min_interval_not_elapsed",
                extra={
                    "extra": {
                        "elapsed_seconds": int(elapsed),
                        "required_seconds": self.params.min_interval_seconds,
                    }
                },
            )
            return False
        return True

    def validate_plan(self, plan: AllocationPlan) -> ValidationResult:
        if plan.total_amount > self.params.max_budget_per_epoch:
            return ValidationResult.reject(
                f"Total SOL ({format_sol(plan.total_amount)}) exceeds max budget per epoch "
                f"({format_sol(self.params.max_budget_per_epoch)})"
            )
        if min(plan.buyback_amount, plan.add_liquidity_amount, plan.treasury_amount) < 0:
            return ValidationResult.reject("Execution plan contains negative amounts")
        return ValidationResult.ok()

    def validate_swap(self, check: SwapCheck) -> ValidationResult:
        if check.actual_slippage_bps > self.params.max_slippage_bps:
            return ValidationResult.reject(
                f"Slippage ({check.actual_slippage_bps}bps) exceeds max "
                f"({self.params.max_slippage_bps}bps)"
            )
        if check.price_impact_bps > self.params.max_price_impact_bps:
            return ValidationResult.reject(
                f"Price impact ({check.price_impact_bps}bps) exceeds max "
                f"({self.params.max_price_impact_bps}bps)"
            )
        return ValidationResult.ok()

    def validate_liquidity(self, liquidity_amount: int) -> ValidationResult:
        if liquidity_amount < self.params.min_liquidity_threshold:
            return ValidationResult.reject(
                f"Liquidity ({format_sol(liquidity_amount)} SOL) below minimum threshold "
                f"({format_sol(self.params.min_liquidity_threshold)} SOL)"
            )
        return ValidationResult.ok()

    def record_execution(self) -> None:
        self._last_execution_at = self.now_provider()
        logger.info(
            "risk_execution_recorded",
            extra={"extra": {"recorded_at": self._last_execution_at.isoformat()}},
        )

    def time_until_next_execution(self) -> timedelta:
        elapsed = self._elapsed_seconds()
        if elapsed is None:
            return timedelta(0)
        return timedelta(seconds=max(0.0, self.params.min_interval_seconds - elapsed))
