from __future__ import annotations

from enum import StrEnum


class CycleStep(StrEnum):
    FETCH_FEES = "fetch_fees"
    VALIDATE_PLAN = "validate_plan"
    QUOTE = "quote"
    SWAP = "swap"
    BURN = "burn"
    ADD_LIQUIDITY = "add_liquidity"
    WRITE_REPORT = "write_report"
    ACKNOWLEDGE = "acknowledge"


class CycleError(RuntimeError):
    """Base class for errors raised out of one epoch cycle."""

    step: CycleStep | None = None


class CircuitOpenError(CycleError):
    """Cycle refused by the circuit breaker before any side effect."""


class RejectedError(CycleError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PlanRejectedError(RejectedError):
    step = CycleStep.VALIDATE_PLAN


class SwapRejectedError(RejectedError):
    step = CycleStep.QUOTE


class LiquidityRejectedError(RejectedError):
    step = CycleStep.ADD_LIQUIDITY


class CycleStepError(CycleError):
    """A collaborator failed mid-cycle; earlier steps may have side effects."""

    def __init__(self, step: CycleStep, cause: BaseException) -> None:
        super().__init__(f"{step.value} failed: {type(cause).__name__}: {cause}")
        self.step = step
        self.cause = cause


class FeeSourceError(RuntimeError):
    pass


class ReportWriteError(RuntimeError):
    pass


class ConfigurationError(ValueError):
    pass
