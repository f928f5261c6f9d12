"""Cycle gating: failure-based circuit breaker and magnitude/timing risk bounds."""

from buybackbot.risk.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitSnapshot,
    CircuitState,
)
from buybackbot.risk.manager import RiskManager, RiskParameters, SwapCheck, ValidationResult

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOptions",
    "CircuitSnapshot",
    "CircuitState",
    "RiskManager",
    "RiskParameters",
    "SwapCheck",
    "ValidationResult",
]
