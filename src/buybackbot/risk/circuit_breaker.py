from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerOptions:
    failure_threshold: int
    timeout_seconds: float

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")


@dataclass(frozen=True)
class CircuitSnapshot:
    state: CircuitState
    failure_count: int
    next_attempt_at: datetime | None
    last_failure_at: datetime | None


class CircuitBreaker:
    """Failure-count gate for epoch cycles.

    CLOSED -> OPEN once ``failure_threshold`` consecutive failures are recorded;
    OPEN -> HALF_OPEN when ``can_execute`` is asked after the timeout elapsed;
    HALF_OPEN -> CLOSED on success, or back to OPEN with a fresh window on failure.

    Not thread-safe: the scheduler's single-flight guard serializes callers.
    """

    def __init__(
        self,
        options: CircuitBreakerOptions,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.options = options
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: datetime | None = None
        self._next_attempt_at: datetime | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt_at(self) -> datetime | None:
        return self._next_attempt_at

    @property
    def last_failure_at(self) -> datetime | None:
        return self._last_failure_at

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            state=self._state,
            failure_count=self._failure_count,
            next_attempt_at=self._next_attempt_at,
            last_failure_at=self._last_failure_at,
        )

    def can_execute(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.HALF_OPEN:
            return True

        now = self.now_provider()
        if self._next_attempt_at is not None and now >= self._next_attempt_at:
            self._state = CircuitState.HALF_OPEN
            logger.info(
                "circuit_breaker_half_open",
                extra={"extra": {"failure_count": self._failure_count}},
            )
            return True

        logger.warning(
            "circuit_breaker_blocked",
            extra={
                "extra": {
                    "failure_count": self._failure_count,
                    "next_attempt_at": self._next_attempt_at.isoformat()
                    if self._next_attempt_at
                    else None,
                }
            },
        )
        return False

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.info("circuit_breaker_trial_succeeded")
            self.reset()
            return
        # successes never bank credit against future failures
        self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_at = self.now_provider()
        logger.warning(
            "circuit_breaker_failure_recorded",
            extra={
                "extra": {
                    "failure_count": self._failure_count,
                    "threshold": self.options.failure_threshold,
                    "state": self._state.value,
                }
            },
        )
        if self._state == CircuitState.HALF_OPEN or (
            self._failure_count >= self.options.failure_threshold
        ):
            self._trip()

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._next_attempt_at = None
        logger.info("circuit_breaker_reset")

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._next_attempt_at = self.now_provider() + timedelta(
            seconds=self.options.timeout_seconds
        )
        logger.error(
            "circuit_breaker_tripped",
            extra={
                "extra": {
                    "failure_count": self._failure_count,
                    "timeout_seconds": self.options.timeout_seconds,
                    "next_attempt_at": self._next_attempt_at.isoformat(),
                }
            },
        )
