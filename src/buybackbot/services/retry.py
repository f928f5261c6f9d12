from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 30_000
    jitter_seed: int = 0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delay values must be >= 0")


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


def parse_retry_after_seconds(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    candidate = value.strip()
    try:
        parsed = float(candidate)
        return parsed if parsed >= 0 else None
    except ValueError:
        pass
    try:
        parsed_dt = parsedate_to_datetime(candidate)
    except (TypeError, ValueError):
        return None
    if parsed_dt.tzinfo is None:
        parsed_dt = parsed_dt.replace(tzinfo=UTC)
    return max(0.0, (parsed_dt - datetime.now(UTC)).total_seconds())


def _backoff_ms(policy: RetryPolicy, attempt: int, prng: random.Random) -> int:
    raw = min(policy.max_delay_ms, policy.base_delay_ms * (2 ** max(0, attempt - 1)))
    return int(raw * (0.5 + prng.random()))


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: Sequence[type[Exception]],
    label: str,
    sleep_fn: Callable[[float], None] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable error escapes, or attempts run out."""

    sleep = sleep_fn or time.sleep
    retryable = tuple(retry_on)
    prng = random.Random(policy.jitter_seed)

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not isinstance(exc, retryable) or attempt >= policy.max_attempts:
                raise
            retry_after = (
                parse_retry_after_seconds(retry_after_getter(exc))
                if retry_after_getter is not None
                else None
            )
            if retry_after is not None:
                delay_ms = min(policy.max_delay_ms, int(retry_after * 1000))
            else:
                delay_ms = _backoff_ms(policy, attempt, prng)
            details = RetryAttempt(
                attempt=attempt,
                delay_ms=delay_ms,
                error_type=type(exc).__name__,
                used_retry_after=retry_after is not None,
            )
            logger.warning(
                "retry_scheduled",
                extra={
                    "extra": {
                        "label": label,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "delay_ms": delay_ms,
                        "error_type": details.error_type,
                    }
                },
            )
            if on_retry is not None:
                on_retry(details)
            sleep(delay_ms / 1000.0)

    raise RuntimeError("retry loop exhausted unexpectedly")
