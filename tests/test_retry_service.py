from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from buybackbot.services.retry import (
    RetryAttempt,
    RetryPolicy,
    parse_retry_after_seconds,
    retry_with_backoff,
)


class _RateError(Exception):
    def __init__(self, retry_after: str | None = None) -> None:
        super().__init__("rate limited")
        self.retry_after = retry_after


def test_parse_retry_after_seconds_supports_http_date() -> None:
    dt = datetime.now(UTC) + timedelta(seconds=2)
    value = parse_retry_after_seconds(dt.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert value is not None
    assert 0 <= value <= 2.5


@pytest.mark.parametrize("raw,expected", [("3", 3.0), ("-1", None), ("", None), (None, None)])
def test_parse_retry_after_seconds_numeric(raw: str | None, expected: float | None) -> None:
    assert parse_retry_after_seconds(raw) == expected


def test_retry_gives_up_after_max_attempts() -> None:
    calls = {"n": 0}
    slept: list[float] = []

    def _fn() -> None:
        calls["n"] += 1
        raise _RateError()

    with pytest.raises(_RateError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=1000),
            retry_on=(_RateError,),
            label="test",
            sleep_fn=slept.append,
        )
    assert calls["n"] == 3
    assert len(slept) == 2


def test_retry_after_header_takes_priority() -> None:
    calls = {"n": 0}
    slept: list[float] = []
    attempts: list[RetryAttempt] = []

    def _fn() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _RateError(retry_after="2")
        return "ok"

    result = retry_with_backoff(
        _fn,
        policy=RetryPolicy(max_attempts=3, base_delay_ms=10, max_delay_ms=5000),
        retry_on=(_RateError,),
        label="test",
        sleep_fn=slept.append,
        retry_after_getter=lambda exc: getattr(exc, "retry_after", None),
        on_retry=attempts.append,
    )

    assert result == "ok"
    assert slept == [2.0]
    assert attempts[0].used_retry_after is True


def test_non_retryable_error_propagates_immediately() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(),
            retry_on=(_RateError,),
            label="test",
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 1


def test_policy_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
