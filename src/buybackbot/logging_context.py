"""Run, epoch and cycle-step fields stamped onto every JSON log line."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_run_id: ContextVar[str | None] = ContextVar("buybackbot_run_id", default=None)
_epoch_id: ContextVar[int | None] = ContextVar("buybackbot_epoch_id", default=None)
_trigger: ContextVar[str | None] = ContextVar("buybackbot_trigger", default=None)
_cycle_step: ContextVar[str | None] = ContextVar("buybackbot_cycle_step", default=None)


def current_log_fields() -> dict[str, object]:
    fields = {
        "run_id": _run_id.get(),
        "epoch_id": _epoch_id.get(),
        "trigger": _trigger.get(),
        "step": _cycle_step.get(),
    }
    return {key: value for key, value in fields.items() if value is not None}


def current_epoch_id() -> int | None:
    return _epoch_id.get()


@contextmanager
def run_context(run_id: str) -> Iterator[None]:
    token = _run_id.set(run_id)
    try:
        yield
    finally:
        _run_id.reset(token)


@contextmanager
def epoch_context(epoch_id: int, *, trigger: str | None = None) -> Iterator[None]:
    """Binds ``epoch_id`` for one cycle.

    A nested context without a trigger keeps the enclosing one, so the
    orchestrator can re-bind the epoch inside the scheduler's context. The
    cycle step starts clear and is restored on exit.
    """
    epoch_token = _epoch_id.set(int(epoch_id))
    trigger_token = _trigger.set(trigger) if trigger is not None else None
    step_token = _cycle_step.set(None)
    try:
        yield
    finally:
        _cycle_step.reset(step_token)
        if trigger_token is not None:
            _trigger.reset(trigger_token)
        _epoch_id.reset(epoch_token)


def mark_cycle_step(step: str) -> None:
    """Tags later log lines of the current cycle with ``step``."""
    if _epoch_id.get() is None:
        return
    _cycle_step.set(str(step))
