from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from buybackbot.domain.models import CycleResult, CycleStatus
from buybackbot.logging_context import epoch_context

logger = logging.getLogger(__name__)


class OutcomeStatus(StrEnum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    DROPPED = "dropped"


@dataclass(frozen=True)
class EpochOutcome:
    status: OutcomeStatus
    epoch_id: int | None = None
    result: CycleResult | None = None
    error: str | None = None


@dataclass(frozen=True)
class SchedulerStats:
    running: bool
    executing: bool
    current_epoch_id: int
    interval_seconds: float
    completed: int
    skipped: int
    failed: int
    dropped: int


def next_tick_deadline(previous_due: float, now: float, interval: float) -> float:
    """Next interval deadline after ``previous_due`` that is still in the future.

    Deadlines stay on the grid anchored at loop start, so cycle duration does
    not push later ticks back. Ticks that passed while a cycle overran are
    skipped rather than fired back to back.
    """
    due = previous_due + interval
    if due <= now:
        due += (int((now - due) // interval) + 1) * interval
    return due


class EpochScheduler:
    """Fires the epoch cycle on an interval and on demand.

    At most one cycle runs at a time. A trigger that arrives while a cycle is
    executing is dropped, not queued. Each accepted attempt gets the next epoch
    id, whatever its outcome.
    """

    def __init__(
        self,
        *,
        interval_seconds: float,
        cycle_fn: Callable[[int], CycleResult],
        initial_epoch_id: int = 0,
        run_immediately: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval_seconds = float(interval_seconds)
        self._cycle_fn = cycle_fn
        self._epoch_id = int(initial_epoch_id)
        self._run_immediately = run_immediately
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._counts = {status: 0 for status in OutcomeStatus}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def executing(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def current_epoch_id(self) -> int:
        with self._state_lock:
            return self._epoch_id

    def start(self) -> None:
        if self.running and not self._stop_event.is_set():
            logger.warning("scheduler_already_running")
            return
        # A loop that was stopped mid-cycle exits on its own once the cycle ends.
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, args=(self._stop_event,), name="epoch-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={
                "extra": {
                    "interval_seconds": self.interval_seconds,
                    "run_immediately": self._run_immediately,
                }
            },
        )

    def stop(self, *, wait: bool = False, timeout: float | None = None) -> None:
        """Stops future ticks. An in-flight cycle is never interrupted."""
        self._stop_event.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("scheduler_stopped", extra={"extra": {"epoch_id": self.current_epoch_id}})

    def wait_stopped(self, timeout: float | None = None) -> bool:
        return self._stop_event.wait(timeout)

    def trigger_now(self, *, trigger: str = "manual") -> EpochOutcome:
        return self._execute(trigger)

    def stats(self) -> SchedulerStats:
        with self._state_lock:
            return SchedulerStats(
                running=self.running,
                executing=self.executing,
                current_epoch_id=self._epoch_id,
                interval_seconds=self.interval_seconds,
                completed=self._counts[OutcomeStatus.COMPLETED],
                skipped=self._counts[OutcomeStatus.SKIPPED],
                failed=self._counts[OutcomeStatus.FAILED],
                dropped=self._counts[OutcomeStatus.DROPPED],
            )

    def _loop(self, stop_event: threading.Event) -> None:
        interval = self.interval_seconds
        started = time.monotonic()
        if self._run_immediately and not stop_event.is_set():
            self._execute("startup")
        next_due = next_tick_deadline(started, time.monotonic(), interval)
        while not stop_event.wait(max(0.0, next_due - time.monotonic())):
            self._execute("interval")
            previous_due = next_due
            next_due = next_tick_deadline(previous_due, time.monotonic(), interval)
            missed = round((next_due - previous_due) / interval) - 1
            if missed > 0:
                logger.warning(
                    "epoch_ticks_missed",
                    extra={"extra": {"missed": missed, "interval_seconds": interval}},
                )

    def _count(self, status: OutcomeStatus) -> None:
        with self._state_lock:
            self._counts[status] += 1

    def _execute(self, trigger: str) -> EpochOutcome:
        if not self._cycle_lock.acquire(blocking=False):
            self._count(OutcomeStatus.DROPPED)
            logger.warning(
                "epoch_trigger_dropped",
                extra={"extra": {"trigger": trigger, "reason": "cycle_in_progress"}},
            )
            return EpochOutcome(status=OutcomeStatus.DROPPED)

        try:
            with self._state_lock:
                self._epoch_id += 1
                epoch_id = self._epoch_id
            with epoch_context(epoch_id, trigger=trigger):
                logger.info("epoch_started", extra={"extra": {"epoch_id": epoch_id}})
                try:
                    result = self._cycle_fn(epoch_id)
                except Exception as exc:  # noqa: BLE001
                    self._count(OutcomeStatus.FAILED)
                    logger.error(
                        "epoch_failed",
                        extra={
                            "extra": {
                                "epoch_id": epoch_id,
                                "error_type": type(exc).__name__,
                                "error": str(exc),
                            }
                        },
                    )
                    return EpochOutcome(
                        status=OutcomeStatus.FAILED,
                        epoch_id=epoch_id,
                        error=f"{type(exc).__name__}: {exc}",
                    )

                status = (
                    OutcomeStatus.SKIPPED
                    if result.status == CycleStatus.SKIPPED
                    else OutcomeStatus.COMPLETED
                )
                self._count(status)
                logger.info(
                    "epoch_finished",
                    extra={
                        "extra": {
                            "epoch_id": epoch_id,
                            "status": status.value,
                            "reason": result.reason,
                        }
                    },
                )
                return EpochOutcome(status=status, epoch_id=epoch_id, result=result)
        finally:
            self._cycle_lock.release()
