"""Interval polling with failure backoff around the reconciler."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from tick_rewards.sync.models import TickResult
from tick_rewards.sync.reconciler import Reconciler

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKOFF_FACTOR = 5
MAX_CONSECUTIVE_FAILURES = 8
STOP_JOIN_TIMEOUT_SECONDS = 15.0


class PollScheduler:
    """Single active timer driving reconciliation ticks.

    At most one tick is in flight; a manual ``run_now`` that arrives while a
    tick is running waits for it and returns its result instead of starting
    another one.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        interval_seconds: float,
        max_backoff_factor: int = DEFAULT_MAX_BACKOFF_FACTOR,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if max_backoff_factor < 1:
            raise ValueError("max_backoff_factor must be >= 1")
        self.reconciler = reconciler
        self.interval_seconds = float(interval_seconds)
        self.max_backoff_factor = max_backoff_factor
        self._clock = clock
        self._in_flight = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._rearm = threading.Event()
        self._thread: threading.Thread | None = None
        self._next_run_at: float | None = None
        self._last_result: TickResult | None = None
        self.consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def backoff_factor(self) -> int:
        return min(2**self.consecutive_failures, self.max_backoff_factor)

    @property
    def current_delay_seconds(self) -> float:
        return self.interval_seconds * self.backoff_factor

    def start(self, interval_seconds: float | None = None) -> None:
        """Run one tick immediately, then keep polling on the interval."""

        if interval_seconds is not None:
            self.set_interval(interval_seconds)
        if self.running:
            return
        self._stop.clear()
        self._rearm.clear()
        self.reconciler.clear_cancel()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="tick-rewards-poll")
        self._thread.start()
        logger.info("Poll scheduler started: interval=%ss", self.interval_seconds)

    def stop(self, *, cancel_in_flight: bool = False) -> None:
        """Cancel the pending timer; an in-flight tick finishes unless cancelled."""

        self._stop.set()
        self._rearm.set()
        if cancel_in_flight:
            self.reconciler.request_cancel()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=STOP_JOIN_TIMEOUT_SECONDS)
            self._thread = None
        with self._state_lock:
            self._next_run_at = None
        logger.info("Poll scheduler stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the polling thread exits; True when it has."""

        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def set_interval(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("interval must be > 0")
        with self._state_lock:
            self.interval_seconds = float(seconds)
            if self._next_run_at is not None:
                self._next_run_at = self._clock() + self.current_delay_seconds
        self._rearm.set()

    def run_now(self) -> TickResult:
        """Run a tick now, or join the one already in flight."""

        if self._in_flight.acquire(blocking=False):
            try:
                result = self.reconciler.run_once()
                self._record(result)
                return result
            finally:
                self._in_flight.release()

        logger.info("Tick already in flight; waiting for its result")
        with self._in_flight:
            result = self._last_result
        if result is None:
            return self.run_now()
        return result

    def status(self) -> dict[str, object]:
        with self._state_lock:
            next_run_at = self._next_run_at
            failures = self.consecutive_failures
        last_sync_at = self.reconciler.last_sync_at
        next_run_in = None
        if next_run_at is not None:
            next_run_in = max(0.0, round(next_run_at - self._clock(), 1))
        return {
            "last_sync_at": last_sync_at.isoformat() if last_sync_at is not None else None,
            "error": self.reconciler.last_error,
            "polling": self.running,
            "poll_seconds": self.interval_seconds,
            "backoff_seconds": self.current_delay_seconds,
            "next_run_in_seconds": next_run_in,
            "consecutive_failures": failures,
            "recent_completions": [
                {
                    "task_id": item.task_id,
                    "title": item.title,
                    "completed_at": item.completed_at.isoformat(),
                    "points": item.points,
                }
                for item in self.reconciler.recent_completions()
            ],
        }

    def _record(self, result: TickResult) -> None:
        with self._state_lock:
            self._last_result = result
            if result.success:
                self.consecutive_failures = 0
            else:
                self.consecutive_failures = min(
                    self.consecutive_failures + 1,
                    MAX_CONSECUTIVE_FAILURES,
                )

    def _loop(self) -> None:
        while not self._stop.is_set():
            result = self.run_now()
            if not result.success:
                logger.warning(
                    "Tick failed (%s); next attempt in %.0fs",
                    result.failure_class.value if result.failure_class else "unknown",
                    self.current_delay_seconds,
                )
            with self._state_lock:
                self._next_run_at = self._clock() + self.current_delay_seconds
            self._wait_until_due()

    def _wait_until_due(self) -> None:
        while not self._stop.is_set():
            with self._state_lock:
                due_at = self._next_run_at
            remaining = 0.0 if due_at is None else due_at - self._clock()
            if remaining <= 0:
                return
            self._rearm.wait(timeout=remaining)
            self._rearm.clear()
