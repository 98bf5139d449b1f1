"""Background fine reconciliation.

One worker thread runs a pass immediately on ``start`` and then once per
interval. The wait for the next tick only begins after a pass has finished,
so a slow pass delays the next one instead of overlapping it. A separate pass
lock covers ``force_process`` calls coming from other threads and a restart
that races an in-flight pass of the previous worker.
"""
from __future__ import annotations

import logging
from threading import Event, Lock, Thread, current_thread
from typing import List, Optional

from .domain import FineAction, FineOutcome, LoopState, LoopStatus, OPEN_LOAN_STATUSES, utcnow
from .errors import ValidationError
from .services import Clock, FineService

logger = logging.getLogger(__name__)


class FineReconciliationLoop:
    DEFAULT_INTERVAL_MS = 5000
    MIN_INTERVAL_MS = 1000

    def __init__(self, fines: FineService, interval_ms: int = DEFAULT_INTERVAL_MS, clock: Clock = utcnow) -> None:
        self.fines = fines
        self.clock = clock
        self._interval_ms = interval_ms
        self._state = LoopState.STOPPED
        self._lock = Lock()
        self._pass_lock = Lock()
        self._stop_event: Optional[Event] = None
        self._thread: Optional[Thread] = None
        self._last_run_at = None
        self._passes_completed = 0
        self._last_updated = 0
        self._last_errors = 0

    # ---- lifecycle
    def start(self, interval_ms: Optional[int] = None) -> bool:
        with self._lock:
            if self._state is LoopState.RUNNING:
                logger.warning("Fine reconciliation loop is already running")
                return False
            if interval_ms is not None:
                self._interval_ms = self._checked_interval(interval_ms)
            stop_event = Event()
            thread = Thread(target=self._run, args=(stop_event,), name="fine-reconciler", daemon=True)
            self._stop_event = stop_event
            self._thread = thread
            self._state = LoopState.RUNNING
            thread.start()
        logger.info("Fine reconciliation loop started | interval_ms=%s", self._interval_ms)
        return True

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """Cancel the next tick; an in-flight pass is left to finish."""
        with self._lock:
            if self._state is LoopState.STOPPED:
                logger.warning("Fine reconciliation loop is not running")
                return False
            self._stop_event.set()
            thread = self._thread
            self._stop_event = None
            self._thread = None
            self._state = LoopState.STOPPED
        if wait and thread is not None and thread is not current_thread():
            thread.join(timeout)
        logger.info("Fine reconciliation loop stopped")
        return True

    def set_interval(self, interval_ms: int) -> None:
        interval_ms = self._checked_interval(interval_ms)
        with self._lock:
            running = self._state is LoopState.RUNNING
            self._interval_ms = interval_ms
        if running:
            self.stop()
            self.start()

    def status(self) -> LoopStatus:
        with self._lock:
            return LoopStatus(
                state=self._state,
                interval_ms=self._interval_ms,
                last_run_at=self._last_run_at,
                passes_completed=self._passes_completed,
                last_updated=self._last_updated,
                last_errors=self._last_errors,
            )

    # ---- passes
    def force_process(self) -> List[FineOutcome]:
        logger.info("Forcing a fine reconciliation pass")
        return self.run_once()

    def run_once(self) -> List[FineOutcome]:
        with self._pass_lock:
            try:
                outcomes = self.fines.process_all_overdue(OPEN_LOAN_STATUSES)
            except Exception:
                logger.exception("Fine reconciliation pass failed")
                return []
            updated = sum(1 for o in outcomes if o.action in (FineAction.CREATED, FineAction.UPDATED))
            errors = sum(1 for o in outcomes if o.action is FineAction.ERROR)
            with self._lock:
                self._last_run_at = self.clock()
                self._passes_completed += 1
                self._last_updated = updated
                self._last_errors = errors
        if updated or errors:
            logger.info("Fine reconciliation completed | updated=%d errors=%d", updated, errors)
        return outcomes

    def _run(self, stop_event: Event) -> None:
        while not stop_event.is_set():
            self.run_once()
            if stop_event.wait(self._interval_ms / 1000.0):
                break

    def _checked_interval(self, interval_ms: int) -> int:
        if interval_ms < self.MIN_INTERVAL_MS:
            raise ValidationError(
                f"Interval must be at least {self.MIN_INTERVAL_MS}ms", interval_ms=interval_ms
            )
        return int(interval_ms)
