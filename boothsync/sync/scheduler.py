"""Periodic and manual sync triggering with a single-flight guard.

Both the interval timer and manual triggers submit to the same one-worker
executor. While a run is in flight every trigger receives that run's
Future, so at most one run is ever active per device.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Optional

from boothsync.types import ConfigError, ErrorKind, SyncResult, utc_now

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Owns the recurring timer and the single-flight executor.

    Args:
        run: Callable performing one sync run (``SyncOrchestrator.run_once``).
        interval_minutes: Minutes between scheduled runs.
        enabled: Whether scheduled runs fire once started.
    """

    # Scaled down by tests
    MINUTE_SECONDS = 60.0

    def __init__(self, run: Callable[[], SyncResult], interval_minutes: int = 15, enabled: bool = True):
        self._validate_interval(interval_minutes)
        self._run = run
        self._interval_minutes = interval_minutes
        self._enabled = enabled
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="boothsync-sync")
        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None
        self._run_count = 0

        self._wakeup = threading.Event()
        self._stopped = True
        self._rearm_requested = False
        self._next_run_at: Optional[datetime] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown = False

    @staticmethod
    def _validate_interval(minutes) -> None:
        if not isinstance(minutes, int) or isinstance(minutes, bool) or minutes <= 0:
            raise ConfigError(f"Sync interval must be a positive number of minutes, got {minutes!r}")

    # === Properties ===

    @property
    def interval_minutes(self) -> int:
        return self._interval_minutes

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        """True while a sync run is in flight."""
        with self._lock:
            return self._inflight is not None and not self._inflight.done()

    @property
    def is_started(self) -> bool:
        return not self._stopped

    @property
    def run_count(self) -> int:
        """Number of runs actually started (coalesced triggers count once)."""
        with self._lock:
            return self._run_count

    @property
    def next_sync_time(self) -> Optional[datetime]:
        if self._stopped or not self._enabled:
            return None
        return self._next_run_at

    # === Triggering ===

    def _execute(self) -> SyncResult:
        try:
            return self._run()
        except Exception as e:
            logger.error(f"Sync run raised: {e}", exc_info=True)
            result = SyncResult(started_at=utc_now(), finished_at=utc_now())
            result.add_error(None, ErrorKind.APPLY, f"Sync run raised: {e}")
            return result

    def trigger(self) -> Future:
        """Start a run unless one is in flight; either way return its Future."""
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Scheduler has been shut down")
            if self._inflight is not None and not self._inflight.done():
                logger.debug("Sync already in flight; joining it")
                return self._inflight
            self._run_count += 1
            self._inflight = self._executor.submit(self._execute)
            return self._inflight

    def trigger_now(self, timeout: Optional[float] = None) -> SyncResult:
        """Manual sync. Blocks until the current (or a new) run finishes."""
        return self.trigger().result(timeout=timeout)

    # === Timer ===

    def start(self) -> None:
        """Arm the periodic trigger. The first scheduled run fires one interval from now."""
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Scheduler has been shut down")
            if not self._stopped:
                return
            self._stopped = False
            self._rearm_requested = False
            self._wakeup.clear()
            self._next_run_at = utc_now() + timedelta(
                seconds=self._interval_minutes * self.MINUTE_SECONDS
            )
            self._thread = threading.Thread(
                target=self._loop, name="boothsync-scheduler", daemon=True
            )
            self._thread.start()
        logger.info(f"Sync scheduler started (every {self._interval_minutes} min)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Disarm the timer. A run already in flight is left to finish."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            thread = self._thread
            self._thread = None
        self._wakeup.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._next_run_at = None
        logger.info("Sync scheduler stopped")

    def set_interval(self, minutes: int) -> None:
        """Change the interval. The timer re-arms from now; in-flight runs are untouched."""
        self._validate_interval(minutes)
        with self._lock:
            self._interval_minutes = minutes
            self._rearm_requested = True
        self._wakeup.set()
        logger.info(f"Sync interval set to {minutes} min")

    def set_enabled(self, enabled: bool) -> None:
        """Toggle scheduled runs without tearing down the timer thread."""
        with self._lock:
            self._enabled = bool(enabled)
            self._rearm_requested = True
        self._wakeup.set()
        logger.info(f"Scheduled sync {'enabled' if enabled else 'disabled'}")

    def _loop(self) -> None:
        while True:
            with self._lock:
                if self._stopped:
                    return
                self._rearm_requested = False
                interval = self._interval_minutes * self.MINUTE_SECONDS
            self._next_run_at = utc_now() + timedelta(seconds=interval)

            fired = not self._wakeup.wait(interval)
            self._wakeup.clear()

            with self._lock:
                if self._stopped:
                    return
                if self._rearm_requested:
                    continue
                enabled = self._enabled
            if fired and enabled:
                logger.debug("Scheduled sync firing")
                try:
                    self.trigger()
                except RuntimeError:
                    return

    def shutdown(self, wait: bool = True) -> None:
        """Stop the timer and the executor. Waits for an in-flight run when ``wait``."""
        self.stop()
        with self._lock:
            self._shutdown = True
        self._executor.shutdown(wait=wait)
