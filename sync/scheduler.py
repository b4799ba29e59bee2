# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Sync Scheduler - periodic re-fetch per widget with backoff retries and cancellation
"""
import logging
import queue
import threading
from typing import Callable, Optional

import schedule

import config
from models import SyncState
from utils.retry import backoff_delay
from utils.timezone import get_display_time, format_display_time

logger = logging.getLogger(__name__)

_STOP = object()


class RunToken:
    """Handed to each sync run; late results must check it before touching shared state"""

    def __init__(self, cancelled: threading.Event):
        self._cancelled = cancelled

    def is_live(self) -> bool:
        return not self._cancelled.is_set()


class WidgetSyncScheduler:
    """Drives the sync loop for one widget instance on its own daemon thread

    sync_fn(verbose, run_token) performs one sync and returns True on success.
    Requests from other threads and due jobs are passed to the loop through a
    queue so all syncs for a widget run one at a time. The job list is only
    touched under _jobs_lock, and never while a sync is running.
    """

    def __init__(
        self,
        widget_id: str,
        sync_fn: Callable[[bool, RunToken], bool],
        state: Optional[SyncState] = None,
        interval_minutes: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None
    ):
        self.widget_id = widget_id
        self.sync_fn = sync_fn
        self.state = state or SyncState()
        self.interval_minutes = interval_minutes or config.SYNC_INTERVAL_MIN
        self.tick_seconds = tick_seconds if tick_seconds is not None else config.SCHEDULER_TICK_SECONDS
        self.max_retries = max_retries if max_retries is not None else config.MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else config.BASE_DELAY
        self.max_delay = max_delay if max_delay is not None else config.MAX_DELAY

        self._jobs = schedule.Scheduler()
        self._jobs_lock = threading.RLock()
        self._requests: "queue.Queue" = queue.Queue()
        self._cancelled = threading.Event()
        self._sync_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._retry_job: Optional[schedule.Job] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, verbose: bool = False, initial_sync: bool = True):
        """Run an initial sync, then re-sync every interval until stopped

        initial_sync=False leaves the first sync to the caller.
        """
        if self._cancelled.is_set():
            raise RuntimeError(f"Scheduler for widget {self.widget_id} was stopped and cannot restart")
        if self._thread is not None and self._thread.is_alive():
            logger.info(f"Scheduler for widget {self.widget_id} already running")
            return

        with self._jobs_lock:
            self._jobs.every(self.interval_minutes).minutes.do(self._scheduled_sync)
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(verbose, initial_sync),
            name=f"calendar-sync-{self.widget_id}",
            daemon=True
        )
        self._thread.start()
        logger.info(f"Scheduler started for widget {self.widget_id} - sync every "
                    f"{self.interval_minutes} minutes - started at {format_display_time(get_display_time())}")

    def stop(self, wait: bool = False):
        """Cancel timers and mark any in-flight run as discardable"""
        self._cancelled.set()
        with self._jobs_lock:
            self._jobs.clear()
            self._retry_job = None
        self._requests.put(_STOP)

        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        logger.info(f"Scheduler stopped for widget {self.widget_id}")

    def is_running(self) -> bool:
        return (not self._cancelled.is_set()
                and self._thread is not None and self._thread.is_alive())

    @property
    def stopped(self) -> bool:
        return self._cancelled.is_set()

    @property
    def pending_retry(self) -> bool:
        return self._retry_job is not None

    @property
    def next_run(self):
        with self._jobs_lock:
            return self._jobs.next_run

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_refresh(self, verbose: bool = True):
        """Queue a sync on the loop thread (user-initiated refreshes are verbose)"""
        if self._cancelled.is_set():
            return
        self._requests.put(verbose)

    def run_now(self, verbose: bool = True) -> bool:
        """Run one sync on the calling thread"""
        return self._run_sync(verbose)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run_loop(self, initial_verbose: bool, initial_sync: bool = True):
        if initial_sync:
            self._run_sync(initial_verbose)

        while not self._cancelled.is_set():
            try:
                request = self._requests.get(timeout=self.tick_seconds)
            except queue.Empty:
                request = None

            if self._cancelled.is_set() or request is _STOP:
                break
            if request is not None:
                self._run_sync(bool(request))

            with self._jobs_lock:
                self._jobs.run_pending()

        logger.debug(f"Sync loop exited for widget {self.widget_id}")

    # Job callbacks run under _jobs_lock and only queue work for the loop

    def _scheduled_sync(self):
        self._requests.put(False)

    def _retry_sync(self):
        self._retry_job = None
        self._requests.put(False)
        return schedule.CancelJob

    def _run_sync(self, verbose: bool) -> bool:
        if self._cancelled.is_set():
            return False

        with self._sync_lock:
            token = RunToken(self._cancelled)
            if verbose:
                logger.info(f"Running sync for widget {self.widget_id}")
            else:
                logger.debug(f"Running scheduled sync for widget {self.widget_id}")

            try:
                succeeded = bool(self.sync_fn(verbose, token))
            except Exception as e:
                # Don't let sync errors crash the scheduler
                logger.error(f"❌ Sync failed for widget {self.widget_id}: {e}")
                succeeded = False

            if not token.is_live():
                logger.debug(f"Widget {self.widget_id} torn down during sync, result discarded")
                return False

            self._after_sync(succeeded)
            return succeeded

    def _after_sync(self, succeeded: bool):
        if succeeded:
            self.state.retry_count = 0
            with self._jobs_lock:
                if self._retry_job is not None:
                    self._jobs.cancel_job(self._retry_job)
                    self._retry_job = None
            return

        if self.pending_retry:
            return

        if self.state.retry_count >= self.max_retries:
            logger.warning(f"⚠️ Widget {self.widget_id} exhausted {self.max_retries} retries, "
                           f"waiting for next scheduled sync")
            return

        delay = backoff_delay(self.state.retry_count, self.base_delay, self.max_delay)
        self.state.retry_count += 1
        seconds = max(1, int(round(delay)))
        with self._jobs_lock:
            if self._cancelled.is_set():
                return
            self._retry_job = self._jobs.every(seconds).seconds.do(self._retry_sync)
        logger.warning(f"⚠️ Sync failed for widget {self.widget_id}, retry "
                       f"{self.state.retry_count}/{self.max_retries} in {seconds}s")
