"""
Sync scheduler tests - retries with backoff, request queueing, cancellation
"""

import threading
import time

import pytest

from models import SyncState
from sync.scheduler import WidgetSyncScheduler
from utils.retry import backoff_delay


class RecordingSync:
    """sync_fn double that records calls and returns scripted outcomes"""

    def __init__(self, outcomes=None, default=True):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = []
        self.tokens = []
        self.threads = []
        self.called = threading.Event()

    def __call__(self, verbose, token):
        self.calls.append(verbose)
        self.tokens.append(token)
        self.threads.append(threading.current_thread().name)
        self.called.set()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return self.default

    def wait_for_calls(self, count, timeout=5):
        deadline = time.monotonic() + timeout
        while len(self.calls) < count and time.monotonic() < deadline:
            time.sleep(0.01)
        return len(self.calls) >= count


def _scheduler(sync_fn, **kwargs):
    options = {'interval_minutes': 5, 'tick_seconds': 0.02, 'max_retries': 3, 'base_delay': 2.0, 'max_delay': 60.0}
    options.update(kwargs)
    return WidgetSyncScheduler('cal-1', sync_fn, state=SyncState(), **options)


class TestBackoff:

    @pytest.mark.sync
    def test_delay_doubles_and_caps(self):
        assert [backoff_delay(n, base_delay=2.0, max_delay=10.0) for n in range(5)] == [2.0, 4.0, 8.0, 10.0, 10.0]

    @pytest.mark.sync
    def test_jitter_stays_in_bounds(self):
        for _ in range(20):
            assert 9.0 <= backoff_delay(0, base_delay=10.0, jitter_factor=0.1) <= 11.0


class TestRetries:

    @pytest.mark.sync
    def test_failure_schedules_retry(self):
        scheduler = _scheduler(RecordingSync(default=False))

        assert scheduler.run_now() is False

        assert scheduler.pending_retry
        assert scheduler.state.retry_count == 1
        assert scheduler.next_run is not None

    @pytest.mark.sync
    def test_exception_counts_as_failure(self):
        scheduler = _scheduler(RecordingSync(outcomes=[RuntimeError("boom")]))

        assert scheduler.run_now() is False
        assert scheduler.pending_retry

    @pytest.mark.sync
    def test_success_resets_retry_state(self):
        scheduler = _scheduler(RecordingSync(outcomes=[False, True]))

        scheduler.run_now()
        assert scheduler.run_now() is True

        assert not scheduler.pending_retry
        assert scheduler.state.retry_count == 0

    @pytest.mark.sync
    def test_only_one_retry_pending_at_a_time(self):
        scheduler = _scheduler(RecordingSync(default=False))

        scheduler.run_now()
        scheduler.run_now()

        assert scheduler.state.retry_count == 1

    @pytest.mark.sync
    def test_retries_stop_after_limit(self):
        sync = RecordingSync(default=False)
        scheduler = _scheduler(sync, max_retries=1, base_delay=1.0)

        scheduler.start()
        try:
            assert sync.wait_for_calls(2, timeout=5)
            time.sleep(1.5)
        finally:
            scheduler.stop(wait=True)

        # Initial sync plus one retry, then wait for the regular interval
        assert len(sync.calls) == 2
        assert scheduler.state.retry_count == 1
        assert not scheduler.pending_retry

    @pytest.mark.sync
    def test_retry_scheduled_from_caller_thread_runs_on_loop(self):
        """A retry added by run_now while the loop is idle is picked up by the loop"""
        sync = RecordingSync(outcomes=[False, True])
        scheduler = _scheduler(sync, base_delay=1.0)

        scheduler.start(initial_sync=False)
        try:
            assert scheduler.run_now() is False
            assert scheduler.pending_retry
            assert sync.wait_for_calls(2, timeout=5)
        finally:
            scheduler.stop(wait=True)

        assert sync.threads[0] == threading.current_thread().name
        assert sync.threads[1] == 'calendar-sync-cal-1'
        assert scheduler.state.retry_count == 0
        assert not scheduler.pending_retry


class TestLoop:

    @pytest.mark.sync
    def test_initial_sync_uses_start_verbosity(self):
        sync = RecordingSync()
        scheduler = _scheduler(sync)

        scheduler.start(verbose=False)
        try:
            assert sync.wait_for_calls(1)
            scheduler.request_refresh(verbose=True)
            assert sync.wait_for_calls(2)
        finally:
            scheduler.stop(wait=True)

        assert sync.calls == [False, True]

    @pytest.mark.sync
    def test_start_without_initial_sync_waits_for_a_request(self):
        sync = RecordingSync()
        scheduler = _scheduler(sync)

        scheduler.start(initial_sync=False)
        try:
            time.sleep(0.2)
            assert sync.calls == []
            scheduler.request_refresh(verbose=True)
            assert sync.wait_for_calls(1)
        finally:
            scheduler.stop(wait=True)

        assert sync.calls == [True]

    @pytest.mark.sync
    def test_is_running_until_stopped(self):
        sync = RecordingSync()
        scheduler = _scheduler(sync)

        scheduler.start()
        assert sync.wait_for_calls(1)
        assert scheduler.is_running()

        scheduler.stop(wait=True)
        assert not scheduler.is_running()
        assert scheduler.stopped

    @pytest.mark.sync
    def test_cannot_restart_after_stop(self):
        scheduler = _scheduler(RecordingSync())
        scheduler.stop()

        with pytest.raises(RuntimeError):
            scheduler.start()

    @pytest.mark.sync
    def test_requests_after_stop_are_ignored(self):
        sync = RecordingSync()
        scheduler = _scheduler(sync)
        scheduler.stop()

        scheduler.request_refresh()
        assert scheduler.run_now() is False
        assert sync.calls == []


class TestCancellation:

    @pytest.mark.sync
    def test_result_of_run_in_flight_at_stop_is_discarded(self):
        entered = threading.Event()
        release = threading.Event()
        tokens = []

        def slow_failing_sync(verbose, token):
            tokens.append(token)
            entered.set()
            release.wait(timeout=5)
            return False

        scheduler = _scheduler(slow_failing_sync)
        scheduler.start()
        assert entered.wait(timeout=5)

        scheduler.stop()
        release.set()
        scheduler._thread.join(timeout=5)

        assert not tokens[0].is_live()
        # A failure that lands after teardown must not schedule retries
        assert not scheduler.pending_retry
        assert scheduler.state.retry_count == 0

    @pytest.mark.sync
    def test_stop_does_not_wait_for_sync_in_flight(self):
        entered = threading.Event()
        release = threading.Event()

        def slow_sync(verbose, token):
            entered.set()
            release.wait(timeout=5)
            return True

        scheduler = _scheduler(slow_sync)
        scheduler.start()
        assert entered.wait(timeout=5)

        started = time.monotonic()
        scheduler.stop()
        elapsed = time.monotonic() - started
        release.set()
        scheduler._thread.join(timeout=5)

        assert elapsed < 1.0
        assert scheduler.next_run is None
        assert not scheduler._thread.is_alive()
