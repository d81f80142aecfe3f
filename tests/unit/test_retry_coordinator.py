"""
Unit tests for the retry coordinator.

A FlakyStore (see conftest) stands in for a backend that can go down, and
a short retry delay keeps the flush loop fast.
"""

import threading
from typing import Callable, Generator

import pytest

from conftest import FlakyStore
from errorlog.models.error import ErrorRecord
from errorlog.utils.resilience import FailureMode, RetryCoordinator
from stores.base import StoreFailure, StoreSettings

RETRY_DELAY = 0.01


def _record(error_hash: str, application_name: str = "Billing") -> ErrorRecord:
    return ErrorRecord(error_hash=error_hash, application_name=application_name, message=error_hash)


@pytest.fixture
def coordinator(flaky_store) -> Generator[RetryCoordinator, None, None]:
    coordinator = RetryCoordinator(flaky_store, retry_delay=RETRY_DELAY)
    yield coordinator
    coordinator.shutdown(timeout=1)


def _recovered(coordinator: RetryCoordinator) -> bool:
    return coordinator.mode is FailureMode.NORMAL and not coordinator.is_flushing


class _InterleavingLock:
    """
    Lock that runs a callback once, right after the flush thread releases
    it with the coordinator back in normal mode.
    """

    def __init__(self, coordinator: RetryCoordinator, on_release: Callable[[], None]):
        self._coordinator = coordinator
        self._on_release = on_release
        self._lock = threading.Lock()
        self.fired = False

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()
        if (
            not self.fired
            and threading.current_thread() is self._coordinator._flush_thread
            and self._coordinator.mode is FailureMode.NORMAL
        ):
            self.fired = True
            self._on_release()


class TestNormalMode:
    """Operations pass straight through while the store is healthy."""

    def test_log_writes_to_store(self, coordinator, flaky_store):
        record = _record("a")

        coordinator.log(record)

        assert flaky_store.fetch(record.id) is record
        assert coordinator.mode is FailureMode.NORMAL
        assert coordinator.metrics.get("written") == 1
        assert not coordinator.is_flushing

    def test_log_rollup_marks_duplicate(self, coordinator, flaky_store):
        first, second = _record("a"), _record("a")

        coordinator.log(first)
        coordinator.log(second)

        assert second.id == first.id
        assert second.is_duplicate is True
        assert first.is_duplicate is False
        assert flaky_store.fetch(first.id).duplicate_count == 2

    def test_admin_operations(self, coordinator):
        record = _record("a")
        coordinator.log(record)

        assert coordinator.get(record.id) is record
        assert coordinator.get_all() == ([record], 1)
        assert coordinator.get_count() == 1
        assert coordinator.protect(record.id) is True
        assert coordinator.delete(record.id) is False
        assert coordinator.delete_all() is True
        assert coordinator.get_count() == 1

    def test_test_runs_health_check(self, coordinator, flaky_store):
        assert coordinator.test() is True

        flaky_store.down = True
        assert coordinator.test() is False
        assert coordinator.metrics.get("health_checks_failed") == 1


class TestFailureMode:
    """Behaviour while the store is down."""

    def test_write_failure_enters_failure_mode(self, coordinator, flaky_store):
        flaky_store.down = True
        record = _record("a")

        coordinator.log(record)

        assert coordinator.in_failure_mode
        assert isinstance(coordinator.last_retry_error, StoreFailure)
        assert coordinator.queue.find(record.id) is record
        assert coordinator.is_flushing
        assert coordinator.metrics.get("queued") == 1

    def test_log_never_raises(self, coordinator, flaky_store):
        flaky_store.down = True

        for i in range(5):
            coordinator.log(_record(f"h{i}"))

        assert len(coordinator.queue) == 5

    def test_duplicates_roll_up_in_queue(self, coordinator, flaky_store):
        flaky_store.down = True
        first, second = _record("a"), _record("a")

        coordinator.log(first)
        coordinator.log(second)

        assert len(coordinator.queue) == 1
        assert second.id == first.id
        assert second.is_duplicate is True
        assert first.duplicate_count == 2
        assert coordinator.metrics.get("rolled_up") == 1

    def test_full_queue_drops(self, flaky_store):
        coordinator = RetryCoordinator(flaky_store, backup_queue_size=2, retry_delay=RETRY_DELAY)
        flaky_store.down = True
        try:
            for i in range(4):
                coordinator.log(_record(f"h{i}"))

            assert len(coordinator.queue) == 2
            assert coordinator.metrics.get("dropped") == 2
        finally:
            coordinator.shutdown(timeout=1)

    def test_queue_capacity_defaults_to_store_setting(self):
        store = FlakyStore(StoreSettings(backup_queue_size=7))

        assert RetryCoordinator(store).queue.capacity == 7

    def test_single_flush_thread(self, coordinator, flaky_store):
        flaky_store.down = True
        coordinator.log(_record("a"))
        thread = coordinator._flush_thread

        coordinator.log(_record("b"))
        coordinator.begin_retry()

        assert coordinator._flush_thread is thread

    def test_protect_and_delete_refused(self, coordinator, flaky_store):
        record = _record("a")
        coordinator.log(record)
        flaky_store.down = True
        coordinator.log(_record("b"))

        assert coordinator.protect(record.id) is False
        assert coordinator.protect_many([record.id]) is False
        assert coordinator.delete(record.id) is False
        assert coordinator.delete_many([record.id]) is False

    def test_reads_served_from_queue(self, coordinator, flaky_store):
        flaky_store.down = True
        billing, shipping = _record("a"), _record("b", application_name="Shipping")
        coordinator.log(billing)
        coordinator.log(shipping)

        assert coordinator.get(billing.id) is billing
        assert coordinator.get_all() == ([billing, shipping], 2)
        assert coordinator.get_all("Shipping") == ([shipping], 1)
        assert coordinator.get_count() == 2
        assert coordinator.get_count(application_name="Billing") == 1

    def test_delete_all_clears_queue_only(self, coordinator, flaky_store, wait_for):
        stored = _record("stored")
        coordinator.log(stored)
        flaky_store.down = True
        coordinator.log(_record("queued"))

        assert coordinator.delete_all() is True
        assert len(coordinator.queue) == 0

        flaky_store.down = False
        assert wait_for(lambda: _recovered(coordinator))
        assert coordinator.get_all() == ([stored], 1)

    def test_read_failure_enters_failure_mode(self, coordinator, flaky_store):
        flaky_store.down = True

        assert coordinator.get_count() == 0
        assert coordinator.get_all() == ([], 0)
        assert coordinator.in_failure_mode

    def test_protect_failure_returns_false(self, coordinator, flaky_store):
        record = _record("a")
        coordinator.log(record)
        flaky_store.down = True

        assert coordinator.protect(record.id) is False
        assert coordinator.in_failure_mode


class TestRecovery:
    """Flushing the backup queue once the store is back."""

    def test_fail_once_round_trip(self, wait_for):
        store = FlakyStore(fail_writes=1)
        coordinator = RetryCoordinator(store, retry_delay=RETRY_DELAY)
        record = _record("a")
        try:
            coordinator.log(record)
            assert coordinator.metrics.get("queued") == 1

            assert wait_for(lambda: _recovered(coordinator))

            assert store.fetch(record.id) is not None
            assert len(coordinator.queue) == 0
            assert coordinator.metrics.get("drained") == 1
            assert coordinator.metrics.get("mode_transitions") == 2
            assert isinstance(coordinator.last_retry_error, StoreFailure)
        finally:
            coordinator.shutdown(timeout=1)

    def test_drain_preserves_order_and_counts(self, coordinator, flaky_store, wait_for):
        flaky_store.down = True
        records = [_record(f"h{i}") for i in range(3)]
        for record in records:
            coordinator.log(record)
        coordinator.log(_record("h0"))

        flaky_store.down = False
        assert wait_for(lambda: _recovered(coordinator))

        stored = flaky_store.list_all()
        assert [r.id for r in reversed(stored)] == [r.id for r in records]
        assert flaky_store.fetch(records[0].id).duplicate_count == 2

    def test_drained_duplicate_rolls_into_stored_record(self, coordinator, flaky_store, wait_for):
        existing = _record("a")
        coordinator.log(existing)
        flaky_store.down = True
        coordinator.log(_record("a"))
        coordinator.log(_record("a"))

        flaky_store.down = False
        assert wait_for(lambda: _recovered(coordinator))

        assert flaky_store.count() == 1
        assert flaky_store.fetch(existing.id).duplicate_count == 3

    def test_logging_resumes_after_recovery(self, coordinator, flaky_store, wait_for):
        flaky_store.down = True
        coordinator.log(_record("a"))
        flaky_store.down = False
        assert wait_for(lambda: _recovered(coordinator))

        record = _record("b")
        coordinator.log(record)

        assert flaky_store.fetch(record.id) is record

    def test_drain_failure_requeues(self, coordinator, flaky_store):
        for name in ("a", "b"):
            coordinator.queue.enqueue(_record(name))
        flaky_store.fail_writes = 1

        assert coordinator._drain() is False
        assert len(coordinator.queue) == 2
        assert coordinator.metrics.get("requeued") == 1

        assert coordinator._drain() is True
        assert flaky_store.count() == 2

    def test_failure_reported_while_recovering_keeps_flushing(self, wait_for):
        store = FlakyStore(fail_writes=1)
        coordinator = RetryCoordinator(store, retry_delay=RETRY_DELAY)
        late = _record("b")

        def report_failure():
            coordinator._queue_record(late, StoreFailure("write failed"))

        lock = _InterleavingLock(coordinator, report_failure)
        coordinator._lock = lock
        try:
            coordinator.log(_record("a"))

            assert wait_for(lambda: lock.fired and _recovered(coordinator))

            assert store.fetch(late.id) is late
            assert len(coordinator.queue) == 0
        finally:
            coordinator.shutdown(timeout=1)

    def test_requeue_keeps_full_duplicate_count(self, coordinator, flaky_store, monkeypatch):
        for _ in range(5):
            coordinator.queue.enqueue(_record("a"))

        def failing_write(record):
            # A new occurrence is queued while the drained record is in flight
            coordinator.queue.enqueue(_record("a"))
            raise StoreFailure("write failed")

        monkeypatch.setattr(flaky_store, "write", failing_write)

        assert coordinator._drain() is False

        [queued] = coordinator.queue.snapshot()
        assert queued.duplicate_count == 6

    def test_concurrent_logging_during_outage(self, coordinator, flaky_store, wait_for):
        flaky_store.down = True

        def worker(offset):
            for i in range(20):
                coordinator.log(_record(f"{offset}-{i % 5}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(coordinator.queue) == 20

        flaky_store.down = False
        assert wait_for(lambda: _recovered(coordinator))
        assert flaky_store.count() == 20
        assert all(r.duplicate_count == 4 for r in flaky_store.list_all())


class TestShutdown:
    def test_shutdown_stops_flush_thread(self, flaky_store, wait_for):
        coordinator = RetryCoordinator(flaky_store, retry_delay=RETRY_DELAY)
        flaky_store.down = True
        coordinator.log(_record("a"))
        thread = coordinator._flush_thread

        coordinator.shutdown(timeout=1)

        assert not thread.is_alive()
        assert not coordinator.is_flushing

    def test_no_flush_thread_after_shutdown(self, flaky_store):
        coordinator = RetryCoordinator(flaky_store, retry_delay=RETRY_DELAY)
        coordinator.shutdown()
        flaky_store.down = True

        coordinator.log(_record("a"))

        assert coordinator.in_failure_mode
        assert not coordinator.is_flushing
        assert len(coordinator.queue) == 1


def test_get_state(coordinator, flaky_store):
    flaky_store.down = True
    coordinator.log(_record("a"))

    state = coordinator.get_state()

    assert state["store"] == "FlakyStore"
    assert state["mode"] == "failing"
    assert state["queue_length"] == 1
    assert state["queue_capacity"] == 1000
    assert "store is down" in state["last_retry_error"]


def test_mode_transition_emits_queue_length(coordinator, flaky_store, caplog):
    flaky_store.down = True

    with caplog.at_level("INFO", logger="errorlog.utils.metrics"):
        coordinator.log(_record("a"))

    [metric] = [
        r for r in caplog.records
        if getattr(r, "metric_name", None) == "errorlog.backup_queue_length"
    ]
    assert metric.metric_value == 1
    assert metric.metric_tags == {"store": "FlakyStore", "mode": "failing"}
