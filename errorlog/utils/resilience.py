"""
Resilience utilities for error store outages.

This module provides:
- FailureMode, the normal/failing state of an error store
- RetryCoordinator, which buffers records in a bounded backup queue while the
  store is down and flushes them back from a background thread once a
  health check passes
"""

import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Tuple, TypeVar

from errorlog.models.error import ErrorRecord
from errorlog.services.backup_queue import BackupQueue, EnqueueResult
from errorlog.utils.logging import get_logger, log_mode_transition, log_store_failure
from errorlog.utils.metrics import StoreMetrics, emit_metric
from stores.base import StoreContract

T = TypeVar('T')

DEFAULT_RETRY_DELAY = 2.0

_ENQUEUE_COUNTERS = {
    EnqueueResult.QUEUED: "queued",
    EnqueueResult.MERGED: "rolled_up",
    EnqueueResult.DROPPED: "dropped",
}


class FailureMode(str, Enum):
    """Error store states."""
    NORMAL = "normal"  # Writes go to the store
    FAILING = "failing"  # Writes go to the backup queue


class RetryCoordinator:
    """
    Failure-mode state machine in front of an error store.

    In NORMAL mode every operation goes to the store. The first store
    failure switches to FAILING: records are buffered in the backup queue,
    reads are served from the queue and a single flush thread health-checks
    the store every ``retry_delay`` seconds. Once the store is healthy and
    the queue has been drained, the coordinator returns to NORMAL.

    The lock only guards the mode, the flush-thread bookkeeping and the last
    retry error; the backup queue has its own lock.

    Args:
        store: Backend to protect
        backup_queue_size: Queue capacity (defaults to the store's setting)
        retry_delay: Seconds between health checks while failing
        metrics: Metrics collector shared with the caller

    Example:
        coordinator = RetryCoordinator(RedisStore(settings))
        coordinator.log(ErrorRecord.from_exception(exc))
    """

    def __init__(
        self,
        store: StoreContract,
        backup_queue_size: Optional[int] = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        metrics: Optional[StoreMetrics] = None
    ):
        self.store = store
        self.queue = BackupQueue(backup_queue_size or store.backup_queue_size)
        self.retry_delay = retry_delay
        self.metrics = metrics or StoreMetrics(store.name)

        self._mode = FailureMode.NORMAL
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None
        self._closed = False
        self._last_retry_error: Optional[BaseException] = None
        self._logger = get_logger(__name__, store=store.name)

    @property
    def mode(self) -> FailureMode:
        return self._mode

    @property
    def in_failure_mode(self) -> bool:
        return self._mode is FailureMode.FAILING

    @property
    def last_retry_error(self) -> Optional[BaseException]:
        """Last exception raised by the store; kept after recovery."""
        return self._last_retry_error

    @property
    def is_flushing(self) -> bool:
        """Whether the flush thread is currently running."""
        return self._flush_thread is not None

    # ========== State machine ==========

    def _set_mode(self, mode: FailureMode) -> None:
        """Change mode; the caller holds the lock."""
        if self._mode is mode:
            return

        old_mode = self._mode
        self._mode = mode
        if mode is FailureMode.FAILING:
            self.metrics.record_failure()
        else:
            self.metrics.record_recovery()
        queue_length = len(self.queue)
        log_mode_transition(
            self._logger, self.store.name, old_mode.value, mode.value, queue_length
        )
        emit_metric(
            "errorlog.backup_queue_length",
            queue_length,
            store=self.store.name,
            mode=mode.value
        )

    def begin_retry(self, error: Optional[BaseException] = None) -> None:
        """
        Enter failure mode and start the flush thread unless one is running.

        Args:
            error: Store exception that caused the failure, if any
        """
        with self._lock:
            if error is not None:
                self._last_retry_error = error
            self._set_mode(FailureMode.FAILING)

            if self._flush_thread is not None or self._closed:
                return

            thread = threading.Thread(
                target=self._flush_loop,
                name=f"errorlog-flush-{self.store.name}",
                daemon=True
            )
            self._flush_thread = thread

        thread.start()

    def _flush_loop(self) -> None:
        self._logger.info("Backup queue flush loop started")
        try:
            while not self._stop_event.wait(self.retry_delay):
                healthy = self.store.health_check()
                self.metrics.record_health_check(healthy)
                if not healthy:
                    self._logger.debug("Error store still unavailable")
                    continue

                if not self._drain():
                    continue

                with self._lock:
                    self._set_mode(FailureMode.NORMAL)

                # A record may have been queued, or another failure reported,
                # while the mode flipped
                with self._lock:
                    if self._mode is FailureMode.NORMAL and self.queue.is_empty():
                        self._flush_thread = None
                        self._logger.info("Backup queue flushed, flush loop stopped")
                        return
                    self._set_mode(FailureMode.FAILING)

        except Exception as e:
            self._logger.error(f"Backup queue flush loop crashed: {e}", exc_info=True)

        finally:
            with self._lock:
                if self._flush_thread is threading.current_thread():
                    self._flush_thread = None

    def _drain(self) -> bool:
        """
        Write queued records to the store in FIFO order.

        Returns:
            True if the queue was emptied, False if a write failed
        """
        while not self._stop_event.is_set():
            record = self.queue.dequeue()
            if record is None:
                return True

            try:
                self.store.write(record)
                self.metrics.increment("drained")

            except Exception as e:
                with self._lock:
                    self._last_retry_error = e
                log_store_failure(self._logger, self.store.name, "drain", e, str(record.id))
                self.queue.enqueue(record)
                self.metrics.increment("requeued")
                return False

        return False

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the flush thread. Records still queued are abandoned.

        Args:
            timeout: Seconds to wait for the thread to exit
        """
        with self._lock:
            self._closed = True
            thread = self._flush_thread
        self._stop_event.set()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

        abandoned = len(self.queue)
        if abandoned:
            self._logger.warning(
                f"Shutting down with {abandoned} unflushed errors in the backup queue"
            )

    # ========== Write path ==========

    def _queue_record(self, record: ErrorRecord, error: Optional[BaseException] = None) -> None:
        result = self.queue.enqueue(record)
        self.metrics.increment(_ENQUEUE_COUNTERS[result])
        self.begin_retry(error)

    def log(self, record: ErrorRecord) -> None:
        """
        Write a record, or buffer it when the store is failing.

        Never raises for store failures. When the record is rolled up into an
        existing one, its id is replaced and ``is_duplicate`` is set.
        """
        original_id = record.id

        if self.in_failure_mode:
            self._queue_record(record)
        else:
            try:
                record.id = self.store.write(record)
                self.metrics.increment("written")
            except Exception as e:
                log_store_failure(self._logger, self.store.name, "write", e, str(record.id))
                self._queue_record(record, e)

        if record.id != original_id:
            record.is_duplicate = True

    # ========== Read and administrative path ==========

    def _call(self, operation: str, func: Callable[[], T], default: T) -> T:
        try:
            return func()
        except Exception as e:
            log_store_failure(self._logger, self.store.name, operation, e)
            self.begin_retry(e)
            return default

    def protect(self, error_id: uuid.UUID) -> bool:
        """Protect a record; always False while failing."""
        if self.in_failure_mode:
            return False
        return self._call("protect", lambda: self.store.protect(error_id), False)

    def protect_many(self, error_ids: Iterable[uuid.UUID]) -> bool:
        if self.in_failure_mode:
            return False
        return self._call("protect_many", lambda: self.store.protect_many(error_ids), False)

    def delete(self, error_id: uuid.UUID) -> bool:
        """Delete a record; always False while failing."""
        if self.in_failure_mode:
            return False
        return self._call("delete", lambda: self.store.delete(error_id), False)

    def delete_many(self, error_ids: Iterable[uuid.UUID]) -> bool:
        if self.in_failure_mode:
            return False
        return self._call("delete_many", lambda: self.store.delete_many(error_ids), False)

    def delete_all(self, application_name: Optional[str] = None) -> bool:
        """
        Delete all non-protected records.

        While failing this discards the whole backup queue instead and
        leaves the store untouched.
        """
        if self.in_failure_mode:
            discarded = self.queue.clear()
            self._logger.info(f"Discarded {discarded} errors from the backup queue")
            return True
        return self._call("delete_all", lambda: self.store.delete_all(application_name), False)

    def get(self, error_id: uuid.UUID) -> Optional[ErrorRecord]:
        if self.in_failure_mode:
            return self.queue.find(error_id)
        return self._call("fetch", lambda: self.store.fetch(error_id), None)

    def get_all(self, application_name: Optional[str] = None) -> Tuple[List[ErrorRecord], int]:
        if self.in_failure_mode:
            records = self.queue.snapshot(application_name=application_name)
            return records, len(records)
        records = self._call("list_all", lambda: self.store.list_all(application_name), [])
        return records, len(records)

    def get_count(
        self,
        since: Optional[datetime] = None,
        application_name: Optional[str] = None
    ) -> int:
        if self.in_failure_mode:
            return len(self.queue.snapshot(application_name=application_name, since=since))
        return self._call("count", lambda: self.store.count(since, application_name), 0)

    def test(self) -> bool:
        """Run the store health check."""
        healthy = self.store.health_check()
        self.metrics.record_health_check(healthy)
        return healthy

    def get_state(self) -> dict[str, Any]:
        """Diagnostic snapshot of the coordinator."""
        error = self._last_retry_error
        return {
            "store": self.store.name,
            "mode": self._mode.value,
            "queue_length": len(self.queue),
            "queue_capacity": self.queue.capacity,
            "flushing": self.is_flushing,
            "last_retry_error": repr(error) if error is not None else None,
        }
