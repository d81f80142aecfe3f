"""
Bounded in-memory backup queue for records that could not be written.

Enqueue rolls a record up into an already-queued record with the same hash
instead of appending it. When the queue is full and nothing matches, the
record is dropped; this lossy overflow is intentional and not an error.
"""

import logging
import threading
import uuid
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Deque, List, Optional

from errorlog.models.error import ErrorRecord, ensure_utc, utcnow
from stores.base import DEFAULT_BACKUP_QUEUE_SIZE


logger = logging.getLogger(__name__)


class EnqueueResult(str, Enum):
    """Outcome of adding a record to the backup queue."""
    QUEUED = "queued"
    MERGED = "merged"
    DROPPED = "dropped"


class BackupQueue:
    """
    Thread-safe FIFO of error records with rollup-by-hash.

    Supports many concurrent producers, a single draining consumer and
    ``clear()`` from any thread.
    """

    def __init__(self, capacity: int = DEFAULT_BACKUP_QUEUE_SIZE):
        """
        Initialize the queue.

        Args:
            capacity: Maximum number of distinct records held
        """
        self.capacity = capacity if capacity > 0 else DEFAULT_BACKUP_QUEUE_SIZE
        self._items: Deque[ErrorRecord] = deque()
        self._lock = threading.Lock()

    def enqueue(self, record: ErrorRecord) -> EnqueueResult:
        """
        Add a record, rolling it up into a queued record with the same hash.

        Every queued record is a rollup target regardless of age. On a merge
        the incoming record takes the identity of the queued one and its
        duplicate count is added to the queued record's.

        Args:
            record: Record to queue

        Returns:
            Whether the record was queued, merged or dropped
        """
        with self._lock:
            for queued in self._items:
                if queued.error_hash == record.error_hash:
                    record.id = queued.id
                    queued.duplicate_count += record.duplicate_count
                    queued.last_log_date = utcnow()
                    return EnqueueResult.MERGED

            if len(self._items) < self.capacity:
                self._items.append(record)
                return EnqueueResult.QUEUED

        logger.debug(
            f"Backup queue full ({self.capacity}), dropping error {record.id}",
            extra={"error_id": str(record.id), "error_hash": record.error_hash}
        )
        return EnqueueResult.DROPPED

    def dequeue(self) -> Optional[ErrorRecord]:
        """Pop the oldest record, or None if the queue is empty."""
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def clear(self) -> int:
        """
        Discard every queued record.

        Returns:
            Number of records discarded
        """
        with self._lock:
            discarded = len(self._items)
            self._items.clear()
        return discarded

    def find(self, error_id: uuid.UUID) -> Optional[ErrorRecord]:
        """Find a queued record by identity."""
        with self._lock:
            return next((e for e in self._items if e.id == error_id), None)

    def snapshot(
        self,
        application_name: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[ErrorRecord]:
        """
        Copy of the queued records in FIFO order.

        Args:
            application_name: Only include records of this application
            since: Only include records created at or after this time
        """
        since = ensure_utc(since)
        with self._lock:
            return [
                e for e in self._items
                if (application_name is None or e.application_name == application_name)
                and (since is None or e.creation_date >= since)
            ]

    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
