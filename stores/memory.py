"""
In-memory error store.

Keeps the most recent ``size`` records in process memory. Nothing is
persisted; this is the store used when no backend is configured.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import List, Optional

from errorlog.models.error import ErrorRecord, ensure_utc, utcnow
from stores.base import StoreContract, StoreSettings, is_health_check


logger = logging.getLogger(__name__)


class MemoryStore(StoreContract):
    """Bounded, lock-guarded list of the most recent error records."""

    def __init__(self, settings: Optional[StoreSettings] = None):
        super().__init__(settings)
        self.size = self.settings.size
        self._errors: List[ErrorRecord] = []
        self._lock = threading.Lock()

    def write(self, record: ErrorRecord) -> uuid.UUID:
        with self._lock:
            duplicate = self._find_rollup_target(record)
            if duplicate is not None:
                duplicate.duplicate_count += record.duplicate_count
                duplicate.last_log_date = utcnow()
                logger.debug(
                    f"Rolled up error {record.id} into {duplicate.id} "
                    f"(count={duplicate.duplicate_count})"
                )
                return duplicate.id

            self._errors.append(record)
            self._trim()
            return record.id

    def _find_rollup_target(self, record: ErrorRecord) -> Optional[ErrorRecord]:
        if self.rollup_threshold is None:
            return None
        cutoff = utcnow() - self.rollup_threshold
        for existing in self._errors:
            if (
                existing.error_hash == record.error_hash
                and not existing.is_protected
                and existing.creation_date >= cutoff
            ):
                return existing
        return None

    def _trim(self) -> None:
        # Oldest non-protected records go first; health-check records don't count
        errors = [e for e in self._errors if not is_health_check(e)]
        overflow = len(errors) - self.size
        if overflow <= 0:
            return

        victims = [e for e in errors if not e.is_protected][:overflow]
        if len(victims) < overflow:
            victims += [e for e in errors if e.is_protected][:overflow - len(victims)]
        for victim in victims:
            self._errors.remove(victim)

    def fetch(self, error_id: uuid.UUID) -> Optional[ErrorRecord]:
        with self._lock:
            return next((e for e in self._errors if e.id == error_id), None)

    def protect(self, error_id: uuid.UUID) -> bool:
        with self._lock:
            for error in self._errors:
                if error.id == error_id:
                    error.is_protected = True
                    return True
        return False

    def delete(self, error_id: uuid.UUID) -> bool:
        with self._lock:
            for error in self._errors:
                if error.id == error_id and not error.is_protected:
                    self._errors.remove(error)
                    return True
        return False

    def hard_delete(self, error_id: uuid.UUID) -> bool:
        with self._lock:
            before = len(self._errors)
            self._errors = [e for e in self._errors if e.id != error_id]
            return len(self._errors) != before

    def delete_all(self, application_name: Optional[str] = None) -> bool:
        with self._lock:
            self._errors = [
                e for e in self._errors
                if e.is_protected
                or (application_name is not None and e.application_name != application_name)
            ]
        return True

    def list_all(self, application_name: Optional[str] = None) -> List[ErrorRecord]:
        with self._lock:
            errors = [
                e for e in self._errors
                if application_name is None or e.application_name == application_name
            ]
        return list(reversed(errors))

    def count(
        self,
        since: Optional[datetime] = None,
        application_name: Optional[str] = None
    ) -> int:
        since = ensure_utc(since)
        with self._lock:
            return sum(
                1 for e in self._errors
                if (since is None or e.creation_date >= since)
                and (application_name is None or e.application_name == application_name)
            )
