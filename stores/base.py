"""
Base interface for error store backends.

This module defines the abstract base class that every backend must implement
to persist, roll up and retrieve error records, along with the settings that
are handed to a backend when it is constructed.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from pydantic import BaseModel

from errorlog.models.error import ErrorRecord


logger = logging.getLogger(__name__)

DEFAULT_BACKUP_QUEUE_SIZE = 1000
DEFAULT_ROLLUP_SECONDS = 600
DEFAULT_STORE_SIZE = 200
DEFAULT_STORE_TYPE = "Memory"

# Hash prefix of the throwaway records written by health checks
HEALTH_CHECK_HASH_PREFIX = "health-check:"


def is_health_check(record: ErrorRecord) -> bool:
    """Whether a record is a health-check record rather than a real error."""
    return record.error_hash.startswith(HEALTH_CHECK_HASH_PREFIX)


class StoreFailure(Exception):
    """Raised by a backend when it is unavailable."""
    pass


class StoreConfigurationError(Exception):
    """Raised when the configured store or log settings are invalid."""
    pass


class StoreSettings(BaseModel):
    """Settings used to resolve and construct a backend."""

    type: str = DEFAULT_STORE_TYPE
    size: int = DEFAULT_STORE_SIZE
    rollup_seconds: int = DEFAULT_ROLLUP_SECONDS
    backup_queue_size: int = DEFAULT_BACKUP_QUEUE_SIZE
    connection_string: Optional[str] = None


class StoreContract(ABC):
    """
    Base interface for error store backends.

    All operations may raise StoreFailure, which callers interpret as
    "backend unavailable". Store operations are never enrolled in any
    transaction the caller may have open.
    """

    def __init__(self, settings: Optional[StoreSettings] = None):
        """
        Initialize common store properties.

        Args:
            settings: Store settings; defaults are used when omitted
        """
        settings = settings or StoreSettings()
        self.settings = settings
        self.rollup_threshold: Optional[timedelta] = (
            timedelta(seconds=settings.rollup_seconds)
            if settings.rollup_seconds > 0
            else None
        )
        self.backup_queue_size = (
            settings.backup_queue_size
            if settings.backup_queue_size > 0
            else DEFAULT_BACKUP_QUEUE_SIZE
        )

    @property
    def name(self) -> str:
        """Name of this store implementation."""
        return type(self).__name__

    @abstractmethod
    def write(self, record: ErrorRecord) -> uuid.UUID:
        """
        Persist a record, or roll it up into an existing one.

        If a non-protected record with the same hash was written within the
        rollup window, its duplicate count is incremented and its identity is
        returned instead of storing a new record.

        Args:
            record: Record to persist

        Returns:
            Identity of the record as persisted

        Raises:
            StoreFailure: If the backend is unavailable
        """
        pass

    @abstractmethod
    def fetch(self, error_id: uuid.UUID) -> Optional[ErrorRecord]:
        """Retrieve a single record, or None if it does not exist."""
        pass

    @abstractmethod
    def protect(self, error_id: uuid.UUID) -> bool:
        """Mark a record as protected from deletion."""
        pass

    @abstractmethod
    def delete(self, error_id: uuid.UUID) -> bool:
        """Delete a record unless it is protected."""
        pass

    @abstractmethod
    def delete_all(self, application_name: Optional[str] = None) -> bool:
        """
        Delete all non-protected records.

        Args:
            application_name: Restrict the deletion to one application
        """
        pass

    @abstractmethod
    def list_all(self, application_name: Optional[str] = None) -> List[ErrorRecord]:
        """Retrieve all records, newest first."""
        pass

    @abstractmethod
    def count(
        self,
        since: Optional[datetime] = None,
        application_name: Optional[str] = None
    ) -> int:
        """
        Count records.

        Args:
            since: Only count records created at or after this time
            application_name: Only count records of this application
        """
        pass

    def hard_delete(self, error_id: uuid.UUID) -> bool:
        """Delete a record irrespective of protection."""
        return self.delete(error_id)

    def protect_many(self, error_ids: Iterable[uuid.UUID]) -> bool:
        """Protect several records; True only if every one succeeded."""
        success = True
        for error_id in error_ids:
            if not self.protect(error_id):
                success = False
        return success

    def delete_many(self, error_ids: Iterable[uuid.UUID]) -> bool:
        """Delete several records; True only if every one succeeded."""
        success = True
        for error_id in error_ids:
            if not self.delete(error_id):
                success = False
        return success

    def health_check(self) -> bool:
        """
        Test whether this store is working.

        Writes a throwaway record and hard-deletes it again. Backends must
        not trim real records to make room for it, see
        ``is_health_check``.

        Returns:
            True if the round trip succeeded, False otherwise (never raises)
        """
        try:
            record = ErrorRecord.from_exception(Exception("Test Exception"))
            # Unique hash so it never rolls up into a real record
            record.error_hash = f"{HEALTH_CHECK_HASH_PREFIX}{record.id}"
            persisted_id = self.write(record)
            self.hard_delete(persisted_id)
            return True
        except Exception as e:
            logger.debug(f"Health check failed for {self.name}: {e}")
            return False
