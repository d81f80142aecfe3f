"""Data models for the error log."""

from .error import (
    CUSTOM_DATA_ERROR_KEY,
    EXCEPTION_NOTE_KEY,
    ErrorRecord,
    ensure_utc,
    full_type_name,
    utcnow,
)
from .events import AfterLogEvent, BeforeLogEvent

__all__ = [
    # Error models
    "ErrorRecord",
    "ensure_utc",
    "CUSTOM_DATA_ERROR_KEY",
    "EXCEPTION_NOTE_KEY",
    "full_type_name",
    "utcnow",
    # Hook event models
    "BeforeLogEvent",
    "AfterLogEvent",
]
