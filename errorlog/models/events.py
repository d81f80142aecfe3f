"""Hook event data models."""

from pydantic import BaseModel

from .error import ErrorRecord


class BeforeLogEvent(BaseModel):
    """Passed to the before-log hook; setting ``abort`` suppresses logging."""

    record: ErrorRecord
    abort: bool = False


class AfterLogEvent(BaseModel):
    """Passed to the after-log hook once a record has been handed to the store."""

    record: ErrorRecord
