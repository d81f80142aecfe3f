"""Error record data models."""

import hashlib
import socket
import traceback
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field


# Reserved custom data key used when a hook fails while populating a record
CUSTOM_DATA_ERROR_KEY = "CustomDataFetchError"

EXCEPTION_NOTE_KEY = "ExceptionNote"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so they compare with stored dates."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def full_type_name(cls: type) -> str:
    """Return the fully-qualified name of a class, e.g. 'builtins.KeyError'."""
    return f"{cls.__module__}.{cls.__qualname__}"


class ErrorRecord(BaseModel):
    """A single logged exception, as stored by backends and the backup queue."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    application_name: Optional[str] = None
    machine_name: str = Field(default_factory=socket.gethostname)
    creation_date: datetime = Field(default_factory=utcnow)
    last_log_date: Optional[datetime] = None
    type: str = ""
    full_type: str = ""
    message: str = ""
    source: Optional[str] = None
    detail: str = ""
    error_hash: str = ""
    duplicate_count: int = 1
    is_duplicate: bool = False
    is_protected: bool = False
    rollup_per_server: bool = False
    custom_data: Dict[str, str] = {}
    ip_address: Optional[str] = None
    form: Dict[str, str] = {}
    cookies: Dict[str, str] = {}

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        application_name: Optional[str] = None,
        machine_name: Optional[str] = None,
        rollup_per_server: bool = False,
    ) -> "ErrorRecord":
        """
        Build a record from a live exception.

        Args:
            exc: Exception to record
            application_name: Application the error belongs to
            machine_name: Overrides the local host name
            rollup_per_server: Whether the machine name takes part in the hash

        Returns:
            New ErrorRecord with its hash computed
        """
        exc_type = type(exc)
        fields = {
            "application_name": application_name,
            "type": exc_type.__name__,
            "full_type": full_type_name(exc_type),
            "message": str(exc),
            "source": _source_module(exc),
            "detail": "".join(
                traceback.format_exception(exc_type, exc, exc.__traceback__)
            ),
            "rollup_per_server": rollup_per_server,
        }
        if machine_name:
            fields["machine_name"] = machine_name

        record = cls(**fields)
        record.error_hash = record.compute_hash()
        return record

    def compute_hash(self) -> str:
        """
        Fingerprint used for rollup matching.

        Built from the type, message and detail (stack trace), plus the
        machine name when errors roll up per server.
        """
        digest = hashlib.sha1()
        for part in (self.full_type, self.message, self.detail):
            digest.update(part.encode("utf-8", "replace"))
            digest.update(b"\0")
        if self.rollup_per_server:
            digest.update(self.machine_name.encode("utf-8", "replace"))
        return digest.hexdigest()

    def append_full_trace(self, trace: str) -> None:
        """Append the caller's full stack to the detail and rehash."""
        if not trace:
            return
        self.detail += "\n\nFull Trace:\n\n" + trace
        self.error_hash = self.compute_hash()

    def add_custom_data(self, key: str, value: str) -> str:
        """
        Append a custom data entry without overwriting an existing one.

        Returns:
            The key the value was stored under
        """
        candidate = key
        suffix = 2
        while candidate in self.custom_data:
            candidate = f"{key} ({suffix})"
            suffix += 1
        self.custom_data[candidate] = str(value)
        return candidate

    def add_from_exception_chain(self, exc: BaseException) -> None:
        """Copy ``__notes__`` of the exception and its causes into custom data."""
        seen = set()
        cursor: Optional[BaseException] = exc
        while cursor is not None and id(cursor) not in seen:
            seen.add(id(cursor))
            for note in getattr(cursor, "__notes__", None) or ():
                self.add_custom_data(EXCEPTION_NOTE_KEY, note)
            cursor = cursor.__cause__ or cursor.__context__

    def apply_log_filters(
        self,
        form_filters: Optional[Dict[str, str]] = None,
        cookie_filters: Optional[Dict[str, str]] = None,
    ) -> None:
        """Replace sensitive form and cookie values before the record is stored."""
        for name, replacement in (form_filters or {}).items():
            if name in self.form:
                self.form[name] = replacement
        for name, replacement in (cookie_filters or {}).items():
            if name in self.cookies:
                self.cookies[name] = replacement


def _source_module(exc: BaseException) -> Optional[str]:
    """Module name of the frame that raised the exception."""
    tb = exc.__traceback__
    if tb is None:
        return None
    while tb.tb_next is not None:
        tb = tb.tb_next
    return tb.tb_frame.f_globals.get("__name__")
