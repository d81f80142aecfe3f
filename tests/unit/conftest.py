"""Shared fixtures for error log unit tests."""

import threading
import time
from typing import Callable

import pytest

from errorlog.models.error import ErrorRecord
from stores.base import StoreFailure, StoreSettings
from stores.memory import MemoryStore


class FlakyStore(MemoryStore):
    """In-memory store whose writes can be switched to fail."""

    def __init__(self, settings: StoreSettings = None, fail_writes: int = 0):
        super().__init__(settings or StoreSettings(size=500))
        self.down = False
        self.fail_writes = fail_writes
        self.write_calls = 0
        self._calls_lock = threading.Lock()

    def write(self, record: ErrorRecord):
        with self._calls_lock:
            self.write_calls += 1
            if self.down:
                raise StoreFailure("store is down")
            if self.fail_writes > 0:
                self.fail_writes -= 1
                raise StoreFailure("transient write failure")
        return super().write(record)

    def _check(self):
        if self.down:
            raise StoreFailure("store is down")

    def fetch(self, error_id):
        self._check()
        return super().fetch(error_id)

    def protect(self, error_id):
        self._check()
        return super().protect(error_id)

    def delete(self, error_id):
        self._check()
        return super().delete(error_id)

    def delete_all(self, application_name=None):
        self._check()
        return super().delete_all(application_name)

    def list_all(self, application_name=None):
        self._check()
        return super().list_all(application_name)

    def count(self, since=None, application_name=None):
        self._check()
        return super().count(since, application_name)


def make_error(message: str = "boom", exc_type: type = ValueError) -> BaseException:
    """Raise and catch an exception so it carries a traceback."""
    try:
        raise exc_type(message)
    except BaseException as e:
        return e


@pytest.fixture
def flaky_store() -> FlakyStore:
    """Store that works until ``down`` is set."""
    return FlakyStore()


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout expires."""
    def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait_for
