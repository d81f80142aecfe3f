"""
Ignore rules evaluated against an exception before it is logged.

Two rule sets are combined with OR:
- Regular expressions searched in the full formatted exception (type, message, stack)
- Fully-qualified type names matched against the exception class or any base class
"""

import logging
import re
import threading
import traceback
from typing import Iterable, List, Optional, Pattern, Tuple

from errorlog.models.error import full_type_name
from stores.base import StoreConfigurationError


logger = logging.getLogger(__name__)


def is_descendant_of(cls: type, type_name: str) -> bool:
    """
    True if ``cls`` or any class in its hierarchy has the given name.

    Names are fully-qualified (``module.QualName``); built-in exceptions
    also match their bare name, e.g. ``KeyError``.
    """
    for base in cls.__mro__:
        if full_type_name(base) == type_name:
            return True
        if base.__module__ == "builtins" and base.__qualname__ == type_name:
            return True
    return False


class IgnoreFilter:
    """
    Decides whether an exception must not be logged.

    The compiled rule lists are built lazily on first use and shared by all
    threads until ``invalidate()`` or ``update()`` is called.
    """

    def __init__(
        self,
        regexes: Optional[Iterable[str]] = None,
        types: Optional[Iterable[str]] = None
    ):
        """
        Initialize the filter.

        Args:
            regexes: Patterns searched in the formatted exception
            types: Fully-qualified exception type names
        """
        self._regex_patterns: List[str] = list(regexes or [])
        self._type_names: List[str] = list(types or [])
        self._cache: Optional[Tuple[List[Pattern[str]], List[str]]] = None
        self._lock = threading.Lock()

    def update(
        self,
        regexes: Optional[Iterable[str]] = None,
        types: Optional[Iterable[str]] = None
    ) -> None:
        """Replace the configured rules; omitted rule sets are left unchanged."""
        with self._lock:
            if regexes is not None:
                self._regex_patterns = list(regexes)
            if types is not None:
                self._type_names = list(types)
            self._cache = None

    def invalidate(self) -> None:
        """Drop the compiled rules so they are rebuilt on next use."""
        with self._lock:
            self._cache = None

    def _rules(self) -> Tuple[List[Pattern[str]], List[str]]:
        cache = self._cache
        if cache is not None:
            return cache

        with self._lock:
            if self._cache is None:
                try:
                    compiled = [re.compile(p) for p in self._regex_patterns]
                except re.error as e:
                    raise StoreConfigurationError(f"Invalid ignore regex: {e}") from e
                self._cache = (compiled, list(self._type_names))
                logger.debug(
                    f"Compiled ignore rules: {len(compiled)} regexes, "
                    f"{len(self._type_names)} types"
                )
            return self._cache

    def compile(self) -> None:
        """
        Build the rule cache now.

        Raises:
            StoreConfigurationError: If a pattern is not a valid regex
        """
        self._rules()

    @property
    def regexes(self) -> List[Pattern[str]]:
        return self._rules()[0]

    @property
    def types(self) -> List[str]:
        return self._rules()[1]

    def should_ignore(self, exc: BaseException) -> bool:
        """
        Evaluate the ignore rules.

        Args:
            exc: Exception about to be logged

        Returns:
            True if the exception must not be logged
        """
        regexes, type_names = self._rules()

        if regexes:
            text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            if any(regex.search(text) for regex in regexes):
                return True

        exc_type = type(exc)
        return any(is_descendant_of(exc_type, name) for name in type_names)
