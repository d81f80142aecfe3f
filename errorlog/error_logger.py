"""
Error logger, the entry point applications use to log exceptions.

Builds an ErrorRecord from an exception (ignore rules, hooks, log filters)
and hands it to the RetryCoordinator in front of the configured store. The
administrative operations (protect, delete, get, count) go through the same
coordinator so they keep working, in a reduced form, during a store outage.
"""

import threading
import traceback
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from errorlog.config import Settings
from errorlog.models.error import CUSTOM_DATA_ERROR_KEY, ErrorRecord
from errorlog.models.events import AfterLogEvent, BeforeLogEvent
from errorlog.services.ignore_filter import IgnoreFilter
from errorlog.utils.logging import get_logger, log_error_with_context, setup_logging
from errorlog.utils.metrics import StoreMetrics
from errorlog.utils.resilience import DEFAULT_RETRY_DELAY, FailureMode, RetryCoordinator
from stores.base import StoreContract
from stores.resolver import StoreResolver

logger = get_logger(__name__)

BeforeLogHook = Callable[[BeforeLogEvent], None]
AfterLogHook = Callable[[AfterLogEvent], None]
CustomDataHook = Callable[[BaseException, Dict[str, str]], None]
IPAddressHook = Callable[[], Optional[str]]


class ErrorLogger:
    """
    Logs exceptions to an error store and survives store outages.

    Hooks (all optional, assign as attributes):
    - on_before_log(event): may set ``event.abort = True`` to suppress logging
    - on_after_log(event): notified once the record was handed to the store
    - get_custom_data(exc, data): fills custom data when the caller passes none
    - get_ip_address(): client address of the current request

    Hook failures never stop the exception from being logged; custom data and
    IP address failures are recorded under CUSTOM_DATA_ERROR_KEY.
    """

    def __init__(
        self,
        store: Optional[StoreContract] = None,
        application_name: Optional[str] = None,
        ignore_filter: Optional[IgnoreFilter] = None,
        form_filters: Optional[Dict[str, str]] = None,
        cookie_filters: Optional[Dict[str, str]] = None,
        enable_logging: bool = True,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        backup_queue_size: Optional[int] = None
    ):
        """
        Initialize the error logger.

        Args:
            store: Backend to log to; the in-memory store if omitted
            application_name: Default application name for records
            ignore_filter: Rules for exceptions that must not be logged
            form_filters: Form values replaced before storing (name -> replacement)
            cookie_filters: Cookie values replaced before storing
            enable_logging: Global logging switch
            retry_delay: Seconds between store health checks during an outage
            backup_queue_size: Backup queue capacity (defaults to the store's)

        Raises:
            StoreConfigurationError: If an ignore pattern is not a valid regex
        """
        self.store = store or StoreResolver().resolve(None)
        self.application_name = application_name
        self.ignore_filter = ignore_filter or IgnoreFilter()
        self.form_filters = dict(form_filters or {})
        self.cookie_filters = dict(cookie_filters or {})
        self.enabled = enable_logging

        self.metrics = StoreMetrics(self.store.name)
        self.coordinator = RetryCoordinator(
            self.store,
            backup_queue_size=backup_queue_size,
            retry_delay=retry_delay,
            metrics=self.metrics
        )

        self.on_before_log: Optional[BeforeLogHook] = None
        self.on_after_log: Optional[AfterLogHook] = None
        self.get_custom_data: Optional[CustomDataHook] = None
        self.get_ip_address: Optional[IPAddressHook] = None

        # Bad ignore patterns fail here rather than on the first log call
        self.ignore_filter.compile()

        logger.info(
            f"Error logger initialized with {self.store.name}",
            extra={"store": self.store.name, "application_name": application_name}
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        resolver: Optional[StoreResolver] = None,
        configure_logging: bool = True
    ) -> "ErrorLogger":
        """
        Build an error logger from application settings.

        Args:
            settings: Application settings; the global instance if omitted
            resolver: Store resolver; one over the default registry if omitted
            configure_logging: Install the JSON log handler at settings.log_level

        Raises:
            StoreConfigurationError: If the configured store cannot be resolved
        """
        if settings is None:
            from errorlog.config import settings as default_settings
            settings = default_settings

        if configure_logging:
            setup_logging(settings.log_level)

        resolver = resolver or StoreResolver()
        store = resolver.resolve(settings.store_settings())

        return cls(
            store=store,
            application_name=settings.application_name,
            ignore_filter=IgnoreFilter(settings.ignore_regexes, settings.ignore_types),
            form_filters=settings.form_filters,
            cookie_filters=settings.cookie_filters,
            enable_logging=settings.enable_logging,
            retry_delay=settings.retry_delay_seconds,
            backup_queue_size=settings.backup_queue_size
        )

    # ========== Diagnostics ==========

    @property
    def in_failure_mode(self) -> bool:
        return self.coordinator.in_failure_mode

    @property
    def mode(self) -> FailureMode:
        return self.coordinator.mode

    @property
    def last_retry_error(self) -> Optional[BaseException]:
        return self.coordinator.last_retry_error

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the background flush thread."""
        self.coordinator.shutdown(timeout)

    # ========== Logging ==========

    def log(
        self,
        exc: BaseException,
        append_full_stack_trace: bool = False,
        rollup_per_server: bool = False,
        custom_data: Optional[Dict[str, str]] = None,
        application_name: Optional[str] = None,
        set_properties: Optional[Callable[[ErrorRecord], None]] = None
    ) -> Optional[ErrorRecord]:
        """
        Log an exception.

        Args:
            exc: Exception to log
            append_full_stack_trace: Append the caller's full stack to the detail
            rollup_per_server: Only roll up duplicates from the same machine
            custom_data: Extra key/value data, e.g. a user id
            application_name: Overrides the configured application name
            set_properties: Called with the new record, e.g. to copy request
                form values and cookies onto it

        Returns:
            The logged record, or None if nothing was logged (disabled,
            ignored, aborted by a hook, or an internal failure)
        """
        if not self.enabled:
            return None

        try:
            if self.ignore_filter.should_ignore(exc):
                self.metrics.increment("ignored")
                return None

            custom_data_error = None
            if custom_data is None and self.get_custom_data is not None:
                custom_data = {}
                try:
                    self.get_custom_data(exc, custom_data)
                except Exception as e:
                    custom_data_error = "".join(
                        traceback.format_exception(type(e), e, e.__traceback__)
                    )

            record = ErrorRecord.from_exception(
                exc,
                application_name=application_name or self.application_name,
                rollup_per_server=rollup_per_server
            )
            for key, value in (custom_data or {}).items():
                record.add_custom_data(key, value)
            if custom_data_error is not None:
                record.add_custom_data(CUSTOM_DATA_ERROR_KEY, custom_data_error)

            if set_properties is not None:
                set_properties(record)

            record.apply_log_filters(self.form_filters, self.cookie_filters)

            if self.get_ip_address is not None:
                try:
                    record.ip_address = self.get_ip_address()
                except Exception as e:
                    record.add_custom_data(CUSTOM_DATA_ERROR_KEY, f"Fetching IP Address: {e!r}")

            record.add_from_exception_chain(exc)

            if append_full_stack_trace:
                # Drop this frame
                record.append_full_trace("".join(traceback.format_stack()[:-1]))

            if self.on_before_log is not None:
                event = BeforeLogEvent(record=record)
                try:
                    self.on_before_log(event)
                except Exception as e:
                    logger.warning(f"Before-log hook failed: {e}", exc_info=True)
                if event.abort:
                    self.metrics.increment("aborted")
                    return None

            logger.debug(
                f"Logging {record.type}: {record.message}",
                extra={"error_id": str(record.id), "error_hash": record.error_hash}
            )
            self.coordinator.log(record)
            self.metrics.increment("logged")

            if self.on_after_log is not None:
                try:
                    self.on_after_log(AfterLogEvent(record=record))
                except Exception as e:
                    logger.warning(f"After-log hook failed: {e}", exc_info=True)

            return record

        except Exception as e:
            log_error_with_context(
                logger,
                "Failed to log exception",
                e,
                original_error_type=type(exc).__name__
            )
            return None

    # ========== Administration ==========

    def protect(self, error_id: uuid.UUID) -> bool:
        """Protect an error from deletion."""
        return self.coordinator.protect(error_id)

    def protect_many(self, error_ids: Iterable[uuid.UUID]) -> bool:
        return self.coordinator.protect_many(error_ids)

    def delete(self, error_id: uuid.UUID) -> bool:
        """Delete a non-protected error."""
        return self.coordinator.delete(error_id)

    def delete_many(self, error_ids: Iterable[uuid.UUID]) -> bool:
        return self.coordinator.delete_many(error_ids)

    def delete_all(self, application_name: Optional[str] = None) -> bool:
        """Delete all non-protected errors, or clear the backup queue during an outage."""
        return self.coordinator.delete_all(application_name)

    def get(self, error_id: uuid.UUID) -> Optional[ErrorRecord]:
        return self.coordinator.get(error_id)

    def get_all(self, application_name: Optional[str] = None) -> Tuple[List[ErrorRecord], int]:
        """All errors, served from the backup queue during an outage."""
        return self.coordinator.get_all(application_name)

    def get_count(
        self,
        since: Optional[datetime] = None,
        application_name: Optional[str] = None
    ) -> int:
        return self.coordinator.get_count(since, application_name)

    def test(self) -> bool:
        """Health-check the store."""
        return self.coordinator.test()


_default_logger: Optional[ErrorLogger] = None
_default_lock = threading.Lock()


def get_error_logger() -> ErrorLogger:
    """
    Get the process-wide error logger, building it from settings on first use.

    Raises:
        StoreConfigurationError: If the configured store cannot be resolved
    """
    global _default_logger
    with _default_lock:
        if _default_logger is None:
            _default_logger = ErrorLogger.from_settings()
        return _default_logger


def setup(application_name: Optional[str], store: StoreContract, **kwargs) -> ErrorLogger:
    """
    Replace the process-wide error logger.

    Example:
        setup("Billing", RedisStore(StoreSettings(type="Redis")))
    """
    global _default_logger
    with _default_lock:
        if _default_logger is not None:
            _default_logger.shutdown(timeout=0)
        _default_logger = ErrorLogger(store=store, application_name=application_name, **kwargs)
        return _default_logger
