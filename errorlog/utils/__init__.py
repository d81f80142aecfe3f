"""
Utility modules for the error log.
"""

from errorlog.utils.logging import (
    get_logger,
    setup_logging,
    log_mode_transition,
    log_store_failure,
    log_error_with_context,
)
from errorlog.utils.metrics import (
    StoreMetrics,
    emit_metric,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "log_mode_transition",
    "log_store_failure",
    "log_error_with_context",
    "StoreMetrics",
    "emit_metric",
]
