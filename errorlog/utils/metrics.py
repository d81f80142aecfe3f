"""
Metrics collection and emission for observability.

This module provides metrics tracking for:
- Errors logged, ignored and aborted by hooks
- Store writes and backup queue activity (queued, rolled up, dropped, drained)
- Health checks and failure-mode transitions
"""

import threading
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from errorlog.utils.logging import get_logger

logger = get_logger(__name__)

COUNTERS = (
    "logged",
    "ignored",
    "aborted",
    "written",
    "queued",
    "rolled_up",
    "dropped",
    "drained",
    "requeued",
    "health_checks_passed",
    "health_checks_failed",
    "mode_transitions",
)


class StoreMetrics:
    """
    Collects metrics for one error logger and its store.

    Counters are updated from request threads and the flush thread, so
    every update happens under a lock.
    """

    def __init__(self, store_name: str):
        """
        Initialize metrics collector.

        Args:
            store_name: Name of the store being tracked
        """
        self.store_name = store_name
        self.started_at = datetime.now(timezone.utc)
        self.last_failure_at: Optional[datetime] = None
        self.last_recovery_at: Optional[datetime] = None
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}
        self._lock = threading.Lock()

    def increment(self, counter: str, amount: int = 1) -> None:
        """
        Increment a counter.

        Args:
            counter: Counter name, one of COUNTERS
            amount: Increment
        """
        if counter not in self._counters:
            raise KeyError(f"Unknown metric counter: {counter}")
        with self._lock:
            self._counters[counter] += amount

    def get(self, counter: str) -> int:
        """Current value of a counter."""
        with self._lock:
            return self._counters[counter]

    def record_health_check(self, healthy: bool) -> None:
        """Record the outcome of a backend health check."""
        self.increment("health_checks_passed" if healthy else "health_checks_failed")

    def record_failure(self) -> None:
        """Record entry into failure mode."""
        with self._lock:
            self._counters["mode_transitions"] += 1
            self.last_failure_at = datetime.now(timezone.utc)

    def record_recovery(self) -> None:
        """Record return to normal mode."""
        with self._lock:
            self._counters["mode_transitions"] += 1
            self.last_recovery_at = datetime.now(timezone.utc)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """
        Get summary of collected metrics.

        Returns:
            Dictionary of metrics
        """
        with self._lock:
            summary: Dict[str, Any] = dict(self._counters)
            summary["store"] = self.store_name
            summary["started_at"] = self.started_at.isoformat()
            summary["last_failure_at"] = (
                self.last_failure_at.isoformat() if self.last_failure_at else None
            )
            summary["last_recovery_at"] = (
                self.last_recovery_at.isoformat() if self.last_recovery_at else None
            )
        return summary


def emit_metric(metric_name: str, value: float, **tags: Any) -> None:
    """
    Emit a metric as a structured log line.

    Args:
        metric_name: Metric name
        value: Metric value
        **tags: Metric tags/labels
    """
    logger.info(
        f"Metric: {metric_name}",
        extra={
            "metric_name": metric_name,
            "metric_value": value,
            "metric_tags": tags,
        }
    )
