# metrics_logger.py
# Description: Structured metric logging for sync cycles, routed through loguru's METRIC level.
#
# Imports
import asyncio
import functools
import time
from datetime import datetime, timezone
from typing import Any, Optional, Dict, Union, Callable
#
# Third-party Imports
from loguru import logger
#
# Local Imports
#
############################################################################################################
#
# Functions:

LabelValue = Union[str, int, float, bool]
LabelDict = Dict[str, LabelValue]

# Separate level so a sink can capture metrics only (level="METRIC", serialize=True).
try:
    logger.level("METRIC")
except ValueError:
    logger.level("METRIC", no=25, color="<blue>")


def _log_metric(
        metric_name: str,
        metric_type: str,
        value: Any,
        labels: Optional[LabelDict] = None,
):
    """
    Private helper to log a structured metric using loguru binding.
    """
    bound_logger = logger.bind(
        event=metric_name,
        type=metric_type,
        value=value,
        labels=labels or {},
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    bound_logger.log("METRIC", f"{metric_type.capitalize()} '{metric_name}': {value}")


def timeit(
        metric_name: Optional[str] = None,
        labels: Optional[LabelDict] = None,
        log_summary: bool = False,
):
    """
    Times a sync or async function, logging a histogram tagged with the call status.

    Args:
        metric_name (str, optional): Custom name for the metric. Defaults to `<func>_duration_seconds`.
        labels (dict, optional): Extra labels to add to the metric.
        log_summary (bool): If True, logs a human-readable summary at INFO level.
    """

    def decorator(func: Callable) -> Callable:
        m_name = metric_name or f"{func.__name__}_duration_seconds"
        all_labels = {"function": func.__name__, **(labels or {})}

        def _finish(start_time: float, status: str):
            elapsed_time = time.perf_counter() - start_time
            _log_metric(m_name, "histogram", elapsed_time, {**all_labels, "status": status})
            if log_summary:
                logger.info(f"Function '{func.__name__}' finished in {elapsed_time:.4f}s with status '{status}'.")

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.perf_counter()
                status = "success"
                try:
                    return await func(*args, **kwargs)
                except BaseException:
                    status = "failure"
                    raise
                finally:
                    _finish(start_time, status)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except BaseException:
                status = "failure"
                raise
            finally:
                _finish(start_time, status)
        return wrapper

    return decorator


class MetricsLogger:
    """
    Class-based API providing base labels to a group of metrics (e.g. one per component).
    """

    def __init__(self, base_labels: Optional[LabelDict] = None):
        self._base_labels = base_labels or {}

    def _get_labels(self, labels: Optional[LabelDict]) -> LabelDict:
        """Merge instance labels with call-specific labels."""
        final_labels = self._base_labels.copy()
        if labels:
            final_labels.update(labels)
        return final_labels

    def log_counter(self, name: str, value: int = 1, labels: Optional[LabelDict] = None):
        _log_metric(name, "counter", value, self._get_labels(labels))

    def log_gauge(self, name: str, value: float, labels: Optional[LabelDict] = None):
        _log_metric(name, "gauge", value, self._get_labels(labels))

    def log_histogram(self, name: str, value: float, labels: Optional[LabelDict] = None):
        _log_metric(name, "histogram", value, self._get_labels(labels))

    def log_sync_stats(self, phase: str, stats: Any, labels: Optional[LabelDict] = None):
        """Logs success/conflict/error/deferred counters for one push phase (`stats` is a SyncStats)."""
        phase_labels = {"phase": phase, **(labels or {})}
        for field_name in ("success", "conflicts", "errors", "deferred"):
            count = getattr(stats, field_name, 0)
            if count:
                self.log_counter(f"sync_{phase}_{field_name}_total", count, phase_labels)


# For convenience, a default instance for simple, one-off logging
default_metrics = MetricsLogger()
log_counter = default_metrics.log_counter
log_gauge = default_metrics.log_gauge
log_histogram = default_metrics.log_histogram

#
# End of metrics_logger.py
############################################################################################################
