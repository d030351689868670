"""Observability helpers: structured logging, in-process metrics and health checks."""

from .logging_config import configure_logging, ensure_request_id
from .metrics import (
    get_counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
    set_gauge,
    timed,
)
from .health import check_database_health, check_integrations

__all__ = [
    "configure_logging",
    "ensure_request_id",
    "increment_counter",
    "set_gauge",
    "observe_latency",
    "timed",
    "record_event",
    "get_counter_value",
    "get_metrics_snapshot",
    "reset_metrics",
    "check_database_health",
    "check_integrations",
]
