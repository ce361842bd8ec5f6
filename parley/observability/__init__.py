"""Observability module for metrics."""

from parley.observability.metrics import (
    ACTIVE_SESSIONS,
    BACKEND_TIMEOUTS,
    BARGE_IN_TOTAL,
    PIPELINE_ERRORS,
    SESSION_TOTAL,
    record_backend_timeout,
    record_pipeline_error,
    record_session_metrics,
    record_tool_invocation,
)

__all__ = [
    "SESSION_TOTAL",
    "PIPELINE_ERRORS",
    "BACKEND_TIMEOUTS",
    "BARGE_IN_TOTAL",
    "ACTIVE_SESSIONS",
    "record_session_metrics",
    "record_pipeline_error",
    "record_backend_timeout",
    "record_tool_invocation",
]
