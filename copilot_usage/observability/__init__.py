"""Observability helpers."""

from copilot_usage.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_scan,
    record_parser_failure,
    record_watch_event,
    record_ingest,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_scan",
    "record_parser_failure",
    "record_watch_event",
    "record_ingest",
]
