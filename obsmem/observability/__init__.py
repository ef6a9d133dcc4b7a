"""Observability helpers."""

from obsmem.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cycle,
    record_skipped_lines,
    record_pass,
    record_lock_wait,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cycle",
    "record_skipped_lines",
    "record_pass",
    "record_lock_wait",
]
