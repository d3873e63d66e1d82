"""Observability helpers."""

from storylink.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cache_lookup,
    record_parser_failure,
    record_push,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cache_lookup",
    "record_parser_failure",
    "record_push",
]
