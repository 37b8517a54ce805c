"""Observability helpers."""

from foundry.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cascade,
    record_bulk_create,
    record_tree_io,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cascade",
    "record_bulk_create",
    "record_tree_io",
]
