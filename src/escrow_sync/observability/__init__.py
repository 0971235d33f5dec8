"""Observability helpers: span timing and health reports."""

from .tracing import Span, traced

__all__ = [
    "Span",
    "traced",
]
