"""Timing spans around ledger reads and dispatches, keyed by escrow address."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Iterator

from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


@dataclass
class Span:
    escrow: str
    name: str
    start: float = field(default_factory=perf_counter)
    attrs: dict[str, Any] = field(default_factory=dict)

    def set(self, **attrs: Any) -> None:
        self.attrs.update(attrs)

    @property
    def elapsed_ms(self) -> int:
        return int((perf_counter() - self.start) * 1000)


@contextmanager
def traced(escrow: str, name: str, **attrs: Any) -> Iterator[Span]:
    """Log one ``trace.span`` record when the block exits, with its outcome."""
    span = Span(escrow=escrow, name=name, attrs=dict(attrs))
    try:
        yield span
    except Exception as exc:
        logger.warning(
            "trace.span",
            escrow=span.escrow,
            span=span.name,
            duration_ms=span.elapsed_ms,
            outcome="error",
            error_kind=type(exc).__name__,
            **span.attrs,
        )
        raise
    logger.info(
        "trace.span",
        escrow=span.escrow,
        span=span.name,
        duration_ms=span.elapsed_ms,
        outcome="ok",
        **span.attrs,
    )
