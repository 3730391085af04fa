"""
AWOC — Tracing
================
Correlation ID propagation and timed spans for outbound calls
(container runtime, HTTP workers, worker channel requests).

Spans nest: a span opened while another is active records it as its
parent.  A span left by an exception records the error code.

Usage:
    from awoc.core.tracing import TracingContext, create_span

    with create_span("docker.create", image=image) as span:
        headers = TracingContext.current().inject_headers({})
        ...
    logger.info("docker.created", duration_ms=span.duration_ms)
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generator

from awoc.core.config import get_settings
from awoc.core.correlation import correlation_id_ctx

_active_span: ContextVar[Span | None] = ContextVar("awoc_active_span", default=None)


@dataclass
class Span:
    """One timed outbound operation."""

    name: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_id: str | None = None
    correlation_id: str | None = None
    started: float = field(default_factory=time.monotonic)
    ended: float | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float | None:
        """Milliseconds between open and close; ``None`` while open."""
        if self.ended is None:
            return None
        return round((self.ended - self.started) * 1000, 2)

    @property
    def failed(self) -> bool:
        return self.error_code is not None

    def close(self) -> None:
        if self.ended is None:
            self.ended = time.monotonic()


@dataclass(frozen=True)
class TracingContext:
    """Correlation ID of the current unit of work (receipt or task run)."""

    correlation_id: str | None = None

    @classmethod
    def current(cls) -> TracingContext:
        return cls(correlation_id=correlation_id_ctx.get(None))

    def inject_headers(self, headers: dict[str, str]) -> dict[str, str]:
        """
        Add the correlation header and ``X-Trace-Timestamp`` to an
        outgoing HTTP request's headers.
        """
        if self.correlation_id:
            headers[get_settings().correlation_id_header] = self.correlation_id
        headers["X-Trace-Timestamp"] = datetime.now(timezone.utc).isoformat()
        return headers


def active_span() -> Span | None:
    return _active_span.get()


@contextmanager
def create_span(name: str, **metadata: Any) -> Generator[Span, None, None]:
    """Open a span, make it the active one, and close it on exit."""
    parent = _active_span.get()
    span = Span(
        name=name,
        parent_id=parent.span_id if parent else None,
        correlation_id=correlation_id_ctx.get(None),
        metadata=metadata,
    )
    token = _active_span.set(span)
    try:
        yield span
    except BaseException as exc:
        span.error_code = getattr(exc, "code", None) or type(exc).__name__
        raise
    finally:
        span.close()
        _active_span.reset(token)
