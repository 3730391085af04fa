"""
AWOC — Correlation Context
============================
Context variable carrying the correlation ID of the unit of work currently
being processed (a receipt, a task run, an inbound channel request).

Usage:
    from awoc.core.correlation import bind_correlation_id

    with bind_correlation_id(str(task.id)):
        await run(task)
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator

correlation_id_ctx: ContextVar[str | None] = ContextVar(
    "correlation_id", default=None
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def bind_correlation_id(
    correlation_id: str | None = None,
) -> Generator[str, None, None]:
    """Set the correlation ID for the enclosed block and restore it on exit."""
    cid = correlation_id or new_correlation_id()
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)
