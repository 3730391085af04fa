"""
AWOC — Dispatch Adapter Contract
==================================
Capability interface through which the orchestrator hands a task to its
executor.  One adapter per handler kind.

An adapter either returns a :class:`DispatchOutcome` or raises an
:class:`AWOCError`.  An outcome without a completion means the work was
accepted and its result arrives later through the completion sink.

Usage:
    adapter = ServerlessWorkerAdapter(pools, lifecycle)
    outcome = await adapter.run(task)
    if outcome.completion is not None:
        await lifecycle.complete_task(task.id, outcome.completion)
"""

from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from awoc.models.tasks import HandlerKind, Task, TaskCompletion

CompletionSink = Callable[[uuid.UUID, TaskCompletion], Awaitable[Any]]


@dataclass(frozen=True)
class DispatchOutcome:
    """What an adapter reports back for one task."""

    completion: TaskCompletion | None = None
    start_context: dict[str, Any] | None = None

    @property
    def pending(self) -> bool:
        """True when the result will be delivered asynchronously."""
        return self.completion is None


class DispatchAdapter(abc.ABC):
    """Executor for one handler kind."""

    kind: HandlerKind

    def __init__(self) -> None:
        self._completion_sink: CompletionSink | None = None

    def bind_completion_sink(self, sink: CompletionSink) -> None:
        """Where asynchronously finished work is reported."""
        self._completion_sink = sink

    @abc.abstractmethod
    async def run(self, task: Task) -> DispatchOutcome:
        """Dispatch ``task``.  Raises ``AWOCError`` if dispatch fails."""

    async def aclose(self) -> None:
        """Release adapter resources."""
