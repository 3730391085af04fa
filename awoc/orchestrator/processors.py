"""
AWOC — Core Task Processors
=============================
Registry of in-process processors for internal-only (``core``) tasks and
the adapter that runs them.

A processor receives the task and returns its output object (or ``None``).
Raising an ``AWOCError`` fails the task with that error; any other
exception is wrapped as ``CORE_TASK_PROCESSOR_ERROR``.

Usage:
    processors = ProcessorRegistry()

    @processors.processor("purge_expired_receipts")
    async def purge(task: Task) -> dict | None:
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable

from awoc.core.exceptions import (
    AWOCError,
    ConfigurationError,
    HandlerNotFoundError,
    build_unexpected_error,
)
from awoc.core.logging import get_logger
from awoc.dispatch.base import DispatchAdapter, DispatchOutcome
from awoc.models.tasks import HandlerKind, Task, TaskCompletion

if TYPE_CHECKING:
    from awoc.orchestrator.lifecycle import TaskLifecycleManager

logger = get_logger(__name__)

TaskProcessor = Callable[[Task], Awaitable[dict[str, Any] | None]]


class ProcessorRegistry:
    """Task identifier → processor.  Built once at startup and injected."""

    def __init__(self) -> None:
        self._processors: dict[str, TaskProcessor] = {}

    def register(self, task_identifier: str, processor: TaskProcessor) -> None:
        if task_identifier in self._processors:
            raise ConfigurationError(
                f"A processor for '{task_identifier}' is already registered"
            )
        self._processors[task_identifier] = processor

    def processor(self, task_identifier: str) -> Callable[[TaskProcessor], TaskProcessor]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: TaskProcessor) -> TaskProcessor:
            self.register(task_identifier, fn)
            return fn

        return decorator

    def get(self, task_identifier: str) -> TaskProcessor | None:
        return self._processors.get(task_identifier)

    @property
    def task_identifiers(self) -> list[str]:
        return sorted(self._processors)


class CoreTaskAdapter(DispatchAdapter):
    """Runs ``core`` tasks in-process."""

    kind = HandlerKind.CORE

    def __init__(
        self,
        processors: ProcessorRegistry,
        lifecycle: TaskLifecycleManager,
    ) -> None:
        super().__init__()
        self._processors = processors
        self._lifecycle = lifecycle

    async def run(self, task: Task) -> DispatchOutcome:
        processor = self._processors.get(task.task_identifier)
        if processor is None:
            raise HandlerNotFoundError(
                f"No processor registered for core task '{task.task_identifier}'",
                task_id=str(task.id),
                details={"task_identifier": task.task_identifier},
            )

        start_context = {"executor": "core", "processor": task.task_identifier}
        started = await self._lifecycle.start_task(task.id, start_context)
        try:
            output = await processor(started)
        except AWOCError as exc:
            logger.warning(
                "core_task.failed", task_id=str(task.id), code=exc.code
            )
            return DispatchOutcome(
                completion=TaskCompletion.failed(exc.to_envelope()),
                start_context=start_context,
            )
        except Exception as exc:
            logger.exception("core_task.crashed", task_id=str(task.id))
            error = build_unexpected_error(
                "CORE_TASK_PROCESSOR_ERROR",
                f"Processor for '{task.task_identifier}' raised unexpectedly",
                exc,
            )
            return DispatchOutcome(
                completion=TaskCompletion.failed(error.to_envelope()),
                start_context=start_context,
            )
        return DispatchOutcome(
            completion=TaskCompletion.succeeded(output),
            start_context=start_context,
        )
