"""
AWOC — Task Lifecycle Manager
===============================
Creates tasks and moves them through ``created → started → terminal``.

Enforces:
- A task is started at most once; a second start raises
  ``TaskConflictError`` and never overwrites the first.
- A task reaches exactly one terminal outcome.  Concurrent completions are
  resolved by a conditional update: the first writer wins, later writers
  get ``CompletionResult(applied=False)`` and change nothing.
- A completion carrying a retry directive is recorded as-is; requeueing
  is the orchestrator's decision and produces a new task.

Usage:
    lifecycle = TaskLifecycleManager(repository)
    task = await lifecycle.create_task(owner_identifier="billing", ...)
    await lifecycle.start_task(task.id, {"executor": "serverless"})
    result = await lifecycle.complete_task(task.id, TaskCompletion.succeeded())
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from awoc.core.exceptions import (
    InvalidTaskInputError,
    TaskConflictError,
    TaskNotFoundError,
)
from awoc.core.logging import get_logger
from awoc.db.repository import BaseRepository
from awoc.models.tasks import (
    CORE_IDENTIFIER,
    IDENTIFIER_PATTERN,
    HandlerKind,
    SystemLogEntry,
    SystemLogKind,
    TargetLocation,
    Task,
    TaskCompletion,
    TaskState,
    TaskView,
    Trigger,
    utcnow,
    validate_input_data,
)
from awoc.orchestrator.state_machine import TaskStateMachine

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of a completion attempt."""

    applied: bool
    task: Task


class TaskLifecycleManager:
    """State transitions for tasks, backed by a repository."""

    def __init__(self, repository: BaseRepository) -> None:
        self._repo = repository

    # ── Creation ─────────────────────────────────────────────────────────

    async def create_task(
        self,
        *,
        owner_identifier: str,
        task_identifier: str,
        handler_kind: HandlerKind,
        trigger: Trigger,
        input_data: dict[str, Any] | None = None,
        handler_identifier: str | None = None,
        task_description: str = "",
        target_location: TargetLocation | None = None,
        target_user_id: str | None = None,
        attempt: int = 1,
        dont_start_before: datetime | None = None,
    ) -> Task:
        for field_name, value in (
            ("owner_identifier", owner_identifier),
            ("task_identifier", task_identifier),
        ):
            if not IDENTIFIER_PATTERN.match(value):
                raise InvalidTaskInputError(
                    f"{field_name} '{value}' must match {IDENTIFIER_PATTERN.pattern}",
                    details={"field": field_name, "value": value},
                )
        if handler_kind == HandlerKind.CORE and owner_identifier != CORE_IDENTIFIER:
            raise InvalidTaskInputError(
                "Only the core may own internal-only tasks",
                details={"owner_identifier": owner_identifier},
            )

        task = Task(
            owner_identifier=owner_identifier,
            task_identifier=task_identifier,
            task_description=task_description,
            handler_kind=handler_kind,
            handler_identifier=handler_identifier,
            trigger=trigger,
            input_data=validate_input_data(dict(input_data or {})),
            target_location=target_location,
            target_user_id=target_user_id,
            attempt=attempt,
            dont_start_before=dont_start_before,
        )
        stored = await self._repo.insert_task(task)
        logger.info(
            "task.created",
            task_id=str(stored.id),
            owner=owner_identifier,
            task_identifier=task_identifier,
            handler_kind=handler_kind.value,
            trigger=stored.trigger.kind,
            attempt=attempt,
        )
        return stored

    # ── Transitions ──────────────────────────────────────────────────────

    async def start_task(
        self,
        task_id: uuid.UUID,
        start_context: dict[str, Any] | None = None,
    ) -> Task:
        """Move a ``created`` task to ``started``."""
        task = await self.get_task(task_id)
        if task.state != TaskState.CREATED:
            raise TaskConflictError(
                f"Task {task_id} cannot start from state '{task.state}'",
                task_id=str(task_id),
                details={"state": task.state.value},
            )
        TaskStateMachine.validate_transition(
            task.state, TaskState.STARTED, task.handler_kind
        )

        now = utcnow()
        started = await self._repo.start_task_if_unstarted(
            task_id,
            started_at=now,
            start_context=start_context,
            log_entry=SystemLogEntry(
                at=now,
                kind=SystemLogKind.STARTED,
                message="Task started",
                payload=start_context,
            ),
        )
        if started is None:
            raise TaskConflictError(
                f"Task {task_id} was started concurrently",
                task_id=str(task_id),
            )
        logger.info("task.started", task_id=str(task_id), context=start_context)
        return started

    async def complete_task(
        self,
        task_id: uuid.UUID,
        completion: TaskCompletion,
    ) -> CompletionResult:
        """
        Record the terminal outcome of a task.

        Raises ``InvalidTransitionError`` for a success on a task that never
        started (unless it is internal-only).
        """
        task = await self.get_task(task_id)
        if task.is_terminal:
            logger.info(
                "task.completion_ignored",
                task_id=str(task_id),
                state=task.state.value,
            )
            return CompletionResult(applied=False, task=task)

        target = TaskState.COMPLETED if completion.success else TaskState.FAILED
        TaskStateMachine.validate_transition(task.state, target, task.handler_kind)

        now = utcnow()
        if completion.success:
            entry = SystemLogEntry(
                at=now, kind=SystemLogKind.SUCCESS, message="Task completed"
            )
        else:
            entry = SystemLogEntry(
                at=now,
                kind=SystemLogKind.FAILURE,
                message=completion.error.message,
                payload={"code": completion.error.code},
            )

        updated = await self._repo.complete_task_if_open(
            task_id,
            completion=completion,
            finished_at=now,
            log_entry=entry,
            require_started=(
                completion.success and task.handler_kind != HandlerKind.CORE
            ),
        )
        if updated is None:
            current = await self.get_task(task_id)
            if current.is_terminal:
                logger.info("task.completion_lost", task_id=str(task_id))
                return CompletionResult(applied=False, task=current)
            raise TaskConflictError(
                f"Task {task_id} could not be completed from state '{current.state}'",
                task_id=str(task_id),
            )

        if completion.success:
            logger.info("task.completed", task_id=str(task_id))
        else:
            logger.warning(
                "task.failed",
                task_id=str(task_id),
                code=completion.error.code,
                origin=completion.error.origin.value,
                error_class=completion.error.error_class.value,
                retry=completion.error.retry,
            )
        return CompletionResult(applied=True, task=updated)

    async def record_requeue(
        self,
        task_id: uuid.UUID,
        retry_task_id: uuid.UUID,
        not_before: datetime,
    ) -> None:
        try:
            await self._repo.append_system_log(
                task_id,
                SystemLogEntry(
                    kind=SystemLogKind.REQUEUE,
                    message="Retry scheduled",
                    payload={
                        "retry_task_id": str(retry_task_id),
                        "not_before": not_before.isoformat(),
                    },
                ),
            )
        except KeyError as exc:
            raise TaskNotFoundError(
                f"Task {task_id} not found", task_id=str(task_id)
            ) from exc

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_task(self, task_id: uuid.UUID) -> Task:
        task = await self._repo.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found", task_id=str(task_id))
        return task

    async def list_tasks(
        self,
        owner_identifier: str | None = None,
        include_terminal: bool = True,
        limit: int | None = None,
    ) -> list[Task]:
        return await self._repo.list_tasks(
            owner_identifier=owner_identifier,
            include_terminal=include_terminal,
            limit=limit,
        )

    @staticmethod
    def to_view(task: Task, operator: bool = False) -> TaskView:
        return task.to_view(operator=operator)
