"""
AWOC — Task Models
====================
Pydantic models for the Task unit of work, its trigger, its completion
input and its public view.

A task is created once, started at most once and reaches exactly one
terminal outcome (success or failure).  Tasks are never deleted by the core.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from awoc.core.envelope import ErrorEnvelope
from awoc.core.exceptions import InvalidTaskInputError

CORE_IDENTIFIER = "core"

IDENTIFIER_PATTERN = re.compile(r"^[a-z_]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HandlerKind(StrEnum):
    """Which executor runs a task."""

    WORKER = "worker"   # serverless worker pool over the worker channel
    DOCKER = "docker"   # container runtime
    CORE = "core"       # in-process processor, internal only


class TaskState(StrEnum):
    """Task lifecycle states (derived from timestamps)."""

    CREATED = "created"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class SystemLogKind(StrEnum):
    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"
    REQUEUE = "requeue"


# ── Subject references ──────────────────────────────────────────────────


class TargetLocation(BaseModel):
    """A folder, optionally narrowed to one object key."""

    model_config = ConfigDict(frozen=True)

    folder_id: str = Field(min_length=1)
    object_key: str | None = None


# ── Triggers ────────────────────────────────────────────────────────────


class EventTrigger(BaseModel):
    kind: Literal["event"] = "event"
    event_id: uuid.UUID
    event_key: str
    emitter_identifier: str
    data: dict[str, Any] = Field(default_factory=dict)
    target_user_id: str | None = None
    target_location: TargetLocation | None = None


class ManualTrigger(BaseModel):
    kind: Literal["manual"] = "manual"
    actor: str


class TaskChildTrigger(BaseModel):
    kind: Literal["task_child"] = "task_child"
    parent_task_id: uuid.UUID
    parent_task_identifier: str
    parent_success: bool


class RetryTrigger(BaseModel):
    kind: Literal["retry"] = "retry"
    previous_task_id: uuid.UUID
    attempt: int = Field(ge=2)


Trigger = Annotated[
    Union[EventTrigger, ManualTrigger, TaskChildTrigger, RetryTrigger],
    Field(discriminator="kind"),
]


# ── Input data ──────────────────────────────────────────────────────────


def validate_input_data(data: Any, path: str = "input_data") -> dict[str, Any]:
    """
    Check that ``data`` is an object whose leaves are strings or numbers.

    Booleans, arrays and nulls are rejected at every depth.
    """
    if not isinstance(data, dict):
        raise InvalidTaskInputError(
            f"{path} must be an object", details={"path": path}
        )
    for key, value in data.items():
        child = f"{path}.{key}"
        if not isinstance(key, str):
            raise InvalidTaskInputError(
                f"{path} has a non-string key", details={"path": path}
            )
        if isinstance(value, bool) or value is None:
            raise InvalidTaskInputError(
                f"{child} must be a string, number or object",
                details={"path": child},
            )
        if isinstance(value, dict):
            validate_input_data(value, child)
        elif not isinstance(value, (str, int, float)):
            raise InvalidTaskInputError(
                f"{child} must be a string, number or object",
                details={"path": child},
            )
    return data


# ── Task ────────────────────────────────────────────────────────────────


class SystemLogEntry(BaseModel):
    at: datetime = Field(default_factory=utcnow)
    kind: SystemLogKind
    message: str
    payload: dict[str, Any] | None = None


class Task(BaseModel):
    """A unit of work executed by exactly one handler."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    owner_identifier: str
    task_identifier: str
    task_description: str = ""
    handler_kind: HandlerKind
    handler_identifier: str | None = None
    trigger: Trigger
    input_data: dict[str, Any] = Field(default_factory=dict)
    target_location: TargetLocation | None = None
    target_user_id: str | None = None
    attempt: int = Field(default=1, ge=1)
    dont_start_before: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    errored_at: datetime | None = None

    success: bool | None = None
    output: dict[str, Any] | None = None
    error: ErrorEnvelope | None = None
    start_context: dict[str, Any] | None = None
    system_log: list[SystemLogEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _single_terminal_outcome(self) -> Task:
        if self.completed_at is not None and self.errored_at is not None:
            raise ValueError("a task cannot be both completed and errored")
        return self

    @property
    def state(self) -> TaskState:
        if self.errored_at is not None:
            return TaskState.FAILED
        if self.completed_at is not None:
            return TaskState.COMPLETED
        if self.started_at is not None:
            return TaskState.STARTED
        return TaskState.CREATED

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None or self.errored_at is not None

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None

    @property
    def error_message(self) -> str | None:
        return self.error.message if self.error else None

    def to_view(self, operator: bool = False) -> TaskView:
        """
        Build the externally visible representation.

        Non-operator views carry only ``error_code`` / ``error_message``;
        operator views add the full chain with stacks removed.
        """
        return TaskView(
            id=self.id,
            owner_identifier=self.owner_identifier,
            task_identifier=self.task_identifier,
            task_description=self.task_description,
            handler_kind=self.handler_kind,
            handler_identifier=self.handler_identifier,
            trigger=self.trigger,
            input_data=self.input_data,
            target_location=self.target_location,
            target_user_id=self.target_user_id,
            attempt=self.attempt,
            state=self.state,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            errored_at=self.errored_at,
            success=self.success,
            output=self.output,
            error_code=self.error_code,
            error_message=self.error_message,
            error=(
                self.error.without_stack()
                if operator and self.error is not None
                else None
            ),
            system_log=self.system_log if operator else None,
        )


class TaskView(BaseModel):
    """Read-only task representation for API consumers."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    owner_identifier: str
    task_identifier: str
    task_description: str
    handler_kind: HandlerKind
    handler_identifier: str | None
    trigger: Trigger
    input_data: dict[str, Any]
    target_location: TargetLocation | None
    target_user_id: str | None
    attempt: int
    state: TaskState
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    errored_at: datetime | None
    success: bool | None
    output: dict[str, Any] | None
    error_code: str | None
    error_message: str | None
    error: ErrorEnvelope | None = None
    system_log: list[SystemLogEntry] | None = None


class TaskCompletion(BaseModel):
    """Terminal outcome reported for a task."""

    model_config = ConfigDict(frozen=True)

    success: bool
    output: dict[str, Any] | None = None
    error: ErrorEnvelope | None = None

    @model_validator(mode="after")
    def _failure_has_error(self) -> TaskCompletion:
        if not self.success and self.error is None:
            raise ValueError("a failed completion must carry an error envelope")
        if self.success and self.error is not None:
            raise ValueError("a successful completion cannot carry an error")
        return self

    @classmethod
    def succeeded(cls, output: dict[str, Any] | None = None) -> TaskCompletion:
        return cls(success=True, output=output)

    @classmethod
    def failed(cls, error: ErrorEnvelope) -> TaskCompletion:
        return cls(success=False, error=error)


TaskView.model_rebuild()
Task.model_rebuild()
