"""
AWOC — Worker Channel Messages
================================
Closed action vocabulary of the worker channel, the per-action request
and result schemas, and the response envelope.

Wire shape (one JSON document per line)::

    {"type": "request" | "response",
     "id": "<correlation id>",
     "payload": {"action": "<action>", "payload": <request or response>}}

A response payload is ``{"success": true, "result": ...}`` or
``{"success": false, "error": <Error Envelope>}``.  Keys inside payloads
are camelCase on the wire.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from awoc.core.envelope import ErrorEnvelope
from awoc.core.exceptions import InvalidMessageError
from awoc.models.tasks import Task


class ChannelAction(StrEnum):
    """Every action either side of the channel may request."""

    # core → worker
    INIT = "init"
    UPDATE_APP_HASH_MAPPING = "update_app_hash_mapping"
    ANALYZE_OBJECT = "analyze_object"
    EXECUTE_TASK = "execute_task"
    EXECUTE_SYSTEM_REQUEST = "execute_system_request"
    # worker → core
    GET_WORKER_EXEC_CONFIG = "get_worker_exec_config"
    GET_UI_BUNDLE = "get_ui_bundle"
    GET_CONTENT_SIGNED_URLS = "get_content_signed_urls"
    GET_METADATA_SIGNED_URLS = "get_metadata_signed_urls"


class ChannelRole(StrEnum):
    """Which end of the channel a :class:`WorkerChannel` represents."""

    CORE = "core"
    WORKER = "worker"


CORE_TO_WORKER_ACTIONS: frozenset[ChannelAction] = frozenset(
    {
        ChannelAction.INIT,
        ChannelAction.UPDATE_APP_HASH_MAPPING,
        ChannelAction.ANALYZE_OBJECT,
        ChannelAction.EXECUTE_TASK,
        ChannelAction.EXECUTE_SYSTEM_REQUEST,
    }
)

WORKER_TO_CORE_ACTIONS: frozenset[ChannelAction] = frozenset(
    set(ChannelAction) - CORE_TO_WORKER_ACTIONS
)


def sendable_actions(role: ChannelRole) -> frozenset[ChannelAction]:
    return CORE_TO_WORKER_ACTIONS if role == ChannelRole.CORE else WORKER_TO_CORE_ACTIONS


def servable_actions(role: ChannelRole) -> frozenset[ChannelAction]:
    return WORKER_TO_CORE_ACTIONS if role == ChannelRole.CORE else CORE_TO_WORKER_ACTIONS


# ── Payload schemas ─────────────────────────────────────────────────────


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class WorkerExecConfigRequest(_WireModel):
    app_identifier: str
    worker_identifier: str


class WorkerExecConfig(_WireModel):
    payload_url: str
    worker_token: str
    environment_variables: dict[str, str]
    entrypoint: str
    hash: str


class UiBundleRequest(_WireModel):
    app_identifier: str


class UiBundle(_WireModel):
    ui_hash: str
    manifest: dict[str, Any]
    bundle_url: str
    csp: str | None = None


class ExecutionOptions(_WireModel):
    print_worker_output: bool | None = None
    remove_worker_directory: bool | None = None
    print_sandbox_verbose_output: bool | None = None


class InitRequest(_WireModel):
    instance_id: str
    app_ui_hash_mapping: dict[str, str]
    app_worker_hash_mapping: dict[str, str]
    server_base_url: str | None = None
    execution_options: ExecutionOptions | None = None


class UpdateAppHashMappingRequest(_WireModel):
    app_ui_hash_mapping: dict[str, str]
    app_worker_hash_mapping: dict[str, str]


class AnalyzeObjectRequest(_WireModel):
    folder_id: str = Field(min_length=1)
    object_key: str = Field(min_length=1)


class AnalyzeObjectResult(_WireModel):
    content_hash: str
    content_metadata: dict[str, Any]


class SignedUrlMethod(StrEnum):
    GET = "GET"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"


class ContentSignedUrlRequest(_WireModel):
    folder_id: str
    object_key: str
    method: SignedUrlMethod


class MetadataSignedUrlRequest(_WireModel):
    folder_id: str
    object_key: str
    content_hash: str
    metadata_hash: str
    method: SignedUrlMethod


class SignedUrl(_WireModel):
    url: str


class MetadataSignedUrl(_WireModel):
    folder_id: str
    object_key: str
    url: str


class TaskDTO(_WireModel):
    """Task as handed to a worker.  Never carries error stacks."""

    id: uuid.UUID
    task_identifier: str
    owner_identifier: str
    handler_identifier: str | None = None
    task_description: str = ""
    trigger: dict[str, Any]
    data: dict[str, Any]
    target_location: dict[str, Any] | None = None
    attempt: int = 1
    created_at: datetime
    started_at: datetime | None = None

    @classmethod
    def from_task(cls, task: Task) -> TaskDTO:
        return cls(
            id=task.id,
            task_identifier=task.task_identifier,
            owner_identifier=task.owner_identifier,
            handler_identifier=task.handler_identifier,
            task_description=task.task_description,
            trigger=task.trigger.model_dump(mode="json"),
            data=task.input_data,
            target_location=(
                task.target_location.model_dump(mode="json")
                if task.target_location
                else None
            ),
            attempt=task.attempt,
            created_at=task.created_at,
            started_at=task.started_at,
        )


class ExecuteTaskRequest(_WireModel):
    task: TaskDTO
    app_identifier: str
    worker_identifier: str


class SystemRequest(_WireModel):
    url: str = Field(pattern=r"^/")
    method: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: str = ""


class ExecuteSystemRequest(_WireModel):
    app_identifier: str
    worker_identifier: str
    request: SystemRequest


class SystemRequestResult(_WireModel):
    status: int
    status_text: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None


@dataclass(frozen=True)
class ActionSchema:
    request: TypeAdapter
    result: TypeAdapter


_NULL = TypeAdapter(type(None))

ACTION_SCHEMAS: dict[ChannelAction, ActionSchema] = {
    ChannelAction.INIT: ActionSchema(TypeAdapter(InitRequest), _NULL),
    ChannelAction.UPDATE_APP_HASH_MAPPING: ActionSchema(
        TypeAdapter(UpdateAppHashMappingRequest), _NULL
    ),
    ChannelAction.ANALYZE_OBJECT: ActionSchema(
        TypeAdapter(AnalyzeObjectRequest), TypeAdapter(AnalyzeObjectResult)
    ),
    ChannelAction.EXECUTE_TASK: ActionSchema(
        TypeAdapter(ExecuteTaskRequest), _NULL
    ),
    ChannelAction.EXECUTE_SYSTEM_REQUEST: ActionSchema(
        TypeAdapter(ExecuteSystemRequest), TypeAdapter(SystemRequestResult)
    ),
    ChannelAction.GET_WORKER_EXEC_CONFIG: ActionSchema(
        TypeAdapter(WorkerExecConfigRequest), TypeAdapter(WorkerExecConfig)
    ),
    ChannelAction.GET_UI_BUNDLE: ActionSchema(
        TypeAdapter(UiBundleRequest), TypeAdapter(UiBundle)
    ),
    ChannelAction.GET_CONTENT_SIGNED_URLS: ActionSchema(
        TypeAdapter(list[ContentSignedUrlRequest]), TypeAdapter(list[SignedUrl])
    ),
    ChannelAction.GET_METADATA_SIGNED_URLS: ActionSchema(
        TypeAdapter(list[MetadataSignedUrlRequest]),
        TypeAdapter(list[MetadataSignedUrl]),
    ),
}


# ── Envelopes ───────────────────────────────────────────────────────────


class ActionPayload(BaseModel):
    action: str
    payload: Any = None


class ChannelMessage(BaseModel):
    """Outer envelope of every line on the wire."""

    type: Literal["request", "response"]
    id: str = Field(min_length=1)
    payload: ActionPayload

    def to_json(self) -> str:
        return self.model_dump_json()


@dataclass(frozen=True)
class ChannelResponse:
    """Validated response to a request."""

    success: bool
    result: Any = None
    error: ErrorEnvelope | None = None

    def to_wire(self, action: ChannelAction) -> dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "result": encode_result(action, self.result),
            }
        return {"success": False, "error": self.error.to_wire()}


# ── Encode / decode ─────────────────────────────────────────────────────


def _invalid(action: str, what: str, exc: ValidationError) -> InvalidMessageError:
    return InvalidMessageError(
        f"Invalid {what} for action '{action}'",
        details={"action": action, "errors": exc.errors(include_url=False, include_context=False, include_input=False)},
    )


def encode_request(action: ChannelAction, payload: Any) -> Any:
    """Validate an outbound request payload and dump it to wire form."""
    adapter = ACTION_SCHEMAS[action].request
    try:
        value = adapter.validate_python(payload)
    except ValidationError as exc:
        raise _invalid(action, "request payload", exc) from exc
    return adapter.dump_python(value, mode="json", by_alias=True, exclude_none=True)


def decode_request(action: ChannelAction, raw: Any) -> Any:
    """Validate an inbound request payload."""
    try:
        return ACTION_SCHEMAS[action].request.validate_python(raw)
    except ValidationError as exc:
        raise _invalid(action, "request payload", exc) from exc


def encode_result(action: ChannelAction, result: Any) -> Any:
    adapter = ACTION_SCHEMAS[action].result
    try:
        value = adapter.validate_python(result)
    except ValidationError as exc:
        raise _invalid(action, "result", exc) from exc
    return adapter.dump_python(value, mode="json", by_alias=True, exclude_none=True)


def decode_response(action: ChannelAction, raw: Any) -> ChannelResponse:
    """Validate an inbound response payload against the action's schema."""
    if not isinstance(raw, dict) or not isinstance(raw.get("success"), bool):
        raise InvalidMessageError(
            f"Malformed response envelope for action '{action}'",
            details={"action": action},
        )
    if raw["success"]:
        try:
            result = ACTION_SCHEMAS[action].result.validate_python(raw.get("result"))
        except ValidationError as exc:
            raise _invalid(action, "result", exc) from exc
        return ChannelResponse(success=True, result=result)
    try:
        error = ErrorEnvelope.from_wire(raw.get("error"))
    except ValidationError as exc:
        raise _invalid(action, "error envelope", exc) from exc
    return ChannelResponse(success=False, error=error)
