"""
AWOC — Exec-Style Worker Convention
=====================================
Contract between the container dispatch path and a job process that is
spawned once per job.

- The job payload ``{"job_id", "job_class", "job_input"}`` is JSON,
  base64-encoded and appended as the final argument of the worker command.
- ``AWOC_RESULT_FILE`` names the file the worker writes its result to:
  ``{"success": true, "result": {...}}`` or
  ``{"success": false, "error": {"code": ..., "message": ...}}``.
- Log lines are ``LEVEL|["message", optional_data]``; INFO, DEBUG and WARN
  go to stdout, ERROR and FATAL to stderr.  When several jobs share one
  stream each line is prefixed with ``JOB_ID_<id>|``.

Usage:
    invocation = build_exec_invocation(["python", "-m", "worker"],
                                       job_id=str(task.id),
                                       job_class="thumbnail",
                                       job_input=task.input_data,
                                       result_dir="/tmp/results")
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from awoc.core.envelope import ErrorOrigin
from awoc.core.exceptions import AppWorkerError, AppWorkerInvalidContentError
from awoc.models.tasks import TaskCompletion

RESULT_FILE_ENV = "AWOC_RESULT_FILE"
JOB_ID_ENV = "AWOC_JOB_ID"
JOB_CLASS_ENV = "AWOC_JOB_CLASS"

_JOB_PREFIX = re.compile(r"^JOB_ID_(?P<job_id>[^|]+)\|")


class WorkerLogLevel(StrEnum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"

    @property
    def stream(self) -> str:
        """Which standard stream a worker writes this level to."""
        if self in (WorkerLogLevel.ERROR, WorkerLogLevel.FATAL):
            return "stderr"
        return "stdout"


@dataclass(frozen=True)
class ExecInvocation:
    """Everything needed to launch one exec-style job."""

    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    result_path: str = ""


@dataclass(frozen=True)
class WorkerLogLine:
    level: WorkerLogLevel
    message: str
    data: dict[str, Any] | None = None
    job_id: str | None = None


# ── Payload ─────────────────────────────────────────────────────────────


def encode_job_payload(job_id: str, job_class: str, job_input: dict[str, Any]) -> str:
    document = {"job_id": job_id, "job_class": job_class, "job_input": job_input}
    return base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")


def decode_job_payload(encoded: str) -> dict[str, Any]:
    """Decode the final-argument payload.  Raises ``ValueError`` if malformed."""
    try:
        document = json.loads(base64.b64decode(encoded, validate=True))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"malformed job payload: {exc}") from exc
    if not isinstance(document, dict) or not {"job_id", "job_class", "job_input"} <= document.keys():
        raise ValueError("job payload must contain job_id, job_class and job_input")
    return document


def build_exec_invocation(
    command: list[str],
    *,
    job_id: str,
    job_class: str,
    job_input: dict[str, Any],
    result_dir: str,
) -> ExecInvocation:
    if not command:
        raise ValueError("worker command is empty")
    result_path = os.path.join(result_dir, f"{job_id}.json")
    return ExecInvocation(
        argv=[*command, encode_job_payload(job_id, job_class, job_input)],
        env={
            RESULT_FILE_ENV: result_path,
            JOB_ID_ENV: job_id,
            JOB_CLASS_ENV: job_class,
        },
        result_path=result_path,
    )


# ── Log lines ───────────────────────────────────────────────────────────


def format_worker_log_line(
    level: WorkerLogLevel,
    message: str,
    data: dict[str, Any] | None = None,
    job_id: str | None = None,
) -> str:
    body = [message] if data is None else [message, data]
    line = f"{level.value}|{json.dumps(body)}"
    return f"JOB_ID_{job_id}|{line}" if job_id else line


def parse_worker_log_line(line: str) -> WorkerLogLine | None:
    """
    Parse one worker log line.

    Returns ``None`` for lines that do not follow the convention; callers
    treat those as plain output.
    """
    line = line.rstrip("\r\n")
    job_id = None
    match = _JOB_PREFIX.match(line)
    if match:
        job_id = match.group("job_id")
        line = line[match.end():]

    level_text, sep, body = line.partition("|")
    if not sep:
        return None
    try:
        level = WorkerLogLevel(level_text)
    except ValueError:
        return None
    try:
        parts = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], str):
        return None
    data = parts[1] if len(parts) > 1 and isinstance(parts[1], dict) else None
    return WorkerLogLine(level=level, message=parts[0], data=data, job_id=job_id)


# ── Result file ─────────────────────────────────────────────────────────


class _JobError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    retry: bool = False


class _JobResult(BaseModel):
    success: bool
    result: dict[str, Any] | None = None
    error: _JobError | None = None


def parse_job_result(document: Any) -> TaskCompletion:
    """
    Map a worker result document to a task completion.

    Worker-reported failures and unreadable results are ``app`` origin.
    """
    try:
        parsed = _JobResult.model_validate(document)
    except ValidationError as exc:
        raise AppWorkerInvalidContentError(
            "Worker result does not match the result contract",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc
    if parsed.success:
        return TaskCompletion.succeeded(parsed.result)
    job_error = parsed.error or _JobError(
        code="APP_WORKER_FAILED", message="Worker reported failure without an error"
    )
    return TaskCompletion.failed(
        AppWorkerError(
            job_error.message,
            code=job_error.code,
            origin=ErrorOrigin.APP,
            details=job_error.details,
            retry=job_error.retry,
        ).to_envelope()
    )


def read_result_file(path: str) -> TaskCompletion | None:
    """Read and map a result file.  ``None`` if the worker has not written it."""
    if not os.path.exists(path):
        return None
    with open(path, encoding="utf-8") as fh:
        raw = fh.read()
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AppWorkerInvalidContentError(
            "Worker result file is not valid JSON",
            details={"path": path},
        ) from exc
    return parse_job_result(document)
