"""
AWOC — Centralized Exception Taxonomy
=======================================
Category-based exception hierarchy.  Every exception is an Error Envelope
carrier: it converts to and from :class:`ErrorEnvelope` so failures can be
persisted on a task or sent over the worker channel without losing their
origin, classification or retry directive.

Design decisions:
- Class-level defaults (``error_code``, ``origin``, ``error_class``,
  ``retry``) overridable per instance
- ``cause`` chains are built bottom-up and never mutated afterwards
- Non-AWOC exceptions are converted at the boundary with
  :func:`convert_exception` or :func:`build_unexpected_error`

Usage:
    from awoc.core.exceptions import NotReadyError

    raise NotReadyError(
        "Worker pool is not ready",
        code="SERVERLESS_WORKER_UNAVAILABLE",
        task_id=str(task.id),
    )
"""

from __future__ import annotations

import traceback
from typing import Any

from awoc.core.envelope import (
    ErrorClass,
    ErrorEnvelope,
    ErrorOrigin,
    serialize_unknown,
)


class AWOCError(Exception):
    """
    Base exception for all AWOC errors.

    Carries the Error Envelope fields plus tracing identifiers
    (``task_id``, ``correlation_id``) that are logged but not serialized.
    """

    error_code: str = "AWOC_ERROR"
    origin: ErrorOrigin = ErrorOrigin.INTERNAL
    error_class: ErrorClass = ErrorClass.PERMANENT
    retry: bool = False
    retry_delay_seconds: float | None = None

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        origin: ErrorOrigin | None = None,
        error_class: ErrorClass | None = None,
        name: str | None = None,
        details: dict[str, Any] | None = None,
        stack: str | None = None,
        cause: AWOCError | ErrorEnvelope | None = None,
        retry: bool | None = None,
        retry_delay_seconds: float | None = None,
        task_id: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.error_code
        if origin is not None:
            self.origin = origin
        if error_class is not None:
            self.error_class = error_class
        if retry is not None:
            self.retry = retry
        if retry_delay_seconds is not None:
            self.retry_delay_seconds = retry_delay_seconds
        if not self.retry:
            self.retry_delay_seconds = None
        self.name = name or type(self).__name__
        self.details = details
        self._stack = stack
        if isinstance(cause, ErrorEnvelope):
            cause = AWOCError.from_envelope(cause)
        self.cause: AWOCError | None = cause
        self.task_id = task_id
        self.correlation_id = correlation_id
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        parts = [
            f"{self.__class__.__name__}(",
            f"code={self.code!r}, ",
            f"origin={self.origin.value!r}, ",
            f"class={self.error_class.value!r}",
        ]
        if self.retry:
            parts.append(f", retry_delay_seconds={self.retry_delay_seconds!r}")
        if self.task_id:
            parts.append(f", task_id={self.task_id!r}")
        if self.correlation_id:
            parts.append(f", correlation_id={self.correlation_id!r}")
        parts.append(")")
        return "".join(parts)

    @property
    def stack(self) -> str | None:
        if self._stack is not None:
            return self._stack
        if self.__traceback__ is not None:
            return "".join(traceback.format_exception(self))
        return None

    # ── Envelope conversion ──────────────────────────────────────────────

    def to_envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(
            origin=self.origin,
            error_class=self.error_class,
            code=self.code,
            name=self.name,
            message=self.message,
            details=self.details,
            stack=self.stack,
            cause=self.cause.to_envelope() if self.cause else None,
            retry=self.retry,
            retry_delay_seconds=self.retry_delay_seconds if self.retry else None,
        )

    @classmethod
    def from_envelope(cls, envelope: ErrorEnvelope) -> AWOCError:
        """Rebuild an exception chain from an envelope (always the base class)."""
        return AWOCError(
            envelope.message,
            code=envelope.code,
            origin=envelope.origin,
            error_class=envelope.error_class,
            name=envelope.name,
            details=envelope.details,
            stack=envelope.stack,
            cause=envelope.cause,
            retry=envelope.retry,
            retry_delay_seconds=envelope.retry_delay_seconds,
        )

    def resolve_highest_level_app_error(self) -> AWOCError | None:
        """Walk the cause chain and return the first ``app``-origin error."""
        node: AWOCError | None = self
        while node is not None:
            if node.origin == ErrorOrigin.APP:
                return node
            node = node.cause
        return None


# ── Availability / Dispatch Exceptions ──────────────────────────────────


class NotReadyError(AWOCError):
    """A required executor (worker pool, runtime) is not ready yet."""

    error_code = "NOT_READY"
    error_class = ErrorClass.TRANSIENT
    retry = True
    retry_delay_seconds = 10.0


class DispatchError(AWOCError):
    """Work could not be handed to its executor."""

    error_code = "DISPATCH_ERROR"
    error_class = ErrorClass.TRANSIENT
    retry = True
    # set once the failure has already been written to the task
    recorded = False


class WorkerDispatchFailedError(DispatchError):
    """The worker channel failed while delivering a task."""

    error_code = "WORKER_DISPATCH_FAILED"
    error_class = ErrorClass.PERMANENT
    retry = False


class ContainerRuntimeError(DispatchError):
    """
    The container runtime control API answered with a non-2xx status.

    5xx answers are transient and carry a retry directive; anything else
    is permanent.  Status and body are kept in ``details``.
    """

    error_code = "DOCKER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        body: str,
        code: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.status_code = status_code
        self.body = body
        details = {"status_code": status_code, "body": body}
        details.update(kwargs.pop("details", None) or {})
        if status_code >= 500:
            kwargs.setdefault("error_class", ErrorClass.TRANSIENT)
            kwargs.setdefault("retry", True)
        else:
            kwargs.setdefault("error_class", ErrorClass.PERMANENT)
            kwargs.setdefault("retry", False)
        super().__init__(
            f"{message} (status {status_code}): {body}",
            code=code,
            details=details,
            **kwargs,
        )


# ── Worker Channel Exceptions ───────────────────────────────────────────


class ChannelError(AWOCError):
    """Errors on the duplex worker channel."""

    error_code = "CHANNEL_ERROR"


class ChannelTimeoutError(ChannelError):
    """No response arrived for a request within its timeout."""

    error_code = "CHANNEL_REQUEST_TIMEOUT"
    error_class = ErrorClass.TRANSIENT
    retry = True


class ChannelDisconnectedError(ChannelError):
    """The transport closed while requests were outstanding."""

    error_code = "CHANNEL_DISCONNECTED"
    error_class = ErrorClass.TRANSIENT
    retry = True


class InvalidMessageError(ChannelError):
    """A message failed schema validation for its action."""

    error_code = "INVALID_MESSAGE"


class UnsupportedActionError(ChannelError):
    """The action is not served by this side of the channel."""

    error_code = "UNSUPPORTED_ACTION"


# ── Event Bus Exceptions ────────────────────────────────────────────────


class EventBusError(AWOCError):
    """Errors publishing events or handling receipts."""

    error_code = "EVENT_BUS_ERROR"


class InvalidEventKeyError(EventBusError):
    """Event key does not match ``domain:name``."""

    error_code = "INVALID_EVENT_KEY"


class ForbiddenEmitError(EventBusError):
    """The emitter is not authorized to emit the event key."""

    error_code = "FORBIDDEN_EMIT"


class TargetAccessDeniedError(EventBusError):
    """The emitter may not address the given target location or user."""

    error_code = "TARGET_ACCESS_DENIED"


# ── Task Lifecycle Exceptions ───────────────────────────────────────────


class LifecycleError(AWOCError):
    """Errors in the task state machine."""

    error_code = "LIFECYCLE_ERROR"


class TaskNotFoundError(LifecycleError):
    error_code = "TASK_NOT_FOUND"


class TaskConflictError(LifecycleError):
    """A state transition lost against a concurrent or earlier writer."""

    error_code = "TASK_CONFLICT"


class InvalidTransitionError(LifecycleError):
    """Raised when a task transition is not in the allowed set."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, from_state: str, to_state: str, **kwargs: Any) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Transition {from_state} → {to_state} is not allowed.",
            details={"from_state": from_state, "to_state": to_state},
            **kwargs,
        )


class InvalidTaskInputError(LifecycleError):
    """Task input data contains values outside strings, numbers and objects."""

    error_code = "INVALID_TASK_INPUT"


# ── Orchestration Exceptions ────────────────────────────────────────────


class OrchestrationError(AWOCError):
    error_code = "ORCHESTRATION_ERROR"


class HandlerNotFoundError(OrchestrationError):
    """No task definition, processor or adapter resolves the handler."""

    error_code = "HANDLER_NOT_FOUND"


# ── App (untrusted worker code) Exceptions ──────────────────────────────


class AppWorkerError(AWOCError):
    """Failure reported by app-supplied worker code."""

    error_code = "APP_WORKER_ERROR"
    origin = ErrorOrigin.APP


class AppWorkerInvalidContentError(AppWorkerError):
    """The worker returned content that does not satisfy its contract."""

    error_code = "APP_WORKER_INVALID_CONTENT"


# ── Configuration Exceptions ────────────────────────────────────────────


class ConfigurationError(AWOCError):
    """Invalid or missing configuration for a component."""

    error_code = "CONFIGURATION_ERROR"


# ── Boundary conversion ─────────────────────────────────────────────────


def convert_exception(
    exc: BaseException,
    *,
    code: str | None = None,
    message: str | None = None,
    name: str | None = None,
    origin: ErrorOrigin = ErrorOrigin.INTERNAL,
    details: dict[str, Any] | None = None,
) -> AWOCError:
    """
    Convert any exception into an :class:`AWOCError`.

    With no ``code`` an AWOC error is returned unchanged and a foreign
    exception is mirrored (its ``__cause__`` converted recursively).  With
    a ``code`` the converted error is wrapped as the cause of a new
    error carrying the given fields.
    """
    if isinstance(exc, AWOCError):
        inner = exc
    else:
        raw_code = getattr(exc, "code", None)
        inner = AWOCError(
            str(exc),
            code=str(raw_code) if raw_code not in (None, "") else "ERROR",
            name=type(exc).__name__,
            stack=(
                "".join(traceback.format_exception(exc))
                if exc.__traceback__ is not None
                else None
            ),
            cause=(
                convert_exception(exc.__cause__)
                if exc.__cause__ is not None
                else None
            ),
        )
    if code is None:
        return inner
    return AWOCError(
        message or inner.message,
        code=code,
        name=name or "WrappedError",
        origin=origin,
        details=details,
        cause=inner,
    )


def build_unexpected_error(
    code: str,
    message: str,
    error: Any,
    *,
    is_app_error: bool = False,
    details: dict[str, Any] | None = None,
) -> AWOCError:
    """
    Wrap an unexpected thrown value in an internal error.

    Exceptions become an ``UNEXPECTED_ERROR`` cause (``app`` origin when
    ``is_app_error``); anything else becomes a ``THROWN_NON_ERROR`` cause
    with the value serialized into its details.
    """
    if isinstance(error, BaseException):
        cause_details = (
            {"original_cause": serialize_unknown(error.__cause__)}
            if error.__cause__ is not None
            else None
        )
        cause = AWOCError(
            str(error),
            code="UNEXPECTED_ERROR",
            name=type(error).__name__,
            origin=ErrorOrigin.APP if is_app_error else ErrorOrigin.INTERNAL,
            stack=(
                "".join(traceback.format_exception(error))
                if error.__traceback__ is not None
                else None
            ),
            details=cause_details,
        )
    else:
        cause = AWOCError(
            "Non-error object thrown",
            code="THROWN_NON_ERROR",
            name="UnexpectedError",
            details={"serialized_cause": serialize_unknown(error)},
        )
    return AWOCError(
        message,
        code=code,
        name="UnexpectedError",
        details=details,
        cause=cause,
    )
