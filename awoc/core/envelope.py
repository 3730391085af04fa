"""
AWOC — Error Envelope
=======================
Serializable, chainable error value exchanged across every boundary:
worker channel responses, task records and operator views.

Wire keys: ``origin``, ``class``, ``code``, ``name``, ``message``,
``details``, ``stack``, ``cause``, ``retry``, ``retryDelaySeconds``.

Usage:
    from awoc.core.envelope import ErrorEnvelope

    env = ErrorEnvelope.from_wire(response["error"])
    app_error = env.resolve_highest_level_app_error()
"""

from __future__ import annotations

import json
import traceback
from enum import StrEnum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ErrorOrigin(StrEnum):
    """Who is to blame for a failure."""

    INTERNAL = "internal"
    APP = "app"


class ErrorClass(StrEnum):
    """Whether the same work could succeed if tried again."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ErrorEnvelope(BaseModel):
    """
    Immutable error record.

    ``retry`` is the canonical retry directive; ``error_class`` is the
    coarse classification it is usually derived from.  ``cause`` links to
    the wrapped failure, forming a chain from outermost to innermost.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    origin: ErrorOrigin
    error_class: ErrorClass = Field(default=ErrorClass.PERMANENT, alias="class")
    code: str = Field(min_length=1)
    name: str = "Error"
    message: str
    details: dict[str, Any] | None = None
    stack: str | None = None
    cause: ErrorEnvelope | None = None
    retry: bool = False
    retry_delay_seconds: float | None = Field(
        default=None, alias="retryDelaySeconds", ge=0
    )

    @model_validator(mode="after")
    def _delay_requires_retry(self) -> ErrorEnvelope:
        if self.retry_delay_seconds is not None and not self.retry:
            raise ValueError("retryDelaySeconds is only valid with retry=true")
        return self

    # ── Wire format ──────────────────────────────────────────────────────

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ErrorEnvelope:
        """Parse a wire-format dict.  Raises ``pydantic.ValidationError``."""
        return cls.model_validate(data)

    # ── Views ────────────────────────────────────────────────────────────

    def without_stack(self) -> ErrorEnvelope:
        """Return a copy with every stack in the chain removed."""
        return self.model_copy(
            update={
                "stack": None,
                "cause": self.cause.without_stack() if self.cause else None,
            }
        )

    def public_view(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}

    # ── Chain traversal ──────────────────────────────────────────────────

    def chain(self) -> Iterator[ErrorEnvelope]:
        """Yield this envelope and each cause, outermost first."""
        node: ErrorEnvelope | None = self
        while node is not None:
            yield node
            node = node.cause

    def resolve_highest_level_app_error(self) -> ErrorEnvelope | None:
        """Return the outermost ``app``-origin node in the chain, if any."""
        for node in self.chain():
            if node.origin == ErrorOrigin.APP:
                return node
        return None


ErrorEnvelope.model_rebuild()


# ── Unknown-thrown serialization ────────────────────────────────────────


def _format_stack(exc: BaseException) -> str | None:
    if exc.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(exc))


def serialize_unknown(value: Any) -> Any:
    """
    Coerce an arbitrary thrown value into a JSON-compatible form.

    Exceptions become ``{name, message, stack, cause}``; JSON-compatible
    values pass through; anything else degrades to ``str(value)``.
    Never raises.
    """
    try:
        if isinstance(value, BaseException):
            out: dict[str, Any] = {
                "name": type(value).__name__,
                "message": str(value),
            }
            stack = _format_stack(value)
            if stack:
                out["stack"] = stack
            if value.__cause__ is not None:
                out["cause"] = serialize_unknown(value.__cause__)
            return out
        return json.loads(json.dumps(value))
    except Exception:
        try:
            return str(value)
        except Exception:
            return f"<unserializable {type(value).__name__}>"
