"""
AWOC — Task State Machine
===========================
Four-state machine governing the task lifecycle::

    created ──► started ──► completed
       │           └──────► failed
       ├──► failed              (dispatch could not begin)
       └──► completed           (internal-only ``core`` tasks)

Invariants enforced:
- ``completed`` and ``failed`` are terminal
- Undefined transitions raise ``InvalidTransitionError``
"""

from __future__ import annotations

from awoc.core.exceptions import InvalidTransitionError, LifecycleError
from awoc.models.tasks import HandlerKind, TaskState


# ── Terminal states (no outgoing transitions) ───────────────────────────

TERMINAL_STATES: frozenset[TaskState] = frozenset(
    {TaskState.COMPLETED, TaskState.FAILED}
)


# ── Transition Map ──────────────────────────────────────────────────────

VALID_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.CREATED: frozenset(
        {TaskState.STARTED, TaskState.FAILED}
    ),
    TaskState.STARTED: frozenset(
        {TaskState.COMPLETED, TaskState.FAILED}
    ),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
}

# Internal-only tasks run in-process and may complete without a start.
CORE_ONLY_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.CREATED: frozenset({TaskState.COMPLETED}),
}


class InvalidStateError(LifecycleError):
    """Raised when an unknown state string is encountered."""

    error_code = "INVALID_STATE"

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(
            f"Unknown task state '{state}'.", details={"state": state}
        )


# ── State Machine ───────────────────────────────────────────────────────


class TaskStateMachine:
    """Deterministic transition rules for the task lifecycle."""

    @staticmethod
    def parse_state(raw: str) -> TaskState:
        try:
            return TaskState(raw)
        except ValueError:
            raise InvalidStateError(raw) from None

    @staticmethod
    def get_allowed_transitions(
        state: TaskState,
        handler_kind: HandlerKind | None = None,
    ) -> frozenset[TaskState]:
        """Return the set of valid next states for the given state."""
        allowed = VALID_TRANSITIONS.get(state)
        if allowed is None:
            raise InvalidStateError(state)
        if handler_kind == HandlerKind.CORE:
            allowed = allowed | CORE_ONLY_TRANSITIONS.get(state, frozenset())
        return allowed

    @staticmethod
    def validate_transition(
        from_state: TaskState,
        to_state: TaskState,
        handler_kind: HandlerKind | None = None,
    ) -> bool:
        """
        Return ``True`` if the transition is valid.

        Raises ``InvalidTransitionError`` if the transition is undefined.
        """
        allowed = TaskStateMachine.get_allowed_transitions(from_state, handler_kind)
        if to_state not in allowed:
            raise InvalidTransitionError(from_state.value, to_state.value)
        return True

    @staticmethod
    def is_terminal(state: TaskState) -> bool:
        return state in TERMINAL_STATES
