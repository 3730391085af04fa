"""
Task State Machine Tests
==========================
Validates:
- The four states and their allowed transitions
- Terminal states have no outgoing transitions
- Internal-only tasks may complete without a start
- State derivation from timestamps on the Task model
"""

from __future__ import annotations

import uuid

import pytest

from awoc.core.exceptions import InvalidTransitionError
from awoc.models.tasks import HandlerKind, ManualTrigger, Task, TaskState, utcnow
from awoc.orchestrator.state_machine import (
    TERMINAL_STATES,
    InvalidStateError,
    TaskStateMachine,
)


class TestTransitions:
    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (TaskState.CREATED, TaskState.STARTED),
            (TaskState.CREATED, TaskState.FAILED),
            (TaskState.STARTED, TaskState.COMPLETED),
            (TaskState.STARTED, TaskState.FAILED),
        ],
    )
    def test_valid(self, from_state, to_state):
        assert TaskStateMachine.validate_transition(from_state, to_state) is True

    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (TaskState.CREATED, TaskState.COMPLETED),
            (TaskState.STARTED, TaskState.STARTED),
            (TaskState.COMPLETED, TaskState.FAILED),
            (TaskState.FAILED, TaskState.STARTED),
        ],
    )
    def test_invalid(self, from_state, to_state):
        with pytest.raises(InvalidTransitionError):
            TaskStateMachine.validate_transition(from_state, to_state)

    def test_core_tasks_may_complete_from_created(self):
        assert TaskStateMachine.validate_transition(
            TaskState.CREATED, TaskState.COMPLETED, HandlerKind.CORE
        )

    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert TaskStateMachine.get_allowed_transitions(state) == frozenset()
            assert TaskStateMachine.is_terminal(state)

    def test_parse_unknown_state(self):
        with pytest.raises(InvalidStateError):
            TaskStateMachine.parse_state("paused")

    def test_parse_known_state(self):
        assert TaskStateMachine.parse_state("started") == TaskState.STARTED


class TestDerivedState:
    def _task(self, **kwargs) -> Task:
        return Task(
            owner_identifier="ledger",
            task_identifier="record_invoice",
            handler_kind=HandlerKind.WORKER,
            trigger=ManualTrigger(actor="ops"),
            **kwargs,
        )

    def test_created(self):
        assert self._task().state == TaskState.CREATED

    def test_started(self):
        assert self._task(started_at=utcnow()).state == TaskState.STARTED

    def test_completed(self):
        task = self._task(started_at=utcnow(), completed_at=utcnow(), success=True)
        assert task.state == TaskState.COMPLETED
        assert task.is_terminal

    def test_failed(self):
        task = self._task(errored_at=utcnow(), success=False)
        assert task.state == TaskState.FAILED

    def test_both_outcomes_rejected(self):
        with pytest.raises(ValueError):
            self._task(completed_at=utcnow(), errored_at=utcnow())

    def test_ids_are_unique(self):
        assert self._task().id != self._task().id
        assert isinstance(self._task().id, uuid.UUID)
