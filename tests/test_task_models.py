"""
Task Model Tests
==================
Validates:
- Input data accepts only strings, numbers and nested objects
- Triggers are a discriminated union
- TaskCompletion consistency between success and error
- Operator and non-operator task views
"""

from __future__ import annotations

import uuid

import pytest
from pydantic import TypeAdapter, ValidationError

from awoc.core.envelope import ErrorEnvelope, ErrorOrigin
from awoc.core.exceptions import InvalidTaskInputError
from awoc.models.tasks import (
    EventTrigger,
    HandlerKind,
    ManualTrigger,
    RetryTrigger,
    Task,
    TaskCompletion,
    Trigger,
    utcnow,
    validate_input_data,
)


class TestInputData:
    def test_nested_objects_accepted(self):
        data = {"invoice": {"id": "42", "amount": 19.5, "lines": {"count": 3}}}
        assert validate_input_data(data) == data

    @pytest.mark.parametrize(
        "data,path",
        [
            ({"flag": True}, "input_data.flag"),
            ({"items": [1, 2]}, "input_data.items"),
            ({"missing": None}, "input_data.missing"),
            ({"outer": {"inner": False}}, "input_data.outer.inner"),
        ],
    )
    def test_rejected_values_report_path(self, data, path):
        with pytest.raises(InvalidTaskInputError) as exc_info:
            validate_input_data(data)
        assert exc_info.value.details == {"path": path}

    def test_non_object_rejected(self):
        with pytest.raises(InvalidTaskInputError):
            validate_input_data(["a"])


class TestTriggers:
    def test_discriminated_by_kind(self):
        adapter = TypeAdapter(Trigger)
        trigger = adapter.validate_python(
            {"kind": "retry", "previous_task_id": str(uuid.uuid4()), "attempt": 2}
        )
        assert isinstance(trigger, RetryTrigger)

    def test_retry_attempt_starts_at_two(self):
        with pytest.raises(ValidationError):
            RetryTrigger(previous_task_id=uuid.uuid4(), attempt=1)

    def test_event_trigger_defaults(self):
        trigger = EventTrigger(
            event_id=uuid.uuid4(), event_key="billing:paid", emitter_identifier="billing"
        )
        assert trigger.data == {}
        assert trigger.kind == "event"


class TestCompletion:
    def test_failed_requires_error(self):
        with pytest.raises(ValidationError):
            TaskCompletion(success=False)

    def test_success_cannot_carry_error(self):
        env = ErrorEnvelope(origin=ErrorOrigin.APP, code="X", message="m")
        with pytest.raises(ValidationError):
            TaskCompletion(success=True, error=env)

    def test_helpers(self):
        assert TaskCompletion.succeeded({"n": 1}).output == {"n": 1}
        env = ErrorEnvelope(origin=ErrorOrigin.APP, code="X", message="m")
        assert TaskCompletion.failed(env).error is env


class TestTaskView:
    def _failed_task(self) -> Task:
        return Task(
            owner_identifier="ledger",
            task_identifier="record_invoice",
            handler_kind=HandlerKind.WORKER,
            trigger=ManualTrigger(actor="ops"),
            errored_at=utcnow(),
            success=False,
            error=ErrorEnvelope(
                origin=ErrorOrigin.INTERNAL,
                code="WORKER_DISPATCH_FAILED",
                message="lost",
                stack="Traceback",
                cause=ErrorEnvelope(
                    origin=ErrorOrigin.APP, code="BAD", message="bad", stack="tb"
                ),
            ),
        )

    def test_public_view_hides_chain(self):
        view = self._failed_task().to_view()
        assert view.error_code == "WORKER_DISPATCH_FAILED"
        assert view.error_message == "lost"
        assert view.error is None
        assert view.system_log is None

    def test_operator_view_has_chain_without_stacks(self):
        view = self._failed_task().to_view(operator=True)
        assert view.error.cause.code == "BAD"
        assert all(node.stack is None for node in view.error.chain())
        assert view.system_log == []
