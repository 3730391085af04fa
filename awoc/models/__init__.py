"""
AWOC — Domain Models
======================
Tasks, triggers, events and receipts.
"""

from awoc.models.events import (
    EVENT_KEY_PATTERN,
    Event,
    EventReceipt,
    PendingReceiptGroup,
)
from awoc.models.tasks import (
    CORE_IDENTIFIER,
    EventTrigger,
    HandlerKind,
    ManualTrigger,
    RetryTrigger,
    SystemLogEntry,
    SystemLogKind,
    TargetLocation,
    Task,
    TaskChildTrigger,
    TaskCompletion,
    TaskState,
    TaskView,
    Trigger,
    validate_input_data,
)

__all__ = [
    "CORE_IDENTIFIER",
    "EVENT_KEY_PATTERN",
    "Event",
    "EventReceipt",
    "EventTrigger",
    "HandlerKind",
    "ManualTrigger",
    "PendingReceiptGroup",
    "RetryTrigger",
    "SystemLogEntry",
    "SystemLogKind",
    "TargetLocation",
    "Task",
    "TaskChildTrigger",
    "TaskCompletion",
    "TaskState",
    "TaskView",
    "Trigger",
    "validate_input_data",
]
