"""
AWOC — Orchestration
======================
Task lifecycle, event bus, registries and the orchestrator that ties
them together.

Public API:
    TaskLifecycleManager, CompletionResult - task state transitions
    TaskStateMachine - transition rules
    EventBus - event publication and receipts
    ModuleRegistry, ModuleDefinition, TaskDefinition - authorization and subscriptions
    ProcessorRegistry, CoreTaskAdapter - internal-only task processors
    RetryPolicy - requeue decisions
    DelayedWorkQueue - delay-aware work queue
    Orchestrator - receipts and invocations → dispatched tasks
"""

from awoc.orchestrator.state_machine import TaskStateMachine
from awoc.orchestrator.lifecycle import CompletionResult, TaskLifecycleManager
from awoc.orchestrator.authorization import (
    ModuleDefinition,
    ModuleRegistry,
    TaskDefinition,
)
from awoc.orchestrator.events import EmitResult, EventBus
from awoc.orchestrator.processors import CoreTaskAdapter, ProcessorRegistry
from awoc.orchestrator.queue import DelayedWorkQueue
from awoc.orchestrator.retry import RetryDecision, RetryPolicy
from awoc.orchestrator.orchestrator import Orchestrator

__all__ = [
    "CompletionResult",
    "CoreTaskAdapter",
    "DelayedWorkQueue",
    "EmitResult",
    "EventBus",
    "ModuleDefinition",
    "ModuleRegistry",
    "Orchestrator",
    "ProcessorRegistry",
    "RetryDecision",
    "RetryPolicy",
    "TaskDefinition",
    "TaskLifecycleManager",
    "TaskStateMachine",
]
