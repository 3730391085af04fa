"""
AWOC — Orchestrator
=====================
Turns receipts and manual invocations into tasks, dispatches them by
handler kind, records their outcome and decides what follows
(retry or on-complete chaining).

Concurrency model:
- A sweep loop moves unclaimed receipts into the receipt queue and
  broadcasts "events pending" signals.
- ``receipt_concurrency`` workers claim receipts and create tasks.
- ``task_concurrency`` workers run tasks once their ``dont_start_before``
  has passed.
- Exactly-once effects come from the repository's conditional updates,
  never from in-process locks.

Usage:
    orchestrator = Orchestrator(lifecycle, bus, modules, [core, worker, docker])
    await orchestrator.start()
    task = await orchestrator.invoke("ledger", "rebuild_index", {}, actor="ops")
    ...
    await orchestrator.stop()
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Iterable

from awoc.core.config import get_settings
from awoc.core.correlation import bind_correlation_id
from awoc.core.exceptions import (
    AWOCError,
    HandlerNotFoundError,
    InvalidTaskInputError,
    TargetAccessDeniedError,
    TaskConflictError,
    build_unexpected_error,
)
from awoc.core.logging import get_logger
from awoc.dispatch.base import DispatchAdapter
from awoc.models.events import Event, EventReceipt
from awoc.models.tasks import (
    EventTrigger,
    ManualTrigger,
    RetryTrigger,
    TargetLocation,
    Task,
    TaskChildTrigger,
    TaskCompletion,
    TaskState,
    utcnow,
    validate_input_data,
)
from awoc.orchestrator.authorization import ModuleRegistry, TaskDefinition
from awoc.orchestrator.events import EventBus
from awoc.orchestrator.lifecycle import CompletionResult, TaskLifecycleManager
from awoc.orchestrator.queue import DelayedWorkQueue
from awoc.orchestrator.retry import RetryPolicy

logger = get_logger(__name__)

ReceiptKey = tuple[uuid.UUID, str]


def _valid_input(data: Any) -> dict[str, Any] | None:
    """``data`` if it satisfies the task input constraints, else ``None``."""
    try:
        return validate_input_data(data)
    except InvalidTaskInputError:
        return None


class Orchestrator:
    """
    Parameters
    ----------
    lifecycle
        Task state transitions.
    bus
        Event bus the receipts come from.  The orchestrator installs itself
        as the bus's publish hook unless ``immediate`` is ``False``.
    modules
        Task definitions, on-complete chains and target scopes.
    adapters
        One dispatch adapter per handler kind.
    retry_policy
        Requeue decisions; built from settings when omitted.
    """

    def __init__(
        self,
        lifecycle: TaskLifecycleManager,
        bus: EventBus,
        modules: ModuleRegistry,
        adapters: Iterable[DispatchAdapter],
        *,
        retry_policy: RetryPolicy | None = None,
        immediate: bool = True,
    ) -> None:
        settings = get_settings()
        self._lifecycle = lifecycle
        self._bus = bus
        self._modules = modules
        self._retry_policy = retry_policy or RetryPolicy()
        self._adapters: dict[str, DispatchAdapter] = {}
        for adapter in adapters:
            self._adapters[adapter.kind] = adapter
            adapter.bind_completion_sink(self.complete_task)

        self._receipt_queue: DelayedWorkQueue[ReceiptKey] = DelayedWorkQueue("receipts")
        self._receipts: dict[ReceiptKey, EventReceipt] = {}
        self._task_queue: DelayedWorkQueue[uuid.UUID] = DelayedWorkQueue("tasks")
        self._workers: list[asyncio.Task] = []

        self._sweep_interval = settings.receipt_sweep_interval_seconds
        self._sweep_batch_size = settings.receipt_sweep_batch_size
        self._receipt_concurrency = settings.receipt_concurrency
        self._task_concurrency = settings.task_concurrency

        if immediate:
            bus.set_publish_hook(self._on_published)

    # ── Properties ───────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def task_queue(self) -> DelayedWorkQueue[uuid.UUID]:
        return self._task_queue

    @property
    def receipt_queue(self) -> DelayedWorkQueue[ReceiptKey]:
        return self._receipt_queue

    # ── Intake ───────────────────────────────────────────────────────────

    def enqueue_task(self, task: Task) -> None:
        self._task_queue.put(task.id, task.dont_start_before)

    def enqueue_receipt(self, receipt: EventReceipt) -> None:
        key = (receipt.event_id, receipt.subscriber_identifier)
        self._receipts[key] = receipt
        self._receipt_queue.put(key)

    async def _on_published(self, event: Event, receipts: list[EventReceipt]) -> None:
        for receipt in receipts:
            if self._handles(receipt):
                self.enqueue_receipt(receipt)

    def _handles(self, receipt: EventReceipt) -> bool:
        """Whether any task definition consumes this receipt."""
        return bool(
            self._modules.resolve_task_definitions(
                receipt.subscriber_identifier, receipt.event_key
            )
        )

    async def process_receipt(self, receipt: EventReceipt) -> list[Task]:
        """
        Claim a receipt and create its event-triggered tasks.

        Receipts nobody defines a task for are left unclaimed for the
        subscriber itself.  Returns the created tasks (empty if the claim
        was lost).
        """
        definitions = self._modules.resolve_task_definitions(
            receipt.subscriber_identifier, receipt.event_key
        )
        if not definitions:
            return []
        if not await self._bus.claim_receipt(
            receipt.event_id, receipt.subscriber_identifier
        ):
            return []

        event = await self._bus.get_event(receipt.event_id)
        if event is None:
            logger.error(
                "orchestrator.receipt_without_event",
                event_id=str(receipt.event_id),
                subscriber=receipt.subscriber_identifier,
            )
            return []

        input_data = _valid_input(dict(event.data))
        if input_data is None:
            logger.warning(
                "orchestrator.event_data_not_task_input",
                event_id=str(event.id),
                event_key=event.event_key,
            )
        trigger = EventTrigger(
            event_id=event.id,
            event_key=event.event_key,
            emitter_identifier=event.emitter_identifier,
            data=event.data,
            target_user_id=event.target_user_id,
            target_location=event.target_location,
        )

        tasks: list[Task] = []
        for definition in definitions:
            task = await self._create_from_definition(
                receipt.subscriber_identifier,
                definition,
                trigger=trigger,
                input_data=input_data or {},
                target_location=event.target_location,
                target_user_id=event.target_user_id,
            )
            self.enqueue_task(task)
            tasks.append(task)
        logger.info(
            "orchestrator.receipt_processed",
            event_id=str(receipt.event_id),
            subscriber=receipt.subscriber_identifier,
            tasks=len(tasks),
        )
        return tasks

    async def invoke(
        self,
        owner_identifier: str,
        task_identifier: str,
        input_data: dict[str, Any] | None = None,
        *,
        actor: str,
        target_location: TargetLocation | None = None,
        target_user_id: str | None = None,
    ) -> Task:
        """Create and enqueue a manually triggered task."""
        definition = self._modules.get_task_definition(owner_identifier, task_identifier)
        if definition is None:
            raise HandlerNotFoundError(
                f"'{owner_identifier}' defines no task '{task_identifier}'",
                details={"owner": owner_identifier, "task_identifier": task_identifier},
            )
        if not (
            self._modules.can_access_location(owner_identifier, target_location)
            and self._modules.can_access_user(owner_identifier, target_user_id)
        ):
            raise TargetAccessDeniedError(
                f"'{owner_identifier}' may not address the requested target",
                details={"owner": owner_identifier, "task_identifier": task_identifier},
            )
        task = await self._create_from_definition(
            owner_identifier,
            definition,
            trigger=ManualTrigger(actor=actor),
            input_data=input_data or {},
            target_location=target_location,
            target_user_id=target_user_id,
        )
        self.enqueue_task(task)
        return task

    async def _create_from_definition(
        self,
        owner_identifier: str,
        definition: TaskDefinition,
        **fields: Any,
    ) -> Task:
        return await self._lifecycle.create_task(
            owner_identifier=owner_identifier,
            task_identifier=definition.task_identifier,
            task_description=definition.description,
            handler_kind=definition.handler_kind,
            handler_identifier=definition.handler_identifier,
            **fields,
        )

    # ── Execution ────────────────────────────────────────────────────────

    async def run_task(self, task_id: uuid.UUID) -> Task:
        """
        Dispatch a ``created`` task through its adapter and record the result.

        Tasks that are no longer ``created`` are left untouched; tasks whose
        ``dont_start_before`` lies ahead are requeued.
        """
        task = await self._lifecycle.get_task(task_id)
        if task.state != TaskState.CREATED:
            logger.info(
                "orchestrator.run_skipped", task_id=str(task_id), state=task.state.value
            )
            return task
        if task.dont_start_before is not None and task.dont_start_before > utcnow():
            self.enqueue_task(task)
            return task

        with bind_correlation_id(task.id.hex):
            adapter = self._adapters.get(task.handler_kind)
            recorded = False
            try:
                if adapter is None:
                    raise HandlerNotFoundError(
                        f"No dispatch adapter for handler kind '{task.handler_kind}'",
                        task_id=str(task.id),
                    )
                outcome = await adapter.run(task)
            except TaskConflictError:
                # another runner owns this task
                logger.info("orchestrator.run_conflict", task_id=str(task.id))
                return await self._lifecycle.get_task(task_id)
            except AWOCError as exc:
                completion = TaskCompletion.failed(exc.to_envelope())
                recorded = getattr(exc, "recorded", False)
            except Exception as exc:
                logger.exception("orchestrator.dispatch_crashed", task_id=str(task.id))
                completion = TaskCompletion.failed(
                    build_unexpected_error(
                        "TASK_DISPATCH_ERROR",
                        f"Dispatch of task {task.id} raised unexpectedly",
                        exc,
                    ).to_envelope()
                )
            else:
                if outcome.pending:
                    logger.info(
                        "orchestrator.task_pending",
                        task_id=str(task.id),
                        handler_kind=task.handler_kind.value,
                    )
                    return await self._lifecycle.get_task(task_id)
                completion = outcome.completion

            if recorded:
                final = await self._lifecycle.get_task(task_id)
                await self._after_terminal(final)
                return final
            result = await self._lifecycle.complete_task(task_id, completion)
            if result.applied:
                await self._after_terminal(result.task)
            return result.task

    async def complete_task(
        self, task_id: uuid.UUID, completion: TaskCompletion
    ) -> CompletionResult:
        """External completion hook for asynchronously finishing work."""
        with bind_correlation_id(task_id.hex):
            result = await self._lifecycle.complete_task(task_id, completion)
            if result.applied:
                await self._after_terminal(result.task)
            return result

    # ── Follow-up: retry & chaining ─────────────────────────────────────

    async def _after_terminal(self, task: Task) -> None:
        retried = await self._maybe_retry(task)
        if not retried:
            await self._chain(task)

    async def _maybe_retry(self, task: Task) -> Task | None:
        definition = self._modules.get_task_definition(
            task.owner_identifier, task.task_identifier
        )
        decision = self._retry_policy.decide(
            task, definition.max_attempts if definition else None
        )
        if not decision.retry:
            if task.success is False:
                logger.info(
                    "orchestrator.no_retry", task_id=str(task.id), reason=decision.reason
                )
            return None

        not_before = decision.not_before()
        retry = await self._lifecycle.create_task(
            owner_identifier=task.owner_identifier,
            task_identifier=task.task_identifier,
            task_description=task.task_description,
            handler_kind=task.handler_kind,
            handler_identifier=task.handler_identifier,
            trigger=RetryTrigger(
                previous_task_id=task.id, attempt=decision.next_attempt
            ),
            input_data=task.input_data,
            target_location=task.target_location,
            target_user_id=task.target_user_id,
            attempt=decision.next_attempt,
            dont_start_before=not_before,
        )
        await self._lifecycle.record_requeue(task.id, retry.id, not_before)
        self.enqueue_task(retry)
        logger.info(
            "orchestrator.retry_scheduled",
            task_id=str(task.id),
            retry_task_id=str(retry.id),
            attempt=decision.next_attempt,
            delay_seconds=decision.delay_seconds,
        )
        return retry

    async def _chain(self, task: Task) -> list[Task]:
        definition = self._modules.get_task_definition(
            task.owner_identifier, task.task_identifier
        )
        if definition is None or not definition.on_complete:
            return []

        child_input: dict[str, Any] = {
            "parent_task_id": str(task.id),
            "parent_task_identifier": task.task_identifier,
            "outcome": "success" if task.success else "failure",
        }
        output = _valid_input(task.output) if task.output else None
        if output:
            child_input["output"] = output
        if task.error is not None:
            child_input["error_code"] = task.error.code
            child_input["error_message"] = task.error.message

        children = []
        for child_identifier in definition.on_complete:
            child_definition = self._modules.get_task_definition(
                task.owner_identifier, child_identifier
            )
            if child_definition is None:
                logger.error(
                    "orchestrator.chain_target_missing",
                    task_id=str(task.id),
                    child=child_identifier,
                )
                continue
            child = await self._create_from_definition(
                task.owner_identifier,
                child_definition,
                trigger=TaskChildTrigger(
                    parent_task_id=task.id,
                    parent_task_identifier=task.task_identifier,
                    parent_success=bool(task.success),
                ),
                input_data=child_input,
                target_location=task.target_location,
                target_user_id=task.target_user_id,
            )
            self.enqueue_task(child)
            children.append(child)
        if children:
            logger.info(
                "orchestrator.chained", task_id=str(task.id), children=len(children)
            )
        return children

    # ── Worker loops ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Requeue open tasks from the store and start the worker loops."""
        if self._workers:
            return
        for task in await self._lifecycle.list_tasks(include_terminal=False):
            if task.state == TaskState.CREATED:
                self.enqueue_task(task)

        self._workers.append(asyncio.create_task(self._sweep_loop(), name="awoc-sweep"))
        for i in range(self._receipt_concurrency):
            self._workers.append(
                asyncio.create_task(self._receipt_worker(), name=f"awoc-receipts-{i}")
            )
        for i in range(self._task_concurrency):
            self._workers.append(
                asyncio.create_task(self._task_worker(), name=f"awoc-tasks-{i}")
            )
        logger.info(
            "orchestrator.started",
            receipt_workers=self._receipt_concurrency,
            task_workers=self._task_concurrency,
            queued_tasks=self._task_queue.pending_count(),
        )

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        for adapter in self._adapters.values():
            await adapter.aclose()
        logger.info("orchestrator.stopped")

    async def sweep_once(self) -> int:
        """Queue unclaimed receipts and signal pending events.  Returns receipts queued."""
        handled = self._modules.handled_receipt_keys()
        receipts = await self._bus.list_unclaimed_receipts(
            self._sweep_batch_size, handled
        )
        for receipt in receipts:
            self.enqueue_receipt(receipt)
        await self._bus.notify_pending_events()
        return len(receipts)

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("orchestrator.sweep_failed")
            await asyncio.sleep(self._sweep_interval)

    async def _receipt_worker(self) -> None:
        while True:
            key = await self._receipt_queue.get()
            receipt = self._receipts.pop(key, None)
            if receipt is None:
                continue
            try:
                with bind_correlation_id():
                    await self.process_receipt(receipt)
            except Exception:
                logger.exception(
                    "orchestrator.receipt_failed",
                    event_id=str(key[0]),
                    subscriber=key[1],
                )

    async def _task_worker(self) -> None:
        while True:
            task_id = await self._task_queue.get()
            try:
                await self.run_task(task_id)
            except Exception:
                logger.exception("orchestrator.task_failed", task_id=str(task_id))
