"""
AWOC — In-Memory Repository
=============================
Process-local implementation of :class:`BaseRepository`.

Every conditional update runs under one ``asyncio.Lock`` so the
check-and-set is atomic with respect to other coroutines on the loop.
Returned models are deep copies; callers never alias stored state.

Usage:
    repo = InMemoryRepository()
    await repo.insert_task(task)
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Collection

from awoc.db.repository import BaseRepository
from awoc.models.events import Event, EventReceipt, PendingReceiptGroup
from awoc.models.tasks import SystemLogEntry, Task, TaskCompletion


class InMemoryRepository(BaseRepository):
    """Dict-backed store guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tasks: dict[uuid.UUID, Task] = {}
        self._events: dict[uuid.UUID, Event] = {}
        self._receipts: dict[tuple[uuid.UUID, str], EventReceipt] = {}

    # ── Tasks ────────────────────────────────────────────────────────────

    async def insert_task(self, task: Task) -> Task:
        async with self._lock:
            if task.id in self._tasks:
                raise KeyError(f"Task {task.id} already exists.")
            self._tasks[task.id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    async def get_task(self, task_id: uuid.UUID) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    async def list_tasks(
        self,
        *,
        owner_identifier: str | None = None,
        include_terminal: bool = True,
        limit: int | None = None,
    ) -> list[Task]:
        async with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: t.created_at)
            if owner_identifier is not None:
                tasks = [t for t in tasks if t.owner_identifier == owner_identifier]
            if not include_terminal:
                tasks = [t for t in tasks if not t.is_terminal]
            if limit is not None:
                tasks = tasks[:limit]
            return [t.model_copy(deep=True) for t in tasks]

    async def start_task_if_unstarted(
        self,
        task_id: uuid.UUID,
        *,
        started_at: datetime,
        start_context: dict[str, Any] | None,
        log_entry: SystemLogEntry,
    ) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.started_at is not None or task.is_terminal:
                return None
            task.started_at = started_at
            task.updated_at = started_at
            task.start_context = start_context
            task.system_log.append(log_entry)
            return task.model_copy(deep=True)

    async def complete_task_if_open(
        self,
        task_id: uuid.UUID,
        *,
        completion: TaskCompletion,
        finished_at: datetime,
        log_entry: SystemLogEntry,
        require_started: bool,
    ) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return None
            if require_started and task.started_at is None:
                return None
            if completion.success:
                task.completed_at = finished_at
            else:
                task.errored_at = finished_at
            task.success = completion.success
            task.output = completion.output
            task.error = completion.error
            task.updated_at = finished_at
            task.system_log.append(log_entry)
            return task.model_copy(deep=True)

    async def append_system_log(
        self, task_id: uuid.UUID, entry: SystemLogEntry
    ) -> None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(f"Task {task_id} not found.")
            task.system_log.append(entry)

    # ── Events & receipts ────────────────────────────────────────────────

    async def insert_event_with_receipts(
        self, event: Event, subscriber_identifiers: list[str]
    ) -> list[EventReceipt]:
        async with self._lock:
            receipts = [
                EventReceipt(
                    event_id=event.id,
                    subscriber_identifier=subscriber,
                    event_key=event.event_key,
                    created_at=event.created_at,
                )
                for subscriber in dict.fromkeys(subscriber_identifiers)
            ]
            self._events[event.id] = event
            for receipt in receipts:
                self._receipts[(event.id, receipt.subscriber_identifier)] = receipt
            return [r.model_copy() for r in receipts]

    async def get_event(self, event_id: uuid.UUID) -> Event | None:
        async with self._lock:
            return self._events.get(event_id)

    async def list_receipts(self, event_id: uuid.UUID) -> list[EventReceipt]:
        async with self._lock:
            return [
                r.model_copy()
                for (eid, _), r in self._receipts.items()
                if eid == event_id
            ]

    async def claim_receipt(
        self,
        event_id: uuid.UUID,
        subscriber_identifier: str,
        started_at: datetime,
    ) -> bool:
        async with self._lock:
            receipt = self._receipts.get((event_id, subscriber_identifier))
            if receipt is None or receipt.started_at is not None:
                return False
            receipt.started_at = started_at
            return True

    async def count_pending_receipts(self) -> list[PendingReceiptGroup]:
        async with self._lock:
            counts = Counter(
                (r.subscriber_identifier, r.event_key)
                for r in self._receipts.values()
                if r.started_at is None
            )
        return [
            PendingReceiptGroup(
                subscriber_identifier=subscriber, event_key=key, count=count
            )
            for (subscriber, key), count in sorted(counts.items())
        ]

    async def list_unclaimed_receipts(
        self, limit: int, handled: Collection[tuple[str, str]] | None = None
    ) -> list[EventReceipt]:
        async with self._lock:
            pending = sorted(
                (
                    r
                    for r in self._receipts.values()
                    if r.started_at is None
                    and (
                        handled is None
                        or (r.subscriber_identifier, r.event_key) in handled
                    )
                ),
                key=lambda r: r.created_at,
            )
            return [r.model_copy() for r in pending[:limit]]
