"""
AWOC — Repository Interface
=============================
Storage contract consumed by the lifecycle manager, event bus and
orchestrator.  Every state-changing method that can race is a
conditional update: it either applies atomically or reports that it
lost, and never overwrites an earlier writer.

Implementations:
    SqlAlchemyRepository — async SQLAlchemy (PostgreSQL / SQLite)
    InMemoryRepository   — single-process store for tests and embedding
"""

from __future__ import annotations

import abc
import uuid
from datetime import datetime
from typing import Any, Collection

from awoc.models.events import Event, EventReceipt, PendingReceiptGroup
from awoc.models.tasks import SystemLogEntry, Task, TaskCompletion


class BaseRepository(abc.ABC):
    """Abstract task / event / receipt store."""

    # ── Tasks ────────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def insert_task(self, task: Task) -> Task:
        """Persist a newly created task."""

    @abc.abstractmethod
    async def get_task(self, task_id: uuid.UUID) -> Task | None:
        """Return the task, or ``None`` if unknown."""

    @abc.abstractmethod
    async def list_tasks(
        self,
        *,
        owner_identifier: str | None = None,
        include_terminal: bool = True,
        limit: int | None = None,
    ) -> list[Task]:
        """Return tasks ordered by creation time."""

    @abc.abstractmethod
    async def start_task_if_unstarted(
        self,
        task_id: uuid.UUID,
        *,
        started_at: datetime,
        start_context: dict[str, Any] | None,
        log_entry: SystemLogEntry,
    ) -> Task | None:
        """
        Set ``started_at`` only if the task is neither started nor terminal.

        Returns the updated task, or ``None`` if the condition failed.
        """

    @abc.abstractmethod
    async def complete_task_if_open(
        self,
        task_id: uuid.UUID,
        *,
        completion: TaskCompletion,
        finished_at: datetime,
        log_entry: SystemLogEntry,
        require_started: bool,
    ) -> Task | None:
        """
        Record the terminal outcome only if no outcome exists yet (and,
        when ``require_started``, the task has started).

        Returns the updated task, or ``None`` if another writer won.
        """

    @abc.abstractmethod
    async def append_system_log(
        self, task_id: uuid.UUID, entry: SystemLogEntry
    ) -> None:
        """Append an entry to the task's system log."""

    # ── Events & receipts ────────────────────────────────────────────────

    @abc.abstractmethod
    async def insert_event_with_receipts(
        self, event: Event, subscriber_identifiers: list[str]
    ) -> list[EventReceipt]:
        """Atomically persist the event and one receipt per subscriber."""

    @abc.abstractmethod
    async def get_event(self, event_id: uuid.UUID) -> Event | None:
        """Return the event, or ``None`` if unknown."""

    @abc.abstractmethod
    async def list_receipts(self, event_id: uuid.UUID) -> list[EventReceipt]:
        """Return every receipt for the event."""

    @abc.abstractmethod
    async def claim_receipt(
        self,
        event_id: uuid.UUID,
        subscriber_identifier: str,
        started_at: datetime,
    ) -> bool:
        """Set ``started_at`` if unset.  ``True`` only for the single winner."""

    @abc.abstractmethod
    async def count_pending_receipts(self) -> list[PendingReceiptGroup]:
        """Unclaimed receipt counts grouped by (subscriber, event key)."""

    @abc.abstractmethod
    async def list_unclaimed_receipts(
        self, limit: int, handled: Collection[tuple[str, str]] | None = None
    ) -> list[EventReceipt]:
        """
        Oldest unclaimed receipts first.  With ``handled``, only receipts
        whose ``(subscriber, event_key)`` is in it count toward ``limit``.
        """
