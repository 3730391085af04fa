"""
AWOC — Delayed Work Queue
===========================
In-memory heap of work items ordered by the time they become ready.

Usage:
    queue: DelayedWorkQueue[uuid.UUID] = DelayedWorkQueue("tasks")
    queue.put(task.id, not_before=task.dont_start_before)
    task_id = await queue.get()
"""

from __future__ import annotations

import asyncio
import heapq
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Hashable, TypeVar

from awoc.models.tasks import utcnow

T = TypeVar("T", bound=Hashable)


@dataclass(order=True, slots=True)
class _DelayedEntry:
    """
    Heap entry.  Earlier ``ready_at`` first; ties are broken by
    insertion order (FIFO).
    """

    ready_at: float
    insertion_order: int = field(compare=True)
    item: Any = field(compare=False)
    removed: bool = field(default=False, compare=False)


class DelayedWorkQueue(Generic[T]):
    """
    Delay-aware work queue for the orchestrator's worker loops.

    An item is queued at most once; putting it again reschedules it
    (lazy deletion pattern).  ``get()`` suspends until the earliest
    item is ready.

    Not thread-safe.  Designed for use within one event loop.
    """

    def __init__(self, name: str = "queue") -> None:
        self.name = name
        self._heap: list[_DelayedEntry] = []
        self._entries: dict[T, _DelayedEntry] = {}
        self._counter: int = 0
        self._changed = asyncio.Event()

    @staticmethod
    def _ready_time(not_before: datetime | None) -> float:
        now = time.monotonic()
        if not_before is None:
            return now
        delay = (not_before - utcnow()).total_seconds()
        return now + max(delay, 0.0)

    def put(self, item: T, not_before: datetime | None = None) -> None:
        """Enqueue or reschedule ``item`` to become ready at ``not_before``."""
        if item in self._entries:
            self._entries[item].removed = True

        entry = _DelayedEntry(
            ready_at=self._ready_time(not_before),
            insertion_order=self._counter,
            item=item,
        )
        self._counter += 1
        self._entries[item] = entry
        heapq.heappush(self._heap, entry)
        self._changed.set()

    def _head(self) -> _DelayedEntry | None:
        while self._heap:
            entry = self._heap[0]
            if not entry.removed:
                return entry
            heapq.heappop(self._heap)
        return None

    def get_nowait(self) -> T | None:
        """Dequeue the earliest ready item, or ``None`` if none is ready."""
        entry = self._head()
        if entry is None or entry.ready_at > time.monotonic():
            return None
        heapq.heappop(self._heap)
        del self._entries[entry.item]
        return entry.item

    async def get(self) -> T:
        """Wait for and dequeue the earliest ready item."""
        while True:
            item = self.get_nowait()
            if item is not None:
                return item
            self._changed.clear()
            entry = self._head()
            timeout = (
                None
                if entry is None
                else max(entry.ready_at - time.monotonic(), 0.0)
            )
            try:
                await asyncio.wait_for(self._changed.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def remove(self, item: T) -> bool:
        """
        Remove an item from the queue.

        Returns ``True`` if the item was queued.
        """
        entry = self._entries.pop(item, None)
        if entry is None:
            return False
        entry.removed = True
        return True

    def pending_count(self) -> int:
        return len(self._entries)

    def contains(self, item: T) -> bool:
        return item in self._entries

    def clear(self) -> None:
        self._heap.clear()
        self._entries.clear()
        self._counter = 0
        self._changed.set()
