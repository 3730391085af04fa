"""
AWOC — SQLAlchemy Repository
==============================
:class:`BaseRepository` over the ``tasks``, ``events`` and
``event_receipts`` tables.

Races are settled in the database: starts, completions and receipt
claims are ``UPDATE ... WHERE <column> IS NULL`` statements, and the
caller learns whether it won from the affected row count.

Usage:
    repo = SqlAlchemyRepository(get_db_session)
    won = await repo.claim_receipt(event_id, "billing", utcnow())
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Collection

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from awoc.core.envelope import ErrorEnvelope
from awoc.db.models import EventReceiptRow, EventRow, TaskRow
from awoc.db.repository import BaseRepository
from awoc.models.events import Event, EventReceipt, PendingReceiptGroup
from awoc.models.tasks import (
    SystemLogEntry,
    TargetLocation,
    Task,
    TaskCompletion,
)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Row <-> model mapping ───────────────────────────────────────────────


def _task_to_row(task: Task) -> TaskRow:
    return TaskRow(
        id=task.id,
        owner_identifier=task.owner_identifier,
        task_identifier=task.task_identifier,
        task_description=task.task_description,
        handler_kind=task.handler_kind.value,
        handler_identifier=task.handler_identifier,
        trigger=task.trigger.model_dump(mode="json"),
        input_data=task.input_data,
        target_location=(
            task.target_location.model_dump(mode="json")
            if task.target_location
            else None
        ),
        target_user_id=task.target_user_id,
        attempt=task.attempt,
        dont_start_before=task.dont_start_before,
        created_at=task.created_at,
        updated_at=task.updated_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
        errored_at=task.errored_at,
        success=task.success,
        output=task.output,
        error_code=task.error_code,
        error_message=task.error_message,
        error=task.error.to_wire() if task.error else None,
        start_context=task.start_context,
        system_log=[e.model_dump(mode="json") for e in task.system_log],
    )


def _row_to_task(row: TaskRow) -> Task:
    return Task(
        id=row.id,
        owner_identifier=row.owner_identifier,
        task_identifier=row.task_identifier,
        task_description=row.task_description,
        handler_kind=row.handler_kind,
        handler_identifier=row.handler_identifier,
        trigger=row.trigger,
        input_data=row.input_data or {},
        target_location=row.target_location,
        target_user_id=row.target_user_id,
        attempt=row.attempt,
        dont_start_before=_aware(row.dont_start_before),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        errored_at=_aware(row.errored_at),
        success=row.success,
        output=row.output,
        error=ErrorEnvelope.from_wire(row.error) if row.error else None,
        start_context=row.start_context,
        system_log=row.system_log or [],
    )


def _row_to_event(row: EventRow) -> Event:
    return Event(
        id=row.id,
        event_key=row.event_key,
        emitter_identifier=row.emitter_identifier,
        target_user_id=row.target_user_id,
        target_location=(
            TargetLocation.model_validate(row.target_location)
            if row.target_location
            else None
        ),
        data=row.data or {},
        created_at=_aware(row.created_at),
    )


def _row_to_receipt(row: EventReceiptRow) -> EventReceipt:
    return EventReceipt(
        event_id=row.event_id,
        subscriber_identifier=row.subscriber_identifier,
        event_key=row.event_key,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
    )


class SqlAlchemyRepository(BaseRepository):
    """Relational store.  One session (transaction) per operation."""

    def __init__(self, session_factory: Callable[..., Any]) -> None:
        """
        Parameters
        ----------
        session_factory
            An async context manager that yields an ``AsyncSession`` and
            commits on clean exit.  Typically
            ``awoc.db.session.get_db_session``.
        """
        self._session_factory = session_factory

    # ── Tasks ────────────────────────────────────────────────────────────

    async def insert_task(self, task: Task) -> Task:
        async with self._session_factory() as session:
            session: AsyncSession
            session.add(_task_to_row(task))
        return task

    async def get_task(self, task_id: uuid.UUID) -> Task | None:
        async with self._session_factory() as session:
            session: AsyncSession
            row = await session.get(TaskRow, task_id)
            return _row_to_task(row) if row else None

    async def list_tasks(
        self,
        *,
        owner_identifier: str | None = None,
        include_terminal: bool = True,
        limit: int | None = None,
    ) -> list[Task]:
        stmt = select(TaskRow).order_by(TaskRow.created_at)
        if owner_identifier is not None:
            stmt = stmt.where(TaskRow.owner_identifier == owner_identifier)
        if not include_terminal:
            stmt = stmt.where(
                TaskRow.completed_at.is_(None), TaskRow.errored_at.is_(None)
            )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            session: AsyncSession
            result = await session.execute(stmt)
            return [_row_to_task(r) for r in result.scalars().all()]

    async def _update_with_log(
        self,
        task_id: uuid.UUID,
        conditions: list[Any],
        values: dict[str, Any],
        entry: SystemLogEntry,
    ) -> Task | None:
        """
        Apply ``values`` where ``conditions`` hold and append ``entry`` to the
        system log.  The log is only rewritten if its ``log_version`` is the
        one that was read; a concurrent writer forces a re-read.  ``None``
        when the row is missing or the conditions no longer hold.
        """
        entry_json = entry.model_dump(mode="json")
        while True:
            async with self._session_factory() as session:
                session: AsyncSession
                row = await session.get(TaskRow, task_id)
                if row is None:
                    return None
                seen = row.log_version
                result = await session.execute(
                    update(TaskRow)
                    .where(*conditions, TaskRow.log_version == seen)
                    .values(
                        **values,
                        system_log=[*(row.system_log or []), entry_json],
                        log_version=seen + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await session.refresh(row)
                    return _row_to_task(row)
                current = await session.scalar(
                    select(TaskRow.log_version).where(TaskRow.id == task_id)
                )
                if current == seen:
                    return None

    async def start_task_if_unstarted(
        self,
        task_id: uuid.UUID,
        *,
        started_at: datetime,
        start_context: dict[str, Any] | None,
        log_entry: SystemLogEntry,
    ) -> Task | None:
        return await self._update_with_log(
            task_id,
            [
                TaskRow.id == task_id,
                TaskRow.started_at.is_(None),
                TaskRow.completed_at.is_(None),
                TaskRow.errored_at.is_(None),
            ],
            {
                "started_at": started_at,
                "updated_at": started_at,
                "start_context": start_context,
            },
            log_entry,
        )

    async def complete_task_if_open(
        self,
        task_id: uuid.UUID,
        *,
        completion: TaskCompletion,
        finished_at: datetime,
        log_entry: SystemLogEntry,
        require_started: bool,
    ) -> Task | None:
        conditions = [
            TaskRow.id == task_id,
            TaskRow.completed_at.is_(None),
            TaskRow.errored_at.is_(None),
        ]
        if require_started:
            conditions.append(TaskRow.started_at.is_not(None))

        values: dict[str, Any] = {
            "success": completion.success,
            "output": completion.output,
            "updated_at": finished_at,
        }
        if completion.success:
            values["completed_at"] = finished_at
        else:
            values["errored_at"] = finished_at
            values["error"] = completion.error.to_wire()
            values["error_code"] = completion.error.code
            values["error_message"] = completion.error.message
        return await self._update_with_log(task_id, conditions, values, log_entry)

    async def append_system_log(
        self, task_id: uuid.UUID, entry: SystemLogEntry
    ) -> None:
        appended = await self._update_with_log(
            task_id, [TaskRow.id == task_id], {"updated_at": entry.at}, entry
        )
        if appended is None:
            raise KeyError(f"Task {task_id} not found.")

    # ── Events & receipts ────────────────────────────────────────────────

    async def insert_event_with_receipts(
        self, event: Event, subscriber_identifiers: list[str]
    ) -> list[EventReceipt]:
        receipts = [
            EventReceipt(
                event_id=event.id,
                subscriber_identifier=subscriber,
                event_key=event.event_key,
                created_at=event.created_at,
            )
            for subscriber in dict.fromkeys(subscriber_identifiers)
        ]
        async with self._session_factory() as session:
            session: AsyncSession
            session.add(
                EventRow(
                    id=event.id,
                    event_key=event.event_key,
                    emitter_identifier=event.emitter_identifier,
                    target_user_id=event.target_user_id,
                    target_location=(
                        event.target_location.model_dump(mode="json")
                        if event.target_location
                        else None
                    ),
                    data=event.data,
                    created_at=event.created_at,
                )
            )
            # Receipts reference the event; flush it first.
            await session.flush()
            session.add_all(
                [
                    EventReceiptRow(
                        event_id=r.event_id,
                        subscriber_identifier=r.subscriber_identifier,
                        event_key=r.event_key,
                        created_at=r.created_at,
                    )
                    for r in receipts
                ]
            )
        return receipts

    async def get_event(self, event_id: uuid.UUID) -> Event | None:
        async with self._session_factory() as session:
            session: AsyncSession
            row = await session.get(EventRow, event_id)
            return _row_to_event(row) if row else None

    async def list_receipts(self, event_id: uuid.UUID) -> list[EventReceipt]:
        async with self._session_factory() as session:
            session: AsyncSession
            result = await session.execute(
                select(EventReceiptRow)
                .where(EventReceiptRow.event_id == event_id)
                .order_by(EventReceiptRow.subscriber_identifier)
            )
            return [_row_to_receipt(r) for r in result.scalars().all()]

    async def claim_receipt(
        self,
        event_id: uuid.UUID,
        subscriber_identifier: str,
        started_at: datetime,
    ) -> bool:
        async with self._session_factory() as session:
            session: AsyncSession
            result = await session.execute(
                update(EventReceiptRow)
                .where(
                    EventReceiptRow.event_id == event_id,
                    EventReceiptRow.subscriber_identifier == subscriber_identifier,
                    EventReceiptRow.started_at.is_(None),
                )
                .values(started_at=started_at)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def count_pending_receipts(self) -> list[PendingReceiptGroup]:
        async with self._session_factory() as session:
            session: AsyncSession
            result = await session.execute(
                select(
                    EventReceiptRow.subscriber_identifier,
                    EventReceiptRow.event_key,
                    func.count(),
                )
                .where(EventReceiptRow.started_at.is_(None))
                .group_by(
                    EventReceiptRow.subscriber_identifier,
                    EventReceiptRow.event_key,
                )
                .order_by(
                    EventReceiptRow.subscriber_identifier,
                    EventReceiptRow.event_key,
                )
            )
            return [
                PendingReceiptGroup(
                    subscriber_identifier=subscriber,
                    event_key=event_key,
                    count=count,
                )
                for subscriber, event_key, count in result.all()
            ]

    async def list_unclaimed_receipts(
        self, limit: int, handled: Collection[tuple[str, str]] | None = None
    ) -> list[EventReceipt]:
        stmt = select(EventReceiptRow).where(EventReceiptRow.started_at.is_(None))
        if handled is not None:
            if not handled:
                return []
            stmt = stmt.where(
                or_(
                    *(
                        and_(
                            EventReceiptRow.subscriber_identifier == subscriber,
                            EventReceiptRow.event_key == event_key,
                        )
                        for subscriber, event_key in sorted(handled)
                    )
                )
            )
        async with self._session_factory() as session:
            session: AsyncSession
            result = await session.execute(
                stmt.order_by(EventReceiptRow.created_at).limit(limit)
            )
            return [_row_to_receipt(r) for r in result.scalars().all()]
