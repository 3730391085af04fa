"""
AWOC — Event Bus & Receipt Ledger
===================================
Publishes events and records one delivery receipt per subscriber.

Enforces:
- The subscriber set is computed once, at publish time; modules that
  subscribe later never receive a receipt for an earlier event.
- The event and all of its receipts are written atomically, so no
  receipt is claimable before its siblings exist.
- A receipt is claimed at most once (conditional update on ``started_at``).

Usage:
    bus = EventBus(repository, modules, SignalBroadcaster())
    result = await bus.emit_event("billing", "billing:invoice_created", {"id": "42"})
    await bus.notify_pending_events()
    if await bus.claim_receipt(result.event.id, "ledger"):
        ...
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Collection

from awoc.core.exceptions import (
    ForbiddenEmitError,
    InvalidEventKeyError,
    TargetAccessDeniedError,
)
from awoc.core.logging import get_logger
from awoc.db.repository import BaseRepository
from awoc.models.events import EVENT_KEY_PATTERN, Event, EventReceipt, PendingReceiptGroup
from awoc.models.tasks import TargetLocation, utcnow
from awoc.orchestrator.authorization import ModuleRegistry
from awoc.services.signals import PendingSignal, SignalBroadcaster

logger = get_logger(__name__)

PublishHook = Callable[[Event, list[EventReceipt]], Awaitable[Any]]


@dataclass(frozen=True)
class EmitResult:
    event: Event
    receipts: list[EventReceipt]


class EventBus:
    """
    Event publication and receipt bookkeeping.

    Parameters
    ----------
    repository
        Event and receipt store.
    modules
        Answers emit authorization, subscriber sets and scope checks.
    broadcaster
        Delivers "events pending" signals; LOG-only when omitted.
    on_published
        Optional hook awaited after the event is committed, e.g. to hand
        receipts to the orchestrator without waiting for the next sweep.
    """

    def __init__(
        self,
        repository: BaseRepository,
        modules: ModuleRegistry,
        broadcaster: SignalBroadcaster | None = None,
        on_published: PublishHook | None = None,
    ) -> None:
        self._repo = repository
        self._modules = modules
        self._broadcaster = broadcaster or SignalBroadcaster()
        self._on_published = on_published

    def set_publish_hook(self, hook: PublishHook | None) -> None:
        self._on_published = hook

    async def emit_event(
        self,
        emitter_identifier: str,
        event_key: str,
        data: dict[str, Any] | None = None,
        *,
        target_user_id: str | None = None,
        target_location: TargetLocation | None = None,
    ) -> EmitResult:
        """
        Publish an event.

        Raises ``InvalidEventKeyError``, ``ForbiddenEmitError`` or
        ``TargetAccessDeniedError``.  Subscribers that may not access the
        event's target are left out of the receipt set.
        """
        if not EVENT_KEY_PATTERN.match(event_key):
            raise InvalidEventKeyError(
                f"Event key '{event_key}' is not of the form 'domain:name'",
                details={"event_key": event_key},
            )
        if not self._modules.can_emit(emitter_identifier, event_key):
            raise ForbiddenEmitError(
                f"'{emitter_identifier}' may not emit '{event_key}'",
                details={"emitter": emitter_identifier, "event_key": event_key},
            )
        if not (
            self._modules.can_access_location(emitter_identifier, target_location)
            and self._modules.can_access_user(emitter_identifier, target_user_id)
        ):
            raise TargetAccessDeniedError(
                f"'{emitter_identifier}' may not address the event target",
                details={"emitter": emitter_identifier, "event_key": event_key},
            )

        subscribers = [
            subscriber
            for subscriber in self._modules.subscribers_for(event_key)
            if self._modules.can_access_location(subscriber, target_location)
            and self._modules.can_access_user(subscriber, target_user_id)
        ]
        event = Event(
            event_key=event_key,
            emitter_identifier=emitter_identifier,
            target_user_id=target_user_id,
            target_location=target_location,
            data=dict(data or {}),
        )
        receipts = await self._repo.insert_event_with_receipts(event, subscribers)
        logger.info(
            "event.emitted",
            event_id=str(event.id),
            event_key=event_key,
            emitter=emitter_identifier,
            receipts=len(receipts),
        )

        if self._on_published is not None and receipts:
            try:
                await self._on_published(event, receipts)
            except Exception:
                # the event is committed; the sweep picks the receipts up
                logger.exception("event.publish_hook_failed", event_id=str(event.id))
        return EmitResult(event=event, receipts=receipts)

    async def notify_pending_events(self) -> list[PendingReceiptGroup]:
        """Broadcast one signal per (subscriber, event key) with unclaimed receipts."""
        groups = await self._repo.count_pending_receipts()
        for group in groups:
            await self._broadcaster.broadcast(
                PendingSignal(
                    subscriber_identifier=group.subscriber_identifier,
                    event_key=group.event_key,
                    count=group.count,
                )
            )
        if groups:
            logger.debug("event.pending_notified", groups=len(groups))
        return groups

    async def claim_receipt(
        self, event_id: uuid.UUID, subscriber_identifier: str
    ) -> bool:
        claimed = await self._repo.claim_receipt(
            event_id, subscriber_identifier, utcnow()
        )
        logger.debug(
            "event.receipt_claim",
            event_id=str(event_id),
            subscriber=subscriber_identifier,
            claimed=claimed,
        )
        return claimed

    async def list_unclaimed_receipts(
        self, limit: int = 100, handled: Collection[tuple[str, str]] | None = None
    ) -> list[EventReceipt]:
        return await self._repo.list_unclaimed_receipts(limit, handled)

    async def get_event(self, event_id: uuid.UUID) -> Event | None:
        return await self._repo.get_event(event_id)

    async def list_receipts(self, event_id: uuid.UUID) -> list[EventReceipt]:
        return await self._repo.list_receipts(event_id)
