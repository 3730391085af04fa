"""
AWOC — Pending-Event Signals
==============================
Delivers "events pending" signals to subscribers.  A signal tells a
subscriber that unclaimed receipts exist for an event key; it is not a
claim and carries no event payload.

Usage:
    broadcaster = SignalBroadcaster()                      # LOG channel
    broadcaster = SignalBroadcaster(redis=await get_redis())  # + REDIS
    await broadcaster.broadcast(PendingSignal(...))

Design: Default channel is LOG.  When a Redis client is supplied the
        REDIS channel publishes JSON to ``<prefix>:events_pending:<subscriber>``.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Awaitable, Callable

from awoc.core.logging import get_logger
from awoc.core.redis import RedisClient, RedisNamespace

logger = get_logger(__name__)


class SignalChannel(StrEnum):
    """Supported signal channels."""

    LOG = "LOG"
    REDIS = "REDIS"


@dataclass(frozen=True)
class PendingSignal:
    """Unclaimed receipt count for one subscriber and event key."""

    subscriber_identifier: str
    event_key: str
    count: int
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data)


class SignalBroadcaster:
    """Fans signals out to every configured channel and keeps a short history."""

    def __init__(
        self,
        redis: RedisClient | None = None,
        history_size: int = 500,
    ) -> None:
        self._redis = redis
        self._history: deque[PendingSignal] = deque(maxlen=history_size)
        self._handlers: dict[
            SignalChannel, Callable[[PendingSignal], Awaitable[None]]
        ] = {SignalChannel.LOG: self._handle_log}
        if redis is not None:
            self._handlers[SignalChannel.REDIS] = self._handle_redis

    @property
    def channels(self) -> list[SignalChannel]:
        return list(self._handlers)

    @property
    def history(self) -> list[PendingSignal]:
        """Return the most recently broadcast signals."""
        return list(self._history)

    async def broadcast(self, signal: PendingSignal) -> None:
        """
        Deliver a signal on every channel.

        Parameters
        ----------
        signal
            The pending-receipt aggregate to announce.
        """
        for handler in self._handlers.values():
            await handler(signal)
        self._history.append(signal)

    # ── Channel handlers ────────────────────────────────────────────

    async def _handle_log(self, signal: PendingSignal) -> None:
        logger.info(
            "signal.events_pending",
            subscriber=signal.subscriber_identifier,
            event_key=signal.event_key,
            count=signal.count,
        )

    async def _handle_redis(self, signal: PendingSignal) -> None:
        receivers = await self._redis.publish(
            RedisNamespace.EVENTS_PENDING,
            signal.subscriber_identifier,
            signal.to_json(),
        )
        logger.debug(
            "signal.published",
            subscriber=signal.subscriber_identifier,
            event_key=signal.event_key,
            receivers=receivers,
        )
