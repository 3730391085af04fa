"""
AWOC — Event Models
=====================
Events, per-subscriber receipts and the pending-receipt aggregate used
for "events pending" signals.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from awoc.models.tasks import TargetLocation, utcnow

# domain:name, e.g. ``billing:invoice_created`` or ``core:task_completed``
EVENT_KEY_PATTERN = re.compile(r"^[a-z0-9_]+:[a-z0-9_.\-]+$")


def split_event_key(event_key: str) -> tuple[str, str]:
    domain, _, name = event_key.partition(":")
    return domain, name


class Event(BaseModel):
    """An immutable occurrence published by an emitter."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_key: str
    emitter_identifier: str
    target_user_id: str | None = None
    target_location: TargetLocation | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class EventReceipt(BaseModel):
    """Delivery record of one event to one subscriber."""

    event_id: uuid.UUID
    subscriber_identifier: str
    event_key: str
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None

    @property
    def claimed(self) -> bool:
        return self.started_at is not None


@dataclass(frozen=True)
class PendingReceiptGroup:
    """Count of unclaimed receipts for one (subscriber, event key)."""

    subscriber_identifier: str
    event_key: str
    count: int
