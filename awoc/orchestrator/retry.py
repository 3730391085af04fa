"""
AWOC — Retry Policy
=====================
Decides whether a failed task is requeued.

A failure is retried only when its error envelope carries ``retry: true``
and the attempt limit has not been reached.  The retry is a new task; the
failed one stays failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from awoc.core.config import get_settings
from awoc.models.tasks import Task, utcnow


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    reason: str
    delay_seconds: float = 0.0
    next_attempt: int | None = None

    def not_before(self, now: datetime | None = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.delay_seconds)


class RetryPolicy:
    """
    Parameters
    ----------
    max_attempts
        Upper bound on attempts (first run included) when a task
        definition does not set its own.
    default_delay_seconds
        Delay used when the envelope requests a retry without a delay.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        default_delay_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self.max_attempts = max_attempts or settings.max_task_attempts
        self.default_delay_seconds = (
            default_delay_seconds
            if default_delay_seconds is not None
            else settings.default_retry_delay_seconds
        )

    def decide(self, task: Task, max_attempts: int | None = None) -> RetryDecision:
        if task.success is not False or task.error is None:
            return RetryDecision(retry=False, reason="not failed")
        if not task.error.retry:
            return RetryDecision(retry=False, reason="no retry directive")
        limit = max_attempts or self.max_attempts
        if task.attempt >= limit:
            return RetryDecision(retry=False, reason=f"attempt limit {limit} reached")
        delay = task.error.retry_delay_seconds
        return RetryDecision(
            retry=True,
            reason="retry requested",
            delay_seconds=delay if delay is not None else self.default_delay_seconds,
            next_attempt=task.attempt + 1,
        )
