"""Pending reminder registry.

Delivery (desktop toast, web push, ...) is somebody else's job: this module
only decides which tasks deserve a reminder and when, keyed by task id so a
reschedule replaces the previous entry.
"""
from datetime import datetime
from typing import Callable, NamedTuple, Optional
import logging
import uuid

from .models import Task
from .utils import as_utc, now_utc

logger = logging.getLogger(__name__)

REMINDER_BODY = 'Time for your reminder'


class PendingNotification(NamedTuple):
    task_id: uuid.UUID
    title: str
    body: str
    fire_at: datetime


class NotificationCenter:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or now_utc
        self.pending: dict[uuid.UUID, PendingNotification] = {}

    def schedule(self, task: Task) -> bool:
        """Register a reminder; only open, timed tasks due in the future qualify."""
        if task.is_completed or not task.has_specific_time or task.scheduled_date is None:
            return False
        if as_utc(task.scheduled_date) <= as_utc(self._clock()):
            return False
        self.pending[task.id] = PendingNotification(task.id, task.title, REMINDER_BODY, as_utc(task.scheduled_date))
        logger.debug('reminder scheduled for %s at %s', task.id, task.scheduled_date)
        return True

    def cancel(self, task_id: uuid.UUID) -> None:
        if self.pending.pop(task_id, None) is not None:
            logger.debug('reminder cancelled for %s', task_id)

    def update(self, task: Task) -> bool:
        self.cancel(task.id)
        return self.schedule(task)

    def cancel_all(self) -> None:
        self.pending.clear()

    def due(self, now: Optional[datetime] = None) -> list[PendingNotification]:
        """Pop and return every reminder whose time has come, earliest first."""
        cutoff = as_utc(now or self._clock())
        fired = sorted((p for p in self.pending.values() if p.fire_at <= cutoff), key=lambda p: p.fire_at)
        for p in fired:
            del self.pending[p.task_id]
        return fired
