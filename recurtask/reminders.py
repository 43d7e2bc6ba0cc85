from __future__ import annotations

import logging
from datetime import datetime

from .errors import PersistenceError, TaskNotFoundError
from .models import Task
from .repository import TaskRepository


logger = logging.getLogger("recurtask.reminders")


def reminder_is_due(task: Task, now: datetime) -> bool:
    """True when the reminder window for the task's current due date is open and unsent."""
    if task.completed:
        return False
    if task.last_notification_sent_at_utc is not None:
        return False
    window_start = task.reminder_at_utc()
    if window_start is None:
        # No offset or no due date: the reminder is inert.
        return False
    return window_start <= now


class ReminderDueSelector:
    """Stateless query for tasks whose reminder should fire now.

    All "already notified" state lives on the task row, so the selector can be
    called on any schedule from any process.
    """

    def __init__(self, repository: TaskRepository):
        self.repository = repository

    def due_reminders(self, owner_id: int, now: datetime) -> list[Task]:
        candidates = self.repository.list_reminder_candidates(owner_id=int(owner_id))
        due = [t for t in candidates if reminder_is_due(t, now)]
        due.sort(key=lambda t: (t.due_at_utc, t.id))
        return due


def poll_due_reminders(
    selector: ReminderDueSelector,
    repository: TaskRepository,
    *,
    owner_id: int,
    now: datetime,
) -> list[Task]:
    """Select due reminders and mark them sent before returning them.

    Tasks whose marker could not be written are left out so they are offered
    again on the next poll.
    """
    reminders: list[Task] = []
    for task in selector.due_reminders(owner_id, now):
        task_id = task.id
        try:
            marked = repository.mark_notification_sent(task, when_utc=now)
        except PersistenceError:
            logger.exception("Failed to mark reminder as sent for task %s", task_id)
            continue
        if marked:
            reminders.append(task)
        else:
            logger.debug("Task %s no longer eligible for a reminder", task_id)
    return reminders


def mark_notification_sent(
    repository: TaskRepository,
    *,
    task_id: int,
    owner_id: int,
    now: datetime,
) -> bool:
    """Record that a reminder was shown for a task (client-driven delivery)."""
    task = repository.get_task(task_id, owner_id=owner_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return repository.mark_notification_sent(task, when_utc=now)
