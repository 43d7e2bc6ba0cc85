from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

from .clock import Clock, SystemClock
from .errors import TaskNotFoundError
from .models import Subtask, Task
from .recurrence import compute_next_due_utc
from .repository import TaskRepository


logger = logging.getLogger("recurtask.lifecycle")


@dataclass(frozen=True)
class CompletionResult:
    completed_task: Task
    spawned_task: Optional[Task] = None


def build_next_occurrence(task: Task, *, next_due_utc) -> Task:
    """Create the ACTIVE task that follows `task`.

    Carries title, priority, recurrence and reminder settings, the same tag
    identities, and fresh unchecked copies of the subtasks.
    """
    spawned = Task(
        user_id=task.user_id,
        title=task.title,
        priority=task.priority,
        completed=False,
        due_at_utc=next_due_utc,
        is_recurring=True,
        recurrence_pattern=task.recurrence_pattern,
        reminder_offset_minutes=task.reminder_offset_minutes,
        last_notification_sent_at_utc=None,
    )
    spawned.tags = list(task.tags or [])
    spawned.subtasks = [
        Subtask(title=st.title, position=st.position, completed=False)
        for st in sorted(task.subtasks or [], key=lambda s: (s.position, s.id or 0))
    ]
    return spawned


class OccurrenceLifecycleManager:
    def __init__(self, repository: TaskRepository, *, tz: ZoneInfo, clock: Clock | None = None):
        self.repository = repository
        self.tz = tz
        self.clock = clock or SystemClock()

    def complete(self, task_id: int, *, owner_id: int) -> CompletionResult:
        """Complete one occurrence and spawn the next one for recurring tasks.

        Completing an already-completed task is a no-op. The completion and the
        spawned task are saved together; a storage failure raises PersistenceError.
        """
        task = self.repository.get_task(task_id, owner_id=owner_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if task.completed:
            logger.debug("Task %s already completed; nothing to do", task.id)
            return CompletionResult(completed_task=task)

        spawned: Optional[Task] = None
        if task.is_recurring:
            if task.due_at_utc is None:
                # Rejected at creation; tolerated here without spawning.
                logger.warning("Recurring task %s has no due date; completing without next occurrence", task.id)
            else:
                # Raises InvalidPatternError before anything is modified.
                next_due = compute_next_due_utc(task.due_at_utc, task.recurrence_pattern, tz=self.tz)
                spawned = build_next_occurrence(task, next_due_utc=next_due)

        task.completed = True
        task.completed_at_utc = self.clock.now()

        self.repository.save_completion(task, spawned)

        if spawned is not None:
            logger.info("Completed task %s; next occurrence %s due %s", task.id, spawned.id, spawned.due_at_utc)
        else:
            logger.info("Completed task %s", task.id)
        return CompletionResult(completed_task=task, spawned_task=spawned)
