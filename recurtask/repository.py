from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .errors import PersistenceError
from .models import Task


logger = logging.getLogger("recurtask.repository")


class TaskRepository(Protocol):
    """Storage port consumed by the lifecycle manager, selector and dispatch loop."""

    def get_task(self, task_id: int, *, owner_id: int) -> Optional[Task]: ...

    def list_reminder_candidates(self, *, owner_id: int) -> list[Task]: ...

    def save_completion(self, completed: Task, spawned: Optional[Task]) -> None: ...

    def mark_notification_sent(self, task: Task, *, when_utc: datetime) -> bool: ...


def _execute_with_retry(db: Session, stmt, *, attempts: int = 5, base_sleep: float = 0.05) -> int:
    """Run a write statement and commit it, retrying on SQLite lock contention.

    A rollback discards the statement, so every attempt re-executes it and the
    returned rowcount always belongs to the committed attempt.
    """

    tries = max(1, int(attempts))
    delay = float(base_sleep)
    for i in range(tries):
        try:
            rowcount = db.execute(stmt).rowcount
            db.commit()
            return int(rowcount or 0)
        except OperationalError:
            db.rollback()
            if i >= tries - 1:
                raise
            time.sleep(delay)
            delay = min(delay * 2.0, 1.0)


class SqlTaskRepository:
    """TaskRepository backed by one SQLAlchemy session.

    A repository is a unit of work: use one per request, or one per dispatch
    loop, never the same instance from two threads at once.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_task(self, task_id: int, *, owner_id: int) -> Optional[Task]:
        return (
            self.db.query(Task)
            .options(selectinload(Task.tags), selectinload(Task.subtasks))
            .filter(Task.id == int(task_id))
            .filter(Task.user_id == int(owner_id))
            .first()
        )

    def list_reminder_candidates(self, *, owner_id: int) -> list[Task]:
        # The window comparison (due - offset <= now) is applied by the selector.
        return (
            self.db.query(Task)
            .filter(Task.user_id == int(owner_id))
            .filter(Task.completed.is_(False))
            .filter(Task.reminder_offset_minutes.is_not(None))
            .filter(Task.due_at_utc.is_not(None))
            .filter(Task.last_notification_sent_at_utc.is_(None))
            .order_by(Task.due_at_utc.asc(), Task.id.asc())
            .all()
        )

    def save_completion(self, completed: Task, spawned: Optional[Task]) -> None:
        """Persist a completion and its spawned occurrence in one commit."""
        try:
            self.db.add(completed)
            if spawned is not None:
                self.db.add(spawned)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to save completion of task {completed.id}: {e}") from e

        self.db.refresh(completed)
        if spawned is not None:
            self.db.refresh(spawned)

    def mark_notification_sent(self, task: Task, *, when_utc: datetime) -> bool:
        """Write the sent-marker for the task's current due date.

        Returns False when the task no longer qualifies (completed, re-dated or
        already marked). This is not a claim: two pollers can still both deliver.
        """
        task_id = int(task.id)
        stmt = (
            update(Task)
            .where(Task.id == task_id)
            .where(Task.user_id == int(task.user_id))
            .where(Task.completed.is_(False))
            .where(Task.due_at_utc == task.due_at_utc)
            .where(Task.last_notification_sent_at_utc.is_(None))
            .values(last_notification_sent_at_utc=when_utc)
            .execution_options(synchronize_session=False)
        )
        try:
            rowcount = _execute_with_retry(self.db, stmt)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to mark task {task_id} as notified: {e}") from e

        # Keep the in-memory object in step with the row.
        self.db.expire(task)
        return rowcount > 0
