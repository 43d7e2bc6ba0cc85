from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from .errors import TaskCompletedError
from .models import TITLE_MAX_LENGTH, Priority, RecurrencePattern, Subtask, Tag, Task, User
from .recurrence import validate_recurrence
from .utils.time_utils import normalize_datetime_to_utc_naive


logger = logging.getLogger("recurtask.crud")


_UNSET = object()


# ---------------------- Users ----------------------


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == int(user_id)).first()


def get_user_by_username(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def create_user(db: Session, *, username: str) -> User:
    name = str(username or "").strip()
    if not name:
        raise ValueError("username is required")
    if get_user_by_username(db, name):
        raise ValueError("Username already exists")

    user = User(username=name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ---------------------- Tags ----------------------


def _normalize_tag_name(tag: str) -> str:
    return " ".join(str(tag or "").strip().split())


def get_or_create_tags(db: Session, tag_names: Iterable[str]) -> list[Tag]:
    names = []
    for raw in tag_names:
        n = _normalize_tag_name(raw)
        if n and n not in names:
            names.append(n)

    tags: list[Tag] = []
    for n in names:
        tag = db.query(Tag).filter(Tag.name == n).first()
        if not tag:
            tag = Tag(name=n)
            db.add(tag)
            db.flush()
        tags.append(tag)
    return tags


# ---------------------- Tasks ----------------------


def _validate_title(title: str) -> str:
    t = str(title or "").strip()
    if not t:
        raise ValueError("Title is required")
    if len(t) > TITLE_MAX_LENGTH:
        raise ValueError(f"Title must be at most {TITLE_MAX_LENGTH} characters")
    return t


def _validate_priority(priority: Priority | str) -> Priority:
    try:
        return Priority(str(getattr(priority, "value", priority)).strip().lower())
    except ValueError as e:
        raise ValueError("Invalid priority. Must be high, medium, or low") from e


def _validate_reminder_minutes(minutes: Optional[int]) -> Optional[int]:
    if minutes is None:
        return None
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
        raise ValueError("Invalid reminder minutes. Must be a positive whole number")
    return int(minutes)


def create_task(
    db: Session,
    *,
    owner: User,
    title: str,
    tz: ZoneInfo,
    due_at: datetime | None = None,
    priority: Priority | str = Priority.medium,
    is_recurring: bool = False,
    recurrence_pattern: RecurrencePattern | str | None = None,
    reminder_minutes: Optional[int] = None,
    tags: Optional[Iterable[str]] = None,
    subtasks: Optional[Iterable[str]] = None,
) -> Task:
    due_utc = normalize_datetime_to_utc_naive(due_at, tz) if due_at is not None else None
    pattern = validate_recurrence(
        is_recurring=bool(is_recurring),
        due_at_utc=due_utc,
        recurrence_pattern=recurrence_pattern,
    )

    task = Task(
        user_id=owner.id,
        title=_validate_title(title),
        priority=_validate_priority(priority),
        completed=False,
        due_at_utc=due_utc,
        is_recurring=bool(is_recurring),
        recurrence_pattern=pattern,
        reminder_offset_minutes=_validate_reminder_minutes(reminder_minutes),
    )

    if tags:
        task.tags = get_or_create_tags(db, tags)
    if subtasks:
        task.subtasks = [
            Subtask(title=_validate_title(st), position=i, completed=False) for i, st in enumerate(subtasks)
        ]

    db.add(task)
    db.commit()
    db.refresh(task)
    logger.debug("Created task %s for user %s", task.id, owner.id)
    return task


def update_task(
    db: Session,
    *,
    task: Task,
    tz: ZoneInfo,
    title: Optional[str] = None,
    due_at=_UNSET,
    priority: Priority | str | None = None,
    is_recurring: Optional[bool] = None,
    recurrence_pattern=_UNSET,
    reminder_minutes=_UNSET,
    tags: Optional[Iterable[str]] = None,
) -> Task:
    """Apply a partial update.

    `due_at`, `recurrence_pattern` and `reminder_minutes` accept None to clear
    the field; leave them out to keep the current value. Changing the due date
    clears the reminder sent-marker.
    """
    if task.completed:
        raise TaskCompletedError(task.id)

    new_due = task.due_at_utc
    if due_at is not _UNSET:
        new_due = normalize_datetime_to_utc_naive(due_at, tz) if due_at is not None else None

    new_recurring = task.is_recurring if is_recurring is None else bool(is_recurring)
    new_pattern = task.recurrence_pattern if recurrence_pattern is _UNSET else recurrence_pattern
    pattern = validate_recurrence(
        is_recurring=new_recurring,
        due_at_utc=new_due,
        recurrence_pattern=new_pattern,
    )

    new_title = _validate_title(title) if title is not None else task.title
    new_priority = _validate_priority(priority) if priority is not None else task.priority
    new_reminder = (
        _validate_reminder_minutes(reminder_minutes) if reminder_minutes is not _UNSET else task.reminder_offset_minutes
    )

    task.title = new_title
    task.priority = new_priority
    task.reminder_offset_minutes = new_reminder
    task.due_at_utc = new_due
    task.is_recurring = new_recurring
    task.recurrence_pattern = pattern

    if tags is not None:
        task.tags = get_or_create_tags(db, tags)

    db.add(task)
    db.commit()
    db.refresh(task)
    return task
