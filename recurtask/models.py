from __future__ import annotations

import enum
from datetime import datetime, timedelta

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Table,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


TITLE_MAX_LENGTH = 255


class Priority(str, enum.Enum):
    high = "high"
    medium = "medium"
    low = "low"


class RecurrencePattern(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class PermissionState(str, enum.Enum):
    undetermined = "undetermined"
    granted = "granted"
    denied = "denied"


# Many-to-many association table
TaskTag = Table(
    "task_tags",
    Base.metadata,
    Column("task_id", ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("username", name="uq_users_username"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False)

    # Server-side answer to "may this account receive reminders?".
    notification_permission: Mapped[str] = mapped_column(
        Enum(PermissionState),
        default=PermissionState.undetermined,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    tasks: Mapped[list["Task"]] = relationship(
        "Task",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("name", name="uq_tags_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)

    tasks: Mapped[list["Task"]] = relationship(
        "Task",
        secondary=TaskTag,
        back_populates="tags",
    )


class Subtask(Base):
    """A checklist item belonging to one task occurrence."""

    __tablename__ = "subtasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(TITLE_MAX_LENGTH), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    task: Mapped["Task"] = relationship("Task", back_populates="subtasks")


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True)

    title: Mapped[str] = mapped_column(String(TITLE_MAX_LENGTH), nullable=False)
    priority: Mapped[str] = mapped_column(Enum(Priority), default=Priority.medium, nullable=False)

    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    completed_at_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    due_at_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence_pattern: Mapped[str | None] = mapped_column(Enum(RecurrencePattern), nullable=True)

    # Minutes before due_at_utc; read it through `reminder_offset`.
    reminder_offset_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Sent-marker for the current due date. Cleared whenever due_at_utc changes.
    last_notification_sent_at_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    user: Mapped[User] = relationship("User", back_populates="tasks")

    tags: Mapped[list[Tag]] = relationship(
        "Tag",
        secondary=TaskTag,
        back_populates="tasks",
    )

    subtasks: Mapped[list[Subtask]] = relationship(
        "Subtask",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Subtask.position",
    )

    @property
    def reminder_offset(self) -> timedelta | None:
        if self.reminder_offset_minutes is None:
            return None
        return timedelta(minutes=int(self.reminder_offset_minutes))

    def reminder_at_utc(self) -> datetime | None:
        """Start of the reminder window, or None when no reminder can fire."""
        offset = self.reminder_offset
        if offset is None or self.due_at_utc is None:
            return None
        return self.due_at_utc - offset


@event.listens_for(Task.due_at_utc, "set", active_history=True)
def _clear_sent_marker_on_due_change(target: Task, value, oldvalue, initiator) -> None:
    # A sent-marker never outlives the due date it was computed against.
    if value != oldvalue:
        target.last_notification_sent_at_utc = None
