from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import TITLE_MAX_LENGTH, PermissionState, Priority, RecurrencePattern


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class TagOut(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class SubtaskOut(BaseModel):
    id: int
    title: str
    completed: bool
    position: int

    class Config:
        from_attributes = True


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)

    # Naive datetimes are read as wall-clock time in the app timezone.
    due_at: Optional[datetime] = Field(default=None)
    priority: Priority = Field(default=Priority.medium)

    is_recurring: bool = False
    recurrence_pattern: Optional[str] = Field(
        default=None,
        description="Required when is_recurring: daily, weekly, monthly, or yearly.",
    )
    reminder_minutes: Optional[int] = Field(
        default=None,
        description="Minutes before due_at at which a reminder fires. Ignored without a due date.",
    )

    tags: List[str] = Field(default_factory=list)
    subtasks: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    """Partial update. Sending null for due_at, recurrence_pattern or reminder_minutes clears it."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    due_at: Optional[datetime] = None
    priority: Optional[Priority] = None
    is_recurring: Optional[bool] = None
    recurrence_pattern: Optional[str] = None
    reminder_minutes: Optional[int] = None
    tags: Optional[List[str]] = None


class TaskOut(BaseModel):
    id: int
    user_id: int
    title: str
    priority: Priority
    completed: bool
    completed_at_utc: Optional[datetime]
    due_at_utc: Optional[datetime]

    is_recurring: bool
    recurrence_pattern: Optional[RecurrencePattern]
    reminder_offset_minutes: Optional[int]
    last_notification_sent_at_utc: Optional[datetime]

    tags: List[TagOut] = []
    subtasks: List[SubtaskOut] = []

    class Config:
        from_attributes = True


class TaskCompleteResponse(BaseModel):
    completed_task: TaskOut
    next_task: Optional[TaskOut] = None


# ---- Reminders ---------------------------------------------------------------------


class RemindersOut(BaseModel):
    reminders: List[TaskOut] = []


class MarkSentIn(BaseModel):
    task_id: int


class MarkSentOut(BaseModel):
    task_id: int
    marked: bool


class PermissionOut(BaseModel):
    state: PermissionState


class PermissionRequestIn(BaseModel):
    decision: PermissionState = Field(..., description="The answer the user gave when asked: granted or denied.")
