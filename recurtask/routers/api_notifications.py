from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..auth import get_current_user_api
from ..db import get_db
from ..errors import PersistenceError, TaskNotFoundError
from ..models import User
from ..permissions import PermissionGate, UserPermissionPlatform
from ..reminders import ReminderDueSelector, mark_notification_sent, poll_due_reminders
from ..repository import SqlTaskRepository
from ..schemas import MarkSentIn, MarkSentOut, PermissionOut, PermissionRequestIn, RemindersOut, TaskOut
from ..utils.time_utils import normalize_datetime_to_utc_naive


logger = logging.getLogger("recurtask.api.notifications")

router = APIRouter()


def _resolve_now(request: Request, now: datetime | None) -> datetime:
    if now is None:
        return request.app.state.clock.now()
    return normalize_datetime_to_utc_naive(now, request.app.state.tz)


@router.get("/due", response_model=RemindersOut)
def api_poll_due_reminders(
    request: Request,
    now: datetime | None = Query(default=None, description="Evaluation time; defaults to server time."),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    """Return due reminders, marking each as sent before responding."""
    repo = SqlTaskRepository(db)
    reminders = poll_due_reminders(
        ReminderDueSelector(repo),
        repo,
        owner_id=int(current_user.id),
        now=_resolve_now(request, now),
    )
    return RemindersOut(reminders=[TaskOut.model_validate(t) for t in reminders])


@router.post("/sent", response_model=MarkSentOut)
def api_mark_sent(
    payload: MarkSentIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    try:
        marked = mark_notification_sent(
            SqlTaskRepository(db),
            task_id=payload.task_id,
            owner_id=int(current_user.id),
            now=request.app.state.clock.now(),
        )
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except PersistenceError:
        logger.exception("Failed to mark task %s as notified", payload.task_id)
        raise HTTPException(status_code=500, detail="Failed to mark notification as sent")
    return MarkSentOut(task_id=payload.task_id, marked=marked)


@router.get("/permission", response_model=PermissionOut)
def api_get_permission(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    gate = PermissionGate(UserPermissionPlatform(db, user_id=int(current_user.id)))
    return PermissionOut(state=gate.state)


@router.post("/permission", response_model=PermissionOut)
def api_request_permission(
    payload: PermissionRequestIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    """Record the user's answer to an explicit permission request.

    Only an undetermined permission can change here.
    """
    gate = PermissionGate(UserPermissionPlatform(db, user_id=int(current_user.id), decision=payload.decision))
    return PermissionOut(state=gate.request())
