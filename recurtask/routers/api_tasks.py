from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..auth import get_current_user_api
from ..crud import create_task, update_task
from ..db import get_db
from ..errors import PersistenceError, TaskCompletedError, TaskNotFoundError
from ..lifecycle import OccurrenceLifecycleManager
from ..models import User
from ..repository import SqlTaskRepository
from ..schemas import TaskCompleteResponse, TaskCreate, TaskOut, TaskUpdate


logger = logging.getLogger("recurtask.api.tasks")

router = APIRouter()


@router.post("/", response_model=TaskOut)
def api_create_task(
    payload: TaskCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    try:
        task = create_task(
            db,
            owner=current_user,
            tz=request.app.state.tz,
            title=payload.title,
            due_at=payload.due_at,
            priority=payload.priority,
            is_recurring=payload.is_recurring,
            recurrence_pattern=payload.recurrence_pattern,
            reminder_minutes=payload.reminder_minutes,
            tags=payload.tags,
            subtasks=payload.subtasks,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return task


@router.get("/{task_id}", response_model=TaskOut)
def api_get_task(
    task_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    task = SqlTaskRepository(db).get_task(task_id, owner_id=current_user.id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.put("/{task_id}", response_model=TaskOut)
def api_update_task(
    task_id: int,
    payload: TaskUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    task = SqlTaskRepository(db).get_task(task_id, owner_id=current_user.id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    # Only fields present in the body are applied; explicit nulls clear.
    fields = payload.model_dump(include=payload.model_fields_set)
    try:
        updated = update_task(db, task=task, tz=request.app.state.tz, **fields)
    except TaskCompletedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return updated


@router.post("/{task_id}/complete", response_model=TaskCompleteResponse)
def api_complete_task(
    task_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_api),
):
    manager = OccurrenceLifecycleManager(
        SqlTaskRepository(db),
        tz=request.app.state.tz,
        clock=request.app.state.clock,
    )
    try:
        result = manager.complete(task_id, owner_id=current_user.id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError:
        logger.exception("Failed to complete task %s", task_id)
        raise HTTPException(status_code=500, detail="Failed to complete task")

    spawned = result.spawned_task
    return TaskCompleteResponse(
        completed_task=TaskOut.model_validate(result.completed_task),
        next_task=TaskOut.model_validate(spawned) if spawned is not None else None,
    )
