"""Generation task API endpoints.

This module implements REST endpoints for the task lifecycle:
- POST /api/tasks - Create a task (charges credits)
- GET /api/tasks/{task_id} - Poll task progress
- POST /api/tasks/{task_id}/cancel - Cancel a non-terminal task (refunds credits)

The caller is identified by the X-User-Id header.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from pixelforge.api.dependencies import get_current_user_id, get_dispatcher
from pixelforge.services.dispatcher import (
    CancelOutcome,
    CreateTaskRequest,
    CreateTaskResult,
    TaskDispatcher,
    TaskProgress,
)
from pixelforge.services.exceptions import (
    InsufficientCreditsError,
    TaskNotFoundError,
    TaskValidationError,
    TooManyActiveTasksError,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/tasks", tags=["tasks"])


class CancelTaskResponse(BaseModel):
    """Response model for task cancellation."""

    task_id: UUID
    outcome: CancelOutcome = Field(..., description="ok, not_found or not_cancelable")


@router.post("", response_model=CreateTaskResult, status_code=status.HTTP_201_CREATED)
async def create_task(
    request: CreateTaskRequest,
    user_id: UUID = Depends(get_current_user_id),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
) -> CreateTaskResult:
    """Create a generation task.

    Raises:
        HTTPException 400: Invalid request for the task type
        HTTPException 402: Not enough credits
        HTTPException 429: Too many active tasks
        HTTPException 500: Unexpected error
    """
    try:
        return await dispatcher.create_task(user_id, request)

    except TaskValidationError as e:
        logger.info("task.create.rejected", user_id=str(user_id), reason=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InsufficientCreditsError as e:
        logger.info(
            "task.create.insufficient_credits",
            user_id=str(user_id),
            required=e.required,
            available=e.available,
        )
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
    except TooManyActiveTasksError as e:
        logger.info("task.create.too_many_active", user_id=str(user_id), limit=e.limit)
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    except Exception as e:
        logger.error(
            "task.create.unexpected_error",
            user_id=str(user_id),
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create task. Please try again later.",
        )


@router.get("/{task_id}", response_model=TaskProgress)
async def get_task_progress(
    task_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
) -> TaskProgress:
    """Get a task's state, progress percentage and, once completed, its images.

    Raises:
        HTTPException 404: Task not found for this user
    """
    try:
        return await dispatcher.get_progress(task_id, user_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{task_id}/cancel", response_model=CancelTaskResponse)
async def cancel_task(
    task_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
) -> CancelTaskResponse:
    """Cancel a task.

    Raises:
        HTTPException 404: Task not found for this user
        HTTPException 409: Task already completed, failed or cancelled
    """
    outcome = await dispatcher.cancel_task(task_id, user_id)
    if outcome == CancelOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    if outcome == CancelOutcome.NOT_CANCELABLE:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Task can no longer be cancelled"
        )
    return CancelTaskResponse(task_id=task_id, outcome=outcome)
