"""Work (result record) API endpoints.

- GET /api/works - Paginated list of the caller's works
- DELETE /api/works/{work_id} - Delete one of the caller's works
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from pixelforge.api.dependencies import get_current_user_id, get_uow_factory
from pixelforge.models.work import WorkStatus

logger = structlog.get_logger()
router = APIRouter(prefix="/api/works", tags=["works"])


class WorkDTO(BaseModel):
    """Data Transfer Object for work information in API responses."""

    id: UUID
    task_id: UUID
    type: str
    status: WorkStatus
    images: list[dict] = Field(default_factory=list, description="Final images {url, width, height}")
    scene_id: str | None = None
    reference_work_id: UUID | None = None
    pose_description: str | None = None
    ai_description: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class WorksResponse(BaseModel):
    """Response model for paginated works list."""

    works: list[WorkDTO]
    offset: int
    limit: int


@router.get("", response_model=WorksResponse)
async def list_works(
    status_filter: WorkStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
) -> WorksResponse:
    """List the caller's works, newest first."""
    async with await uow_factory() as uow:
        works = await uow.works.list_by_user(user_id, status=status_filter, limit=limit, offset=offset)

    return WorksResponse(
        works=[WorkDTO.model_validate(work, from_attributes=True) for work in works],
        offset=offset,
        limit=limit,
    )


@router.delete("/{work_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_work(
    work_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
) -> None:
    """Delete one of the caller's works. The task record is kept.

    Raises:
        HTTPException 404: Work not found for this user
    """
    async with await uow_factory() as uow:
        work = await uow.works.get_for_user(work_id, user_id)
        if work is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Work not found")
        await uow.works.delete(work)

    logger.info("work.deleted", work_id=str(work_id), user_id=str(user_id))
