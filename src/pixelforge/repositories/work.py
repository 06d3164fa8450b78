"""Work repository for PixelForge backend.

Provides data access methods for Work (result record) entities.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelforge.core.timezone import utc_now
from pixelforge.models.work import Work, WorkStatus


class WorkRepository:
    """Repository for Work entities.

    A Work is 1:1 with a Task and is addressed by task_id from the pipeline
    side and by its own id from the user side.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, work: Work) -> Work:
        """Persist new work to database.

        Args:
            work: Work entity to persist

        Returns:
            Persisted work with generated ID
        """
        self.session.add(work)
        await self.session.flush()
        return work

    async def get_by_id(self, work_id: UUID) -> Work | None:
        """Retrieve work by UUID.

        Args:
            work_id: Work's unique identifier

        Returns:
            Work if found, None otherwise
        """
        result = await self.session.execute(
            select(Work)
            .where(Work.id == work_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_task_id(self, task_id: UUID) -> Work | None:
        """Retrieve the work belonging to a task."""
        result = await self.session.execute(
            select(Work)
            .where(Work.task_id == task_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, work_id: UUID, user_id: UUID) -> Work | None:
        """Retrieve work only if it belongs to the given user."""
        result = await self.session.execute(
            select(Work).where(Work.id == work_id, Work.user_id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_by_user(
        self,
        user_id: UUID,
        status: WorkStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Work]:
        """Retrieve the user's works, newest first.

        Args:
            user_id: Owner of the works
            status: Optional status filter
            limit: Maximum number of works to return (default: 20)
            offset: Number of works to skip (default: 0)

        Returns:
            List of works ordered by creation time (newest first)
        """
        query = select(Work).where(Work.user_id == user_id)  # type: ignore[arg-type]
        if status is not None:
            query = query.where(Work.status == status)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(Work.created_at.desc()).limit(limit).offset(offset)  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def set_status(
        self, task_id: UUID, status: WorkStatus, error_message: str | None = None
    ) -> None:
        """Update the status of the task's work.

        Args:
            task_id: Owning task
            status: New status
            error_message: Failure description, stored when given
        """
        values: dict[str, Any] = {"status": status, "updated_at": utc_now()}
        if error_message is not None:
            values["error_message"] = error_message[:1000]
        await self.session.execute(
            update(Work)
            .where(Work.task_id == task_id)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def mark_completed(self, task_id: UUID, images: list[dict], **metadata: Any) -> None:
        """Finalize the task's work with its images.

        Args:
            task_id: Owning task
            images: Final image descriptors ({url, width, height})
            **metadata: Extra columns (ai_model, ai_prompt, ai_description)
        """
        now = utc_now()
        await self.session.execute(
            update(Work)
            .where(Work.task_id == task_id)  # type: ignore[arg-type]
            .values(
                status=WorkStatus.COMPLETED,
                images=list(images),
                completed_at=now,
                updated_at=now,
                **metadata,
            )
            .execution_options(synchronize_session=False)
        )

    async def delete(self, work: Work) -> None:
        """Delete work owned by a user. The task row is left untouched."""
        await self.session.delete(work)
        await self.session.flush()
