"""Work entity - user-visible result record of a task."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from pixelforge.core.timezone import utc_now


class WorkStatus(str, Enum):
    """Work lifecycle status, mirrors the task's user-facing status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Work(SQLModel, table=True):
    """Work holds final images and denormalized metadata for listing without joining tasks."""

    __tablename__ = "works"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(unique=True, index=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    type: str = Field(max_length=50)
    status: WorkStatus = Field(default=WorkStatus.PENDING, index=True)
    images: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    original_images: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    scene_id: Optional[str] = Field(default=None, max_length=100)

    # Pose variation lineage
    reference_work_id: Optional[UUID] = Field(default=None)
    variation_type: Optional[str] = Field(default=None, max_length=50)
    pose_description: Optional[str] = Field(default=None, max_length=1000)

    ai_model: Optional[str] = Field(default=None, max_length=255)
    ai_prompt: Optional[str] = Field(default=None)
    ai_description: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None, max_length=1000)

    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = Field(default=None)
