"""AIModelConfig entity - ranked AI backends available for generation."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixelforge.core.timezone import utc_now


class AIModelConfig(SQLModel, table=True):
    """AI model the pipeline may call, ranked by priority, weight and cost."""

    __tablename__ = "ai_models"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255)
    model_ref: str = Field(max_length=255)  # Replicate "owner/model" or "owner/model:version"
    priority: int = Field(default=0)
    weight: int = Field(default=0)
    cost_per_image: int = Field(default=0, ge=0)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now)
