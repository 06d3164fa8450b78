"""Scene entity - shooting scene / style configuration."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from pixelforge.core.timezone import utc_now


class Scene(SQLModel, table=True):
    """Scene drives prompt building and credit pricing."""

    __tablename__ = "scenes"  # type: ignore[assignment]

    id: str = Field(primary_key=True, max_length=100)
    name: str = Field(max_length=255)
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None)
    prompt_template: Optional[str] = Field(default=None)
    base_credits: int = Field(default=0, ge=0)
    credits_per_image: int = Field(default=1, ge=0)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now)
