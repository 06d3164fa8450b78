"""User entity - credit balance holder."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixelforge.core.timezone import utc_now


class User(SQLModel, table=True):
    """User owns tasks and a credit balance. Mutated only by the credit ledger."""

    __tablename__ = "users"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    credits: int = Field(default=0, ge=0)
    total_consumed_credits: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
