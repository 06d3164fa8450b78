"""CreditTransaction entity - append-only credit log."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixelforge.core.timezone import utc_now


class CreditReason(str, Enum):
    """Why a balance changed."""

    TASK_DEBIT = "task_debit"
    TASK_REFUND = "task_refund"
    TOP_UP = "top_up"


class CreditTransaction(SQLModel, table=True):
    """One signed balance change. Rows are never updated."""

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    amount: int
    reason: CreditReason
    description: Optional[str] = Field(default=None, max_length=255)
    related_task_id: Optional[UUID] = Field(default=None, index=True)
    balance_after: int
    created_at: datetime = Field(default_factory=utc_now)
