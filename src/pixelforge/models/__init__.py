"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from pixelforge.models.ai_model import AIModelConfig
from pixelforge.models.credit_transaction import CreditReason, CreditTransaction
from pixelforge.models.scene import Scene
from pixelforge.models.task import (
    InvalidStateTransition,
    Task,
    TaskMode,
    TaskState,
    TaskStatus,
    TaskType,
)
from pixelforge.models.user import User
from pixelforge.models.work import Work, WorkStatus

__all__ = [
    "AIModelConfig",
    "CreditReason",
    "CreditTransaction",
    "InvalidStateTransition",
    "Scene",
    "Task",
    "TaskMode",
    "TaskState",
    "TaskStatus",
    "TaskType",
    "User",
    "Work",
    "WorkStatus",
]
