"""Repository layer for PixelForge backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from pixelforge.repositories.ai_model import AIModelRepository
from pixelforge.repositories.credit_transaction import CreditTransactionRepository
from pixelforge.repositories.scene import SceneRepository
from pixelforge.repositories.task import RetryOutcome, TaskRepository
from pixelforge.repositories.user import UserRepository
from pixelforge.repositories.work import WorkRepository

__all__ = [
    "AIModelRepository",
    "CreditTransactionRepository",
    "RetryOutcome",
    "SceneRepository",
    "TaskRepository",
    "UserRepository",
    "WorkRepository",
]
