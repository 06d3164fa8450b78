"""CreditTransaction repository for PixelForge backend.

Append-only: rows are added and read, never updated.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelforge.models.credit_transaction import CreditReason, CreditTransaction


class CreditTransactionRepository:
    """Repository for CreditTransaction entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a transaction to the log.

        Args:
            transaction: CreditTransaction entity to persist

        Returns:
            Persisted transaction
        """
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def list_by_user(self, user_id: UUID, limit: int = 50) -> list[CreditTransaction]:
        """Retrieve the user's transactions, newest first."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_task(
        self, task_id: UUID, reason: CreditReason | None = None
    ) -> list[CreditTransaction]:
        """Retrieve transactions tied to a task, oldest first.

        Args:
            task_id: Related task
            reason: Optional reason filter

        Returns:
            List of transactions ordered by creation time
        """
        query = select(CreditTransaction).where(
            CreditTransaction.related_task_id == task_id  # type: ignore[arg-type]
        )
        if reason is not None:
            query = query.where(CreditTransaction.reason == reason)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(CreditTransaction.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())
