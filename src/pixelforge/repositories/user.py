"""User repository for PixelForge backend.

Balance changes go through conditional UPDATEs so the balance never goes
negative, even under concurrent debits.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelforge.core.timezone import utc_now
from pixelforge.models.user import User


class UserRepository:
    """Repository for User entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, user: User) -> User:
        """Persist new user to database."""
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_by_id(self, user_id: UUID) -> User | None:
        """Retrieve user by UUID.

        Args:
            user_id: User's unique identifier

        Returns:
            User if found, None otherwise
        """
        result = await self.session.execute(
            select(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, user_id: UUID) -> User | None:
        """Retrieve user and lock the row until the transaction ends.

        Serializes concurrent task creation for the same user so that the
        active-task cap and the balance check see each other's writes.
        """
        result = await self.session.execute(
            select(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: UUID) -> int:
        """Read the current balance inside the caller's transaction."""
        result = await self.session.execute(
            select(User.credits).where(User.id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one()

    async def debit(self, user_id: UUID, amount: int) -> bool:
        """Subtract credits only if the balance covers the amount.

        Args:
            user_id: User to charge
            amount: Credits to subtract

        Returns:
            True if the balance was debited, False if it was insufficient
        """
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.credits >= amount)  # type: ignore[arg-type]
            .values(
                credits=User.credits - amount,
                total_consumed_credits=User.total_consumed_credits + amount,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def credit(self, user_id: UUID, amount: int, consumed_delta: int = 0) -> None:
        """Add credits to a user's balance.

        Args:
            user_id: User to credit
            amount: Credits to add
            consumed_delta: Adjustment to total_consumed_credits (negative on refunds)
        """
        await self.session.execute(
            update(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .values(
                credits=User.credits + amount,
                total_consumed_credits=User.total_consumed_credits + consumed_delta,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
