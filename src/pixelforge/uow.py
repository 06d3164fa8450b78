"""Unit of Work pattern for PixelForge backend.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelforge.repositories.ai_model import AIModelRepository
from pixelforge.repositories.credit_transaction import CreditTransactionRepository
from pixelforge.repositories.scene import SceneRepository
from pixelforge.repositories.task import TaskRepository
from pixelforge.repositories.user import UserRepository
from pixelforge.repositories.work import WorkRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages database transactions and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            task = await uow.tasks.get_by_id(task_id)
            moved = await uow.tasks.compare_and_set_state(task.id, task.state, target)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        # Instantiate all repositories with the session
        self.tasks = TaskRepository(session)
        self.works = WorkRepository(session)
        self.users = UserRepository(session)
        self.credit_transactions = CreditTransactionRepository(session)
        self.scenes = SceneRepository(session)
        self.ai_models = AIModelRepository(session)

    async def __aenter__(self):
        """Enter async context manager.

        Returns:
            self: UnitOfWork instance with all repositories available
        """
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        Args:
            exc_type: Exception type if raised
            exc_val: Exception value if raised
            exc_tb: Exception traceback if raised

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        # Return False to re-raise the exception (if any)
        return False


UoWFactory = Callable[[], Awaitable[UnitOfWork]]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UoWFactory:
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url, pool_size=50)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.tasks.add(task)
    """

    async def _create_uow():
        """Create a new UnitOfWork instance with a new session."""
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
