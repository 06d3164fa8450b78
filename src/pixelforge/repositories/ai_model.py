"""AIModelConfig repository for PixelForge backend."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelforge.models.ai_model import AIModelConfig


class AIModelRepository:
    """Repository for AIModelConfig entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, model: AIModelConfig) -> AIModelConfig:
        self.session.add(model)
        await self.session.flush()
        return model

    async def select_best(self) -> AIModelConfig | None:
        """Pick the active model to generate with.

        Query explanation:
        - WHERE is_active
        - ORDER BY priority DESC, weight DESC, cost_per_image ASC

        Returns:
            Best active model, or None when none is configured
        """
        result = await self.session.execute(
            select(AIModelConfig)
            .where(AIModelConfig.is_active.is_(True))  # type: ignore[attr-defined]
            .order_by(
                AIModelConfig.priority.desc(),  # type: ignore[attr-defined]
                AIModelConfig.weight.desc(),  # type: ignore[attr-defined]
                AIModelConfig.cost_per_image.asc(),  # type: ignore[attr-defined]
            )
            .limit(1)
        )
        return result.scalar_one_or_none()
