"""Scene repository for PixelForge backend."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelforge.models.scene import Scene


class SceneRepository:
    """Repository for Scene entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, scene: Scene) -> Scene:
        self.session.add(scene)
        await self.session.flush()
        return scene

    async def get_active(self, scene_id: str) -> Scene | None:
        """Retrieve an active scene by id.

        Args:
            scene_id: Scene identifier

        Returns:
            Scene if it exists and is active, None otherwise
        """
        result = await self.session.execute(
            select(Scene).where(Scene.id == scene_id, Scene.is_active.is_(True))  # type: ignore[arg-type,attr-defined]
        )
        return result.scalar_one_or_none()
