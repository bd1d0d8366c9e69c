"""Project record store used for side updates from workers."""

import logging
from datetime import datetime
from typing import Optional

from databases import Database
from sqlalchemy import create_engine, select, update

from .db_models import Base, Project, utcnow

logger = logging.getLogger(__name__)


class ProjectNotFoundError(LookupError):
    pass


class ProjectStore:
    """Async access to the ``projects`` table."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.database = Database(database_url)

    async def connect(self) -> None:
        await self.database.connect()

    async def disconnect(self) -> None:
        await self.database.disconnect()

    def create_tables(self) -> None:
        """Create the schema with a synchronous engine (startup only)."""
        engine = create_engine(self.database_url)
        Base.metadata.create_all(engine)
        engine.dispose()

    async def get_project(self, project_id: str):
        query = select(Project).where(Project.id == project_id)
        return await self.database.fetch_one(query)

    async def update_final_video_url(
        self, project_id: str, url: str, timestamp: Optional[datetime] = None
    ) -> None:
        """Record the stitched video on the project.

        Raises:
            ProjectNotFoundError: If no project row matches
        """
        if await self.get_project(project_id) is None:
            raise ProjectNotFoundError(f"Project not found: {project_id}")

        query = (
            update(Project)
            .where(Project.id == project_id)
            .values(final_video_url=url, updated_at=timestamp or utcnow())
        )
        await self.database.execute(query)
        logger.info("Project %s final video set to %s", project_id, url)
