"""Project State Sink: where the job worker reads projects and persists results.

The worker only depends on the ProjectStateSink interface. The SQLAlchemy
implementation writes scene rows with SQLite ``INSERT ... ON CONFLICT DO
UPDATE`` keyed on (project_id, scene_number), so re-running a scene (or a
whole job) overwrites rather than duplicates.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from vidweave.db.models import Project, Scene
from vidweave.errors import ProjectNotFoundError
from vidweave.schemas.jobs import ProjectRecord, SceneRecord

logger = logging.getLogger(__name__)


class ProjectStateSink(ABC):
    """Persistence boundary used by the job worker."""

    @abstractmethod
    async def read_project(self, project_id: uuid.UUID) -> ProjectRecord:
        """Load a project. Raises ProjectNotFoundError if absent."""
        ...

    @abstractmethod
    async def upsert_scene(
        self, project_id: uuid.UUID, scene_number: int, record: SceneRecord,
    ) -> None:
        ...

    @abstractmethod
    async def set_project_status(
        self,
        project_id: uuid.UUID,
        status: str,
        config: Optional[dict[str, Any]] = None,
        thumbnail_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Update status; ``config`` is merged into the stored config."""
        ...


def _to_record(project: Project) -> ProjectRecord:
    return ProjectRecord(
        id=project.id,
        user_id=project.user_id,
        prompt=project.prompt,
        duration=project.duration,
        status=project.status,
        config=dict(project.config or {}),
        thumbnail_url=project.thumbnail_url,
        error_message=project.error_message,
    )


class SqlProjectStateSink(ProjectStateSink):
    """
    SQLAlchemy-backed state sink.

    Args:
        session_factory: async_sessionmaker bound to the project database
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_project(
        self,
        user_id: str,
        prompt: str,
        duration: float,
        config: Optional[dict[str, Any]] = None,
    ) -> ProjectRecord:
        async with self._session_factory() as session:
            project = Project(
                user_id=user_id,
                prompt=prompt,
                duration=duration,
                status="draft",
                config=dict(config or {}),
            )
            session.add(project)
            await session.commit()
            await session.refresh(project)
            logger.info(f"Created project {project.id} for user {user_id}")
            return _to_record(project)

    async def read_project(self, project_id: uuid.UUID) -> ProjectRecord:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")
            return _to_record(project)

    async def read_scenes(self, project_id: uuid.UUID) -> list[Scene]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Scene)
                .where(Scene.project_id == project_id)
                .order_by(Scene.scene_number)
            )
            return list(result.scalars().all())

    async def read_project_with_scenes(self, project_id: uuid.UUID) -> Project:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Project)
                .where(Project.id == project_id)
                .options(selectinload(Project.scenes))
            )
            project = result.scalar_one_or_none()
            if project is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")
            return project

    async def upsert_scene(
        self, project_id: uuid.UUID, scene_number: int, record: SceneRecord,
    ) -> None:
        values = record.model_dump()
        stmt = sqlite_insert(Scene).values(
            id=uuid.uuid4(),
            project_id=project_id,
            scene_number=scene_number,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["project_id", "scene_number"],
            set_={**values, "updated_at": func.now()},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug(f"Project {project_id}: upserted scene {scene_number}")

    async def set_project_status(
        self,
        project_id: uuid.UUID,
        status: str,
        config: Optional[dict[str, Any]] = None,
        thumbnail_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")
            project.status = status
            if config:
                # Reassign so the JSON column is flagged dirty
                project.config = {**(project.config or {}), **config}
            if thumbnail_url is not None:
                project.thumbnail_url = thumbnail_url
            if error_message is not None:
                project.error_message = error_message
            elif status != "failed":
                project.error_message = None
            await session.commit()
        logger.info(f"Project {project_id}: status -> {status}")
