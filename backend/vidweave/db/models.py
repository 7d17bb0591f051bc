"""SQLAlchemy 2.0 ORM models for projects and their generated scenes."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Project(Base):
    """One prompt-to-video request and its outcome.

    status: draft -> processing -> completed | failed
    """
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    prompt: Mapped[str] = mapped_column(Text)
    duration: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(50), default="draft")
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )

    scenes: Mapped[list["Scene"]] = relationship(
        back_populates="project",
        order_by="Scene.scene_number",
        cascade="all, delete-orphan",
    )


class Scene(Base):
    """Generated clip for one scene of a project, keyed by scene_number."""
    __tablename__ = "scenes"
    __table_args__ = (
        UniqueConstraint("project_id", "scene_number", name="uq_scene_project_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    scene_number: Mapped[int] = mapped_column(Integer)
    prompt: Mapped[str] = mapped_column(Text)
    duration: Mapped[float] = mapped_column(Float)
    start_time: Mapped[float] = mapped_column(Float)
    video_url: Mapped[str] = mapped_column(String(500))
    first_frame_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    last_frame_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )

    project: Mapped[Project] = relationship(back_populates="scenes")
