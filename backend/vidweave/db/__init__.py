"""
Database module for vidweave.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, schema initialization and the project state sink.
"""
from vidweave.db.engine import async_session, engine, get_session, make_engine, make_session_factory, shutdown
from vidweave.db.models import Base, Project, Scene
from vidweave.db.state_sink import ProjectStateSink, SqlProjectStateSink


async def init_database(bind=None):
    """Create tables on first run (idempotent)."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = [
    "Base",
    "Project",
    "Scene",
    "engine",
    "async_session",
    "get_session",
    "make_engine",
    "make_session_factory",
    "shutdown",
    "init_database",
    "ProjectStateSink",
    "SqlProjectStateSink",
]
