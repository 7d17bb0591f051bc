"""SQLite project state sink: project lifecycle and idempotent scene upserts."""

import uuid

import pytest

from vidweave.db import init_database, make_engine, make_session_factory
from vidweave.db.state_sink import SqlProjectStateSink
from vidweave.errors import ProjectNotFoundError
from vidweave.schemas.jobs import SceneRecord


def _scene(url: str, last_frame=None) -> SceneRecord:
    return SceneRecord(
        prompt="Opening scene, establishing shot: a harbor",
        duration=7.5,
        start_time=0.0,
        video_url=url,
        first_frame_url="https://media.test/first.png",
        last_frame_url=last_frame,
    )


async def _sink(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_database(engine)
    return engine, SqlProjectStateSink(make_session_factory(engine))


@pytest.mark.asyncio
async def test_create_and_read_project(tmp_path):
    engine, sink = await _sink(tmp_path)
    created = await sink.create_project("user-1", "A harbor at dawn", 30, {"model_id": "luma/ray"})

    project = await sink.read_project(created.id)

    assert project.status == "draft"
    assert project.config == {"model_id": "luma/ray"}
    assert project.duration == 30
    await engine.dispose()


@pytest.mark.asyncio
async def test_read_missing_project(tmp_path):
    engine, sink = await _sink(tmp_path)
    with pytest.raises(ProjectNotFoundError):
        await sink.read_project(uuid.uuid4())
    await engine.dispose()


@pytest.mark.asyncio
async def test_upsert_scene_is_idempotent(tmp_path):
    engine, sink = await _sink(tmp_path)
    project = await sink.create_project("user-1", "A harbor at dawn", 16)

    await sink.upsert_scene(project.id, 1, _scene("https://media.test/v1.mp4"))
    await sink.upsert_scene(project.id, 1, _scene("https://media.test/v1.mp4"))
    await sink.upsert_scene(project.id, 2, _scene("https://media.test/v2.mp4"))

    scenes = await sink.read_scenes(project.id)
    assert [s.scene_number for s in scenes] == [1, 2]

    await sink.upsert_scene(
        project.id, 1, _scene("https://media.test/v1-retry.mp4", last_frame="https://media.test/last.png")
    )
    scenes = await sink.read_scenes(project.id)
    assert len(scenes) == 2
    assert scenes[0].video_url == "https://media.test/v1-retry.mp4"
    assert scenes[0].last_frame_url == "https://media.test/last.png"
    await engine.dispose()


@pytest.mark.asyncio
async def test_set_project_status_merges_config(tmp_path):
    engine, sink = await _sink(tmp_path)
    project = await sink.create_project("user-1", "A harbor at dawn", 16, {"model_id": "luma/ray"})

    await sink.set_project_status(project.id, "failed", error_message="All video generation models failed")
    failed = await sink.read_project(project.id)
    assert failed.status == "failed"
    assert failed.error_message == "All video generation models failed"

    await sink.set_project_status(
        project.id, "completed", config={"video_url": "https://media.test/final.mp4"},
        thumbnail_url="https://media.test/thumb.png",
    )
    completed = await sink.read_project_with_scenes(project.id)
    assert completed.status == "completed"
    assert completed.error_message is None
    assert completed.thumbnail_url == "https://media.test/thumb.png"
    assert completed.config == {"model_id": "luma/ray", "video_url": "https://media.test/final.mp4"}
    assert completed.scenes == []
    await engine.dispose()


@pytest.mark.asyncio
async def test_set_status_missing_project(tmp_path):
    engine, sink = await _sink(tmp_path)
    with pytest.raises(ProjectNotFoundError):
        await sink.set_project_status(uuid.uuid4(), "processing")
    await engine.dispose()
