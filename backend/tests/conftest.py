"""Shared fakes for the pipeline tests.

The fakes stand in for the provider, media store, media assembler and
project state sink so the pipeline can run without network or ffmpeg.
"""

import shutil
import uuid
from pathlib import Path
from typing import Any, Optional, Union

import pytest

from vidweave.db.state_sink import ProjectStateSink
from vidweave.errors import ProjectNotFoundError
from vidweave.schemas.generation import ModelProfile
from vidweave.schemas.jobs import FrameUrls, ProjectRecord, SceneRecord
from vidweave.services.media_store import MediaStore
from vidweave.services.provider import ProviderTransport


FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

requires_ffmpeg = pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg/ffprobe not installed")


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------
class FakeTransport(ProviderTransport):
    """Scripted provider.

    ``script`` maps a model id to a list of outcomes consumed in order; an
    outcome is an exception to raise or a raw output to return. When a
    model's list runs out, its last outcome repeats. ``predictions`` maps a
    prediction id to the prediction object (or exception) get_prediction gives.
    """

    def __init__(
        self,
        script: Optional[dict[str, list[Any]]] = None,
        profiles: Optional[dict[str, ModelProfile]] = None,
        predictions: Optional[dict[str, Any]] = None,
    ):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.profiles = profiles or {}
        self.predictions = predictions or {}
        self.calls: list[tuple[str, dict]] = []
        self.fetches: list[str] = []
        self.closed = False

    async def run(self, model_id: str, model_input: dict):
        self.calls.append((model_id, model_input))
        outcomes = self.script.get(model_id)
        if not outcomes:
            return f"https://cdn.test/{model_id}/{len(self.calls)}.mp4", f"pred-{len(self.calls)}"
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome, f"pred-{len(self.calls)}"

    async def get_prediction(self, prediction_id: str) -> dict:
        outcome = self.predictions[prediction_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_model(self, model_id: str) -> Optional[ModelProfile]:
        self.fetches.append(model_id)
        return self.profiles.get(model_id)

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------
class FakeMediaStore(MediaStore):
    def __init__(self):
        self.uploads: list[tuple[str, str]] = []

    async def upload(
        self,
        data: Union[bytes, Path],
        user_id: str,
        project_id: Union[uuid.UUID, str],
        purpose: str,
        filename: str,
    ) -> str:
        self.uploads.append((purpose, filename))
        return f"https://media.test/{user_id}/{project_id}/{purpose}/{filename}"


class FakeAssembler:
    """Records calls; writes a placeholder file wherever a real one would go."""

    def __init__(self, store: FakeMediaStore, fail_frames: bool = False):
        self.store = store
        self.fail_frames = fail_frames
        self.calls: list[str] = []
        self.concatenated: list[str] = []

    async def store_clip(self, clip_url, user_id, project_id, scene_number):
        self.calls.append("store_clip")
        return await self.store.upload(b"clip", user_id, project_id, "video", f"scene-{scene_number}.mp4")

    async def extract_frames(self, clip_url, user_id, project_id, scene_number):
        from vidweave.errors import MediaProbeError

        self.calls.append("extract_frames")
        if self.fail_frames:
            raise MediaProbeError(f"Invalid duration 0.0 for {clip_url}")
        return FrameUrls(
            first=f"https://media.test/frames/{scene_number}-first.png",
            last=f"https://media.test/frames/{scene_number}-last.png",
        )

    async def concatenate(self, clip_urls, output_path):
        self.calls.append("concatenate")
        self.concatenated = list(clip_urls)
        Path(output_path).write_bytes(b"video")
        return Path(output_path)

    async def mix_audio(self, video_path, audio_url, output_path, volume=None):
        self.calls.append("mix_audio")
        Path(output_path).write_bytes(b"video+audio")
        return Path(output_path)

    async def extract_thumbnail(self, video_path, user_id, project_id):
        self.calls.append("extract_thumbnail")
        return await self.store.upload(b"png", user_id, project_id, "image", "thumbnail.png")


# ---------------------------------------------------------------------------
# State sink
# ---------------------------------------------------------------------------
class InMemoryStateSink(ProjectStateSink):
    def __init__(self):
        self.projects: dict[uuid.UUID, ProjectRecord] = {}
        self.scenes: dict[tuple[uuid.UUID, int], SceneRecord] = {}
        self.status_history: list[str] = []

    def add_project(self, prompt: str, duration: float, config: Optional[dict] = None) -> ProjectRecord:
        record = ProjectRecord(
            id=uuid.uuid4(), user_id="user-1", prompt=prompt, duration=duration,
            status="draft", config=config or {},
        )
        self.projects[record.id] = record
        return record

    async def read_project(self, project_id):
        if project_id not in self.projects:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return self.projects[project_id]

    async def upsert_scene(self, project_id, scene_number, record):
        self.scenes[(project_id, scene_number)] = record

    async def set_project_status(
        self, project_id, status, config=None, thumbnail_url=None, error_message=None,
    ):
        project = await self.read_project(project_id)
        update = {"status": status}
        if config:
            update["config"] = {**project.config, **config}
        if thumbnail_url is not None:
            update["thumbnail_url"] = thumbnail_url
        if error_message is not None:
            update["error_message"] = error_message
        self.projects[project_id] = project.model_copy(update=update)
        self.status_history.append(status)


@pytest.fixture
def media_store() -> FakeMediaStore:
    return FakeMediaStore()


@pytest.fixture
def state_sink() -> InMemoryStateSink:
    return InMemoryStateSink()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
