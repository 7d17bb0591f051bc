"""Job, project and scene records exchanged between the worker and its collaborators."""

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

JobState = Literal["queued", "active", "completed", "failed"]


class JobRequest(BaseModel):
    """Payload accepted by JobQueue.submit()."""

    project_id: uuid.UUID
    user_id: str
    prompt: str
    duration: float = Field(gt=0)
    style: Optional[str] = None
    mood: Optional[str] = None
    audio_url: Optional[str] = None


class FrameUrls(BaseModel):
    first: Optional[str] = None
    last: Optional[str] = None


class JobResult(BaseModel):
    video_url: str
    thumbnail_url: Optional[str] = None
    scene_urls: list[str] = Field(default_factory=list)
    frame_urls: list[FrameUrls] = Field(default_factory=list)


class GenerationJob(BaseModel):
    """In-flight job state. Mutated only by the worker that claimed it."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_id: uuid.UUID
    user_id: str
    prompt: str
    duration: float
    style: Optional[str] = None
    mood: Optional[str] = None
    audio_url: Optional[str] = None
    status: JobState = "queued"
    progress: int = 0
    message: str = "Queued"
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: JobRequest) -> "GenerationJob":
        return cls(**request.model_dump())


class JobStatus(BaseModel):
    """Public view of a job returned by getStatus."""

    job_id: str
    status: JobState
    progress: int
    message: str
    result: Optional[JobResult] = None
    error: Optional[str] = None


class ProjectRecord(BaseModel):
    """Project as read from the state sink."""

    id: uuid.UUID
    user_id: str
    prompt: str
    duration: float
    status: str
    config: dict[str, Any] = Field(default_factory=dict)
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None


class SceneRecord(BaseModel):
    """Per-scene artifact row written through upsert_scene()."""

    prompt: str
    duration: float
    start_time: float
    video_url: str
    first_frame_url: Optional[str] = None
    last_frame_url: Optional[str] = None
