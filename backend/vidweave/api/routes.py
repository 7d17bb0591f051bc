"""API route handlers and Pydantic response schemas."""

import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from vidweave import __version__
from vidweave.db import async_session
from vidweave.db.state_sink import SqlProjectStateSink
from vidweave.errors import ProjectNotFoundError
from vidweave.schemas.jobs import JobRequest, JobStatus
from vidweave.services.model_catalog import STATIC_CATALOGUE, estimate_cost
from vidweave.workers.job_queue import JobQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_sink() -> SqlProjectStateSink:
    return SqlProjectStateSink(async_session)


def get_job_queue(request: Request) -> JobQueue:
    queue = getattr(request.app.state, "job_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Job queue is not running")
    return queue


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------
class CreateProjectRequest(BaseModel):
    user_id: str
    prompt: str = Field(min_length=1)
    duration: float = Field(gt=0)
    config: dict[str, Any] = Field(default_factory=dict)


class ProjectResponse(BaseModel):
    project_id: str
    user_id: str
    prompt: str
    duration: float
    status: str
    config: dict[str, Any]
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None


class SceneDetail(BaseModel):
    scene_number: int
    prompt: str
    duration: float
    start_time: float
    video_url: str
    first_frame_url: Optional[str] = None
    last_frame_url: Optional[str] = None


class ProjectDetail(ProjectResponse):
    created_at: str
    updated_at: str
    scenes: list[SceneDetail]


class SubmitJobResponse(BaseModel):
    job_id: str
    status: str
    status_url: str


class ModelItem(BaseModel):
    id: str
    name: str
    description: str
    family: str
    tier: str
    max_duration: float
    cost_per_second: float
    estimated_cost: Optional[float] = None


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------
@router.post("/projects", status_code=201, response_model=ProjectResponse)
async def create_project(request: CreateProjectRequest, sink: SqlProjectStateSink = Depends(get_sink)):
    """Create a draft project that jobs can then be submitted for."""
    record = await sink.create_project(
        request.user_id, request.prompt, request.duration, request.config
    )
    return ProjectResponse(
        project_id=str(record.id),
        user_id=record.user_id,
        prompt=record.prompt,
        duration=record.duration,
        status=record.status,
        config=record.config,
    )


@router.get("/projects/{project_id}", response_model=ProjectDetail)
async def get_project_detail(project_id: uuid.UUID, sink: SqlProjectStateSink = Depends(get_sink)):
    """Get project status with its persisted scenes."""
    try:
        project = await sink.read_project_with_scenes(project_id)
    except ProjectNotFoundError:
        raise HTTPException(status_code=404, detail="Project not found")

    return ProjectDetail(
        project_id=str(project.id),
        user_id=project.user_id,
        prompt=project.prompt,
        duration=project.duration,
        status=project.status,
        config=project.config or {},
        thumbnail_url=project.thumbnail_url,
        error_message=project.error_message,
        created_at=project.created_at.isoformat(),
        updated_at=project.updated_at.isoformat(),
        scenes=[
            SceneDetail(
                scene_number=s.scene_number,
                prompt=s.prompt,
                duration=s.duration,
                start_time=s.start_time,
                video_url=s.video_url,
                first_frame_url=s.first_frame_url,
                last_frame_url=s.last_frame_url,
            )
            for s in project.scenes
        ],
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------
@router.post("/jobs", status_code=202, response_model=SubmitJobResponse)
async def submit_job(
    request: JobRequest,
    sink: SqlProjectStateSink = Depends(get_sink),
    queue: JobQueue = Depends(get_job_queue),
):
    """Queue a generation job for an existing project.

    Returns 202 Accepted with the job id; poll the status URL for progress.
    """
    try:
        await sink.read_project(request.project_id)
    except ProjectNotFoundError:
        raise HTTPException(status_code=404, detail=f"Project {request.project_id} not found")

    job_id = queue.submit(request)
    return SubmitJobResponse(job_id=job_id, status="queued", status_url=f"/api/jobs/{job_id}")


@router.get("/jobs/{job_id}", response_model=JobStatus)
async def get_job_status(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    """Lightweight job status for polling."""
    status = queue.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
@router.get("/models", response_model=list[ModelItem])
async def list_models(duration: Optional[float] = None):
    """Static model catalogue, with a cost estimate when duration is given."""
    return [
        ModelItem(
            id=m.id,
            name=m.name,
            description=m.description,
            family=m.family,
            tier=m.tier,
            max_duration=m.max_duration,
            cost_per_second=m.cost_per_second,
            estimated_cost=estimate_cost(m, duration) if duration else None,
        )
        for m in STATIC_CATALOGUE
    ]


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
    }
