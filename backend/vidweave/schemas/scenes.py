"""Pydantic schemas for prompt parsing and scene planning output."""

from typing import Optional

from pydantic import BaseModel, Field


class ParsedPrompt(BaseModel):
    """Hints extracted from the free-text prompt.

    Project configuration may override style, mood, aspect ratio, color
    palette and pacing after parsing.
    """

    duration: float
    mood: Optional[str] = None
    style: Optional[str] = None
    constraints: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    aspect_ratio: Optional[str] = None
    color_palette: Optional[str] = None
    pacing: Optional[str] = None


class SceneDescriptor(BaseModel):
    """One planned scene.

    Scenes of a job are contiguous: scene[i].end_time == scene[i+1].start_time.
    """

    scene_number: int = Field(ge=1, description="1-based scene position")
    prompt: str
    duration: float
    start_time: float
    end_time: float
