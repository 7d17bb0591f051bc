"""Schemas for model profiles, per-family provider inputs and generation output.

Each model family accepts its own request shape. ProviderInput is a tagged
union keyed by ``family``; every variant declares exactly the optional
fields that family supports, so a reference image can never leak into a
request for a family that would reject it.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ModelFamily = Literal["veo-fast", "veo", "veo-extend", "sora", "luma", "generic"]
ModelTier = Literal["budget", "economy", "standard", "premium"]


class FamilySchema(BaseModel):
    """Request constraints shared by every model in one family."""

    model_config = ConfigDict(frozen=True)

    allowed_durations: Optional[tuple[int, ...]] = None
    max_prompt_chars: int = 500
    aspect_format: Literal["ratio", "orientation", "none"] = "none"
    optional_fields: frozenset[str] = frozenset()


FAMILY_SCHEMAS: dict[str, FamilySchema] = {
    "veo-fast": FamilySchema(),
    "veo": FamilySchema(
        allowed_durations=(4, 6, 8),
        aspect_format="ratio",
        optional_fields=frozenset({"reference_image", "negative_prompt", "seed"}),
    ),
    "veo-extend": FamilySchema(
        allowed_durations=(4, 6, 8),
        aspect_format="ratio",
        optional_fields=frozenset({"reference_image", "end_frame", "negative_prompt", "seed"}),
    ),
    "sora": FamilySchema(
        allowed_durations=(4, 8, 12),
        aspect_format="orientation",
    ),
    "luma": FamilySchema(
        allowed_durations=(5, 9),
        aspect_format="ratio",
        optional_fields=frozenset({"reference_image", "continuation_handle"}),
    ),
    "generic": FamilySchema(),
}


class ModelProfile(BaseModel):
    """Read-only description of one video model."""

    id: str
    name: str
    description: str = "Video generation model"
    max_duration: int = 5
    cost_per_second: float = 0.10
    tier: ModelTier = "standard"
    family: ModelFamily = "generic"

    @property
    def parameter_schema(self) -> FamilySchema:
        return FAMILY_SCHEMAS[self.family]

    def accepts(self, field_name: str) -> bool:
        """Whether this model's family takes the given optional field."""
        return field_name in self.parameter_schema.optional_fields


class SceneGenerationParams(BaseModel):
    """Per-scene knobs passed to the generation client.

    Fields the resolved family does not declare are dropped when the
    provider request is built.
    """

    aspect_ratio: Optional[str] = None
    style: Optional[str] = None
    mood: Optional[str] = None
    color_palette: Optional[str] = None
    pacing: Optional[str] = None
    reference_image: Optional[str] = None
    end_frame: Optional[str] = None
    continuation_handle: Optional[str] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None


# ---------------------------------------------------------------------------
# Provider inputs (tagged union by family)
# ---------------------------------------------------------------------------
class VeoFastInput(BaseModel):
    family: Literal["veo-fast"] = "veo-fast"
    prompt: str
    enhance_prompt: bool = True


class VeoInput(BaseModel):
    family: Literal["veo"] = "veo"
    prompt: str
    aspect_ratio: str = "16:9"
    duration: Literal[4, 6, 8]
    resolution: str = "1080p"
    generate_audio: bool = True
    image: Optional[str] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None


class VeoExtendInput(BaseModel):
    family: Literal["veo-extend"] = "veo-extend"
    prompt: str
    aspect_ratio: str = "16:9"
    duration: Literal[4, 6, 8]
    resolution: str = "1080p"
    generate_audio: bool = True
    image: Optional[str] = None
    last_frame: Optional[str] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None


class SoraInput(BaseModel):
    family: Literal["sora"] = "sora"
    prompt: str
    aspect_ratio: Literal["landscape", "portrait"] = "landscape"
    seconds: Literal[4, 8, 12]


class LumaInput(BaseModel):
    family: Literal["luma"] = "luma"
    prompt: str
    aspect_ratio: str = "16:9"
    duration: Literal[5, 9]
    start_image_url: Optional[str] = None
    # Continuation handle of the previous clip (video extension)
    start_video_id: Optional[str] = None


class GenericInput(BaseModel):
    family: Literal["generic"] = "generic"
    prompt: str
    duration: int


ProviderInput = Annotated[
    Union[VeoFastInput, VeoInput, VeoExtendInput, SoraInput, LumaInput, GenericInput],
    Field(discriminator="family"),
]


class ImageModelProfile(BaseModel):
    """Read-only description of one image model."""

    id: str
    name: str
    description: str = "Image generation model"
    cost_per_image: float = 0.04


class ImageInput(BaseModel):
    """Still-image request. Image models share one request shape."""

    prompt: str
    aspect_ratio: Optional[str] = None


def provider_payload(request: BaseModel) -> dict:
    """Serialize a ProviderInput variant to the JSON ``input`` object."""
    return request.model_dump(exclude={"family"}, exclude_none=True)


# ---------------------------------------------------------------------------
# Output sum type
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SingleOutput:
    url: str


@dataclass(frozen=True)
class MultipleOutput:
    urls: tuple[str, ...]


@dataclass(frozen=True)
class UnrecognizedOutput:
    raw: Any


Output = Union[SingleOutput, MultipleOutput, UnrecognizedOutput]


class GenerationResult(BaseModel):
    """Outcome of a generation call, or the current state of one prediction."""

    outputs: list[str] = Field(default_factory=list)
    status: Literal["succeeded", "failed", "processing"]
    error: Optional[str] = None
    continuation_handle: Optional[str] = None
    model_id: Optional[str] = None

    @property
    def primary_url(self) -> Optional[str]:
        return self.outputs[0] if self.outputs else None
