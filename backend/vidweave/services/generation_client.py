"""Per-scene video generation with retry and model fallback.

This module implements the generation client:
- Resolve the requested model (catalogue first, provider second, never substituted)
- Build a family-specific provider request (durations quantized, aspect
  ratio in the family's format, only declared optional fields)
- Retry rate-limited and transient failures with exponential backoff
  (larger base delay for 5xx), attempt counter reset per model
- Fall back through the configured model list on exhaustion or on
  validation errors (which are never retried)
- Normalize the provider output once into Single/Multiple/Unrecognized

It also generates still images (single model, same retry policy) and
reports the state of an earlier prediction by id.

Usage:
    from vidweave.services.generation_client import GenerationClient

    client = GenerationClient(transport)
    result = await client.generate(scene, "google/veo-3.1", params)
"""

import asyncio
import inspect
import logging
import re
import unicodedata
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from vidweave.config import settings
from vidweave.errors import (
    InvalidInputError,
    ModelNotFoundError,
    ModelUnavailableError,
    ProviderAuthError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
    UnrecognizedOutputError,
)
from vidweave.pipeline.prompt_parser import ASPECT_RATIO_NAMES
from vidweave.schemas.generation import (
    GenerationResult,
    GenericInput,
    ImageInput,
    LumaInput,
    ModelProfile,
    MultipleOutput,
    Output,
    SceneGenerationParams,
    SingleOutput,
    SoraInput,
    UnrecognizedOutput,
    VeoExtendInput,
    VeoFastInput,
    VeoInput,
    provider_payload,
)
from vidweave.schemas.scenes import SceneDescriptor
from vidweave.services.model_catalog import ModelCatalog, image_profile
from vidweave.services.provider import ProviderTransport

logger = logging.getLogger(__name__)

DEFAULT_ASPECT_RATIO = "16:9"
IMAGE_PROMPT_MAX_CHARS = 1000

# ---------------------------------------------------------------------------
# Prompt sanitization
# ---------------------------------------------------------------------------
_EMOJI_PATTERN = re.compile(
    "["
    "\U0001F000-\U0001FAFF"  # pictographs, emoticons, transport, symbols
    "\U00002600-\U000027BF"  # misc symbols, dingbats
    "\U0001F1E6-\U0001F1FF"  # regional indicators
    "\U0000FE00-\U0000FE0F"  # variation selectors
    "\U0000200D"             # zero-width joiner
    "\U000E0000-\U000E007F"  # tag characters
    "]+"
)
_WHITESPACE = re.compile(r"\s+")


def sanitize_prompt(text: str) -> str:
    """Strip control/non-printable characters and emoji, collapse whitespace."""
    text = _EMOJI_PATTERN.sub(" ", text)
    cleaned = []
    for char in text:
        if char in "\n\r\t":
            cleaned.append(" ")
        elif unicodedata.category(char) in ("Cc", "Cf", "Cs", "Co", "Cn"):
            continue
        else:
            cleaned.append(char)
    return _WHITESPACE.sub(" ", "".join(cleaned)).strip()


def prompt_enhancement(text: str, params: SceneGenerationParams) -> str:
    """Suffix carrying style/mood/color/pacing hints not already in the text."""
    lower = text.lower()
    parts = []
    if params.style and params.style.lower() not in lower:
        parts.append(f"{params.style} style")
    if params.mood and params.mood.lower() not in lower:
        parts.append(f"{params.mood} mood")
    if params.color_palette and params.color_palette.lower() not in lower:
        parts.append(f"color palette: {params.color_palette}")
    if params.pacing and params.pacing.lower() not in lower:
        parts.append(f"{params.pacing} pacing")
    return f". {', '.join(parts)}" if parts else ""


def prepare_prompt(text: str, params: SceneGenerationParams, max_chars: int) -> str:
    """Sanitize and truncate, keeping the enhancement suffix intact."""
    sanitized = sanitize_prompt(text)
    suffix = sanitize_prompt(prompt_enhancement(sanitized, params))
    if len(suffix) >= max_chars:
        return sanitized[:max_chars]
    budget = max_chars - len(suffix)
    if len(sanitized) > budget:
        logger.debug(f"Prompt truncated from {len(sanitized)} to {budget} characters")
    return sanitized[:budget].rstrip() + suffix


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------
def normalize_aspect_ratio(value: Optional[str]) -> Optional[str]:
    """Return a "W:H" ratio for a ratio string or a named orientation."""
    if not value:
        return None
    value = value.strip().lower()
    if ":" in value:
        width, _, height = value.partition(":")
        if width.isdigit() and height.isdigit() and int(width) > 0 and int(height) > 0:
            return f"{int(width)}:{int(height)}"
        return None
    return ASPECT_RATIO_NAMES.get(value)


def orientation(aspect_ratio: Optional[str]) -> str:
    """Categorical orientation for families that do not take numeric ratios."""
    ratio = normalize_aspect_ratio(aspect_ratio)
    if ratio is None:
        return "landscape"
    width, height = (int(part) for part in ratio.split(":"))
    return "portrait" if height > width else "landscape"


def quantize_duration(value: float, allowed: tuple[int, ...]) -> int:
    """Nearest allowed duration; ties resolve to the shorter one."""
    return min(allowed, key=lambda option: (abs(option - value), option))


def build_provider_input(
    profile: ModelProfile,
    prompt: str,
    duration: float,
    params: SceneGenerationParams,
):
    """Build the family-specific request for one scene.

    Raises:
        ValueError: If the profile's family has no request builder
    """
    schema = profile.parameter_schema
    text = prepare_prompt(prompt, params, schema.max_prompt_chars)
    ratio = normalize_aspect_ratio(params.aspect_ratio) or DEFAULT_ASPECT_RATIO
    family = profile.family

    if family == "veo-fast":
        return VeoFastInput(prompt=text)
    if family == "veo":
        return VeoInput(
            prompt=text,
            aspect_ratio=ratio,
            duration=quantize_duration(duration, schema.allowed_durations),
            image=params.reference_image,
            negative_prompt=params.negative_prompt,
            seed=params.seed,
        )
    if family == "veo-extend":
        return VeoExtendInput(
            prompt=text,
            aspect_ratio=ratio,
            duration=quantize_duration(duration, schema.allowed_durations),
            image=params.reference_image,
            last_frame=params.end_frame,
            negative_prompt=params.negative_prompt,
            seed=params.seed,
        )
    if family == "sora":
        return SoraInput(
            prompt=text,
            aspect_ratio=orientation(params.aspect_ratio),
            seconds=quantize_duration(min(duration, 12), schema.allowed_durations),
        )
    if family == "luma":
        return LumaInput(
            prompt=text,
            aspect_ratio=ratio,
            duration=quantize_duration(duration, schema.allowed_durations),
            start_image_url=params.reference_image,
            start_video_id=params.continuation_handle,
        )
    if family == "generic":
        return GenericInput(
            prompt=text,
            duration=max(1, min(round(duration), profile.max_duration)),
        )
    raise ValueError(f"No request builder for model family {family!r}")


# ---------------------------------------------------------------------------
# Output normalization
# ---------------------------------------------------------------------------
def _reference(value: Any) -> Optional[str]:
    """A media reference is any non-empty string, wherever it appears."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


async def _url_from_item(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return _reference(item)
    accessor = getattr(item, "url", None)
    if callable(accessor):
        value = accessor()
        if inspect.isawaitable(value):
            value = await value
        return _reference(str(value)) if value is not None else None
    if _reference(accessor):
        return _reference(accessor)
    if isinstance(item, dict):
        for key in ("url", "video_url", "image_url", "uri"):
            if _reference(item.get(key)):
                return _reference(item[key])
        video = item.get("video")
        if isinstance(video, dict):
            return await _url_from_item(video)
    return None


async def normalize_output(raw: Any) -> Output:
    """Normalize any provider output shape into the Output sum type."""
    if isinstance(raw, str):
        url = _reference(raw)
        return SingleOutput(url) if url else UnrecognizedOutput(raw)

    if isinstance(raw, dict):
        samples = raw.get("generated_samples", raw.get("generatedSamples"))
        if isinstance(samples, list):
            return await normalize_output(samples)
        url = await _url_from_item(raw)
        return SingleOutput(url) if url else UnrecognizedOutput(raw)

    if isinstance(raw, (list, tuple)):
        urls = []
        for item in raw:
            url = await _url_from_item(item)
            if url is None:
                return UnrecognizedOutput(raw)
            urls.append(url)
        return MultipleOutput(tuple(urls)) if urls else UnrecognizedOutput(raw)

    url = await _url_from_item(raw)
    return SingleOutput(url) if url else UnrecognizedOutput(raw)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class GenerationClient:
    """Generates one clip per call, trying models in fallback order.

    Args:
        transport: Provider transport
        catalog: Model catalogue (built over the transport if omitted)
        fallback_models: Ordered model ids tried after the requested one
        max_attempts: Attempts per model
        base_delay: Backoff base for 429 and network errors, seconds
        server_error_base_delay: Backoff base for 5xx, seconds
        sleep: Awaitable sleep used between retries (injectable for tests)
        http_client: Client for reference-image reachability checks
        reference_check_timeout: Seconds allowed for that check
    """

    def __init__(
        self,
        transport: ProviderTransport,
        catalog: Optional[ModelCatalog] = None,
        fallback_models: Optional[list[str]] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        server_error_base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        http_client: Optional[httpx.AsyncClient] = None,
        reference_check_timeout: Optional[float] = None,
    ) -> None:
        cfg = settings.pipeline
        self._transport = transport
        self.catalog = catalog or ModelCatalog(transport)
        self.fallback_models = (
            list(settings.provider.fallback_models) if fallback_models is None else fallback_models
        )
        self.max_attempts = cfg.retry_max_attempts if max_attempts is None else max_attempts
        self.base_delay = cfg.retry_base_delay if base_delay is None else base_delay
        self.server_error_base_delay = (
            cfg.retry_server_error_base_delay
            if server_error_base_delay is None else server_error_base_delay
        )
        self._sleep = sleep
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self.reference_check_timeout = (
            settings.provider.reference_check_timeout
            if reference_check_timeout is None else reference_check_timeout
        )

    def _backoff(self, retry_state: RetryCallState) -> float:
        """base * 2**attempt, with the larger base for server-side errors."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        status = getattr(exc, "status_code", None)
        if status is not None and status >= 500:
            base = self.server_error_base_delay
        else:
            base = self.base_delay
        return base * (2 ** retry_state.attempt_number)

    async def _run_with_retries(self, model_id: str, payload: dict):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._backoff,
            retry=retry_if_exception_type((TransientProviderError, RateLimitedError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._transport.run, model_id, payload)

    async def _fallback_order(self, requested: ModelProfile) -> list[ModelProfile]:
        models = [requested]
        seen = {requested.id}
        for model_id in self.fallback_models:
            if model_id in seen:
                continue
            seen.add(model_id)
            try:
                models.append(await self.catalog.resolve(model_id))
            except ModelNotFoundError as e:
                logger.warning(f"Skipping fallback model {model_id}: {e}")
        return models

    async def check_reference_image(self, url: str) -> Optional[str]:
        """Return the URL unless it is definitively unreachable.

        Only a 404/410 drops the image. Timeouts, network errors and other
        statuses keep it: the provider may still be able to fetch it.
        """
        try:
            response = await self._http.head(
                url, timeout=self.reference_check_timeout, follow_redirects=True
            )
        except httpx.HTTPError as e:
            logger.info(f"Reference image check failed ({type(e).__name__}), using {url} anyway")
            return url
        if response.status_code in (404, 410):
            logger.warning(f"Reference image {url} is gone ({response.status_code}), dropping it")
            return None
        return url

    async def generate(
        self,
        scene: SceneDescriptor,
        model_id: str,
        params: Optional[SceneGenerationParams] = None,
    ) -> GenerationResult:
        """Generate the clip for one scene.

        Returns:
            GenerationResult with status "succeeded", or "failed" once every
            model's retry budget is spent (error names the last model).

        Raises:
            ModelNotFoundError: Requested model cannot be resolved
            ProviderAuthError: Credentials missing or rejected
            UnrecognizedOutputError: Provider output shape is unknown
        """
        params = params or SceneGenerationParams()
        requested = await self.catalog.resolve(model_id)
        models = await self._fallback_order(requested)

        if params.reference_image:
            params = params.model_copy(
                update={"reference_image": await self.check_reference_image(params.reference_image)}
            )

        last_error: Optional[str] = None
        for index, profile in enumerate(models):
            logger.info(
                f"Scene {scene.scene_number}: trying model {index + 1}/{len(models)} {profile.id}"
            )
            payload = provider_payload(build_provider_input(profile, scene.prompt, scene.duration, params))
            try:
                raw, prediction_id = await self._run_with_retries(profile.id, payload)
            except (ProviderAuthError, UnrecognizedOutputError):
                raise
            except (InvalidInputError, ModelUnavailableError) as e:
                last_error = str(e)
                logger.warning(f"Model {profile.id} rejected the request, skipping to next model: {e}")
                continue
            except ProviderError as e:
                last_error = str(e)
                logger.warning(f"Model {profile.id} failed after {self.max_attempts} attempts: {e}")
                continue

            output = await normalize_output(raw)
            if isinstance(output, UnrecognizedOutput):
                raise UnrecognizedOutputError(
                    f"Unexpected output format from model {profile.id}: {str(output.raw)[:200]}",
                    model_id=profile.id,
                )
            urls = [output.url] if isinstance(output, SingleOutput) else list(output.urls)
            logger.info(f"Scene {scene.scene_number}: generated with {profile.id} -> {urls[0]}")
            return GenerationResult(
                outputs=urls,
                status="succeeded",
                continuation_handle=prediction_id if profile.accepts("continuation_handle") else None,
                model_id=profile.id,
            )

        return GenerationResult(
            status="failed",
            error=f"All video generation models failed. Last error: {last_error}",
            model_id=models[-1].id,
        )

    async def generate_image(
        self,
        prompt: str,
        model_id: Optional[str] = None,
        params: Optional[SceneGenerationParams] = None,
    ) -> GenerationResult:
        """Generate a still image with one model (no fallback list).

        Only the aspect ratio is taken from ``params``. Named orientations
        are converted to "W:H" and unknown values fall back to 16:9.

        Raises:
            ModelNotFoundError: The model id is not an "owner/name" id
            ProviderAuthError: Credentials missing or rejected
            UnrecognizedOutputError: Provider output shape is unknown
        """
        profile = image_profile(model_id or settings.provider.default_image_model)
        aspect_ratio = params.aspect_ratio if params else None
        if aspect_ratio:
            aspect_ratio = normalize_aspect_ratio(aspect_ratio) or DEFAULT_ASPECT_RATIO
        request = ImageInput(prompt=sanitize_prompt(prompt)[:IMAGE_PROMPT_MAX_CHARS], aspect_ratio=aspect_ratio)
        logger.info(f"Generating image with {profile.id}")
        try:
            raw, _ = await self._run_with_retries(profile.id, provider_payload(request))
        except (ProviderAuthError, UnrecognizedOutputError):
            raise
        except ProviderError as e:
            logger.warning(f"Image model {profile.id} failed: {e}")
            return GenerationResult(
                status="failed", error=f"Image generation failed: {e}", model_id=profile.id,
            )

        output = await normalize_output(raw)
        if isinstance(output, UnrecognizedOutput):
            raise UnrecognizedOutputError(
                f"Unexpected output format from model {profile.id}: {str(output.raw)[:200]}",
                model_id=profile.id,
            )
        urls = [output.url] if isinstance(output, SingleOutput) else list(output.urls)
        return GenerationResult(outputs=urls, status="succeeded", model_id=profile.id)

    async def check_prediction(self, prediction_id: str) -> GenerationResult:
        """Current state of an earlier prediction as a GenerationResult.

        Provider errors other than auth come back as a failed result; the
        prediction is not retried.
        """
        try:
            prediction = await self._transport.get_prediction(prediction_id)
        except ProviderAuthError:
            raise
        except ProviderError as e:
            return GenerationResult(status="failed", error=str(e))

        status = prediction.get("status")
        if status == "succeeded":
            output = await normalize_output(prediction.get("output"))
            if isinstance(output, UnrecognizedOutput):
                return GenerationResult(
                    status="failed",
                    error=f"Prediction {prediction_id} has an unrecognized output",
                )
            urls = [output.url] if isinstance(output, SingleOutput) else list(output.urls)
            return GenerationResult(outputs=urls, status="succeeded")
        if status in ("failed", "canceled"):
            return GenerationResult(
                status="failed",
                error=prediction.get("error") or f"Prediction {prediction_id} {status}",
            )
        return GenerationResult(status="processing")

    async def close(self) -> None:
        await self._transport.close()
        if self._owns_http:
            await self._http.aclose()
