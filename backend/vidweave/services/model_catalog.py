"""Video and image model catalogues, with an expiring cache for video profiles.

Static profiles are answered without any network call. Unknown model ids
are looked up through the provider transport and cached for
``provider.model_cache_ttl`` seconds. The cache belongs to the catalogue
instance; concurrent lookups of the same id share one provider request.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from vidweave.config import settings
from vidweave.errors import ModelNotFoundError, ProviderAuthError, ProviderError
from vidweave.schemas.generation import ImageModelProfile, ModelProfile
from vidweave.services.provider import ProviderTransport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Static fallback catalogue
# ---------------------------------------------------------------------------
STATIC_CATALOGUE: tuple[ModelProfile, ...] = (
    ModelProfile(
        id="google/veo-3-fast", name="Google Veo 3 Fast",
        description="Fast video generation", max_duration=8,
        cost_per_second=0.15, tier="standard", family="veo-fast",
    ),
    ModelProfile(
        id="google/veo-3", name="Google Veo 3",
        description="High quality video generation", max_duration=8,
        cost_per_second=0.20, tier="premium", family="veo",
    ),
    ModelProfile(
        id="google/veo-3.1", name="Google Veo 3.1",
        description="Premium video generation with end-frame control", max_duration=8,
        cost_per_second=0.20, tier="premium", family="veo-extend",
    ),
    ModelProfile(
        id="openai/sora-2", name="OpenAI Sora 2",
        description="Text-to-video with landscape/portrait output", max_duration=12,
        cost_per_second=0.10, tier="standard", family="sora",
    ),
    ModelProfile(
        id="luma/dream-machine", name="Luma Dream Machine",
        description="Fast and cost-effective video generation", max_duration=9,
        cost_per_second=0.03, tier="budget", family="luma",
    ),
    ModelProfile(
        id="luma/ray", name="Luma Ray",
        description="Fast, high-quality text-to-video and image-to-video", max_duration=9,
        cost_per_second=0.05, tier="economy", family="luma",
    ),
    ModelProfile(
        id="anotherjesse/zeroscope-v2-xl", name="Zeroscope v2 XL",
        description="Open text-to-video model", max_duration=5,
        cost_per_second=0.02, tier="budget", family="generic",
    ),
)


IMAGE_CATALOGUE: tuple[ImageModelProfile, ...] = (
    ImageModelProfile(id="openai/dall-e-3", name="DALL-E 3", cost_per_image=0.04),
    ImageModelProfile(id="google/nano-banana", name="Nano Banana", cost_per_image=0.039),
    ImageModelProfile(id="google/imagen-4-ultra", name="Imagen 4 Ultra", cost_per_image=0.06),
    ImageModelProfile(id="google/imagen-4", name="Imagen 4", cost_per_image=0.04),
)


def image_profile(model_id: str) -> ImageModelProfile:
    """Catalogue entry for an image model; other "owner/name" ids pass through.

    Raises:
        ModelNotFoundError: The id is not in "owner/name" form
    """
    for profile in IMAGE_CATALOGUE:
        if profile.id == model_id:
            return profile
    owner, _, name = model_id.partition("/")
    if not owner or not name:
        raise ModelNotFoundError(f"Image model {model_id!r} is not an owner/name model id")
    return ImageModelProfile(id=model_id, name=model_id)


def estimate_cost(profile: ModelProfile, duration: float) -> float:
    """Estimated USD cost of generating ``duration`` seconds with this model."""
    return round(profile.cost_per_second * duration, 2)


@dataclass
class _CacheEntry:
    value: Optional[ModelProfile]
    fetched_at: float


class ModelCatalog:
    """Resolves model ids to profiles.

    Args:
        transport: Provider transport used for ids outside the static catalogue
        ttl: Seconds a fetched profile stays valid (default from settings)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        transport: Optional[ProviderTransport] = None,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._ttl = settings.provider.model_cache_ttl if ttl is None else ttl
        self._clock = clock
        self._static = {profile.id: profile for profile in STATIC_CATALOGUE}
        self._cache: dict[str, _CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _fresh(self, model_id: str) -> Optional[_CacheEntry]:
        entry = self._cache.get(model_id)
        if entry is not None and self._clock() - entry.fetched_at < self._ttl:
            return entry
        return None

    def get_static(self, model_id: str) -> Optional[ModelProfile]:
        return self._static.get(model_id)

    async def resolve(self, model_id: str) -> ModelProfile:
        """Return the profile for ``model_id``.

        Raises:
            ModelNotFoundError: Neither the catalogue nor the provider knows it
            ProviderAuthError: Provider lookup failed on credentials
        """
        profile = self._static.get(model_id)
        if profile is not None:
            return profile

        entry = self._fresh(model_id)
        if entry is None:
            async with self._locks.setdefault(model_id, asyncio.Lock()):
                # Another task may have refreshed while we waited
                entry = self._fresh(model_id)
                if entry is None:
                    entry = await self._fetch(model_id)
                    self._cache[model_id] = entry

        if entry.value is None:
            raise ModelNotFoundError(
                f"Model {model_id} not found in the catalogue or at the provider"
            )
        return entry.value

    async def _fetch(self, model_id: str) -> _CacheEntry:
        if self._transport is None:
            return _CacheEntry(value=None, fetched_at=self._clock())

        logger.info(f"Fetching model profile for {model_id} from provider")
        try:
            profile = await self._transport.fetch_model(model_id)
        except ProviderAuthError:
            raise
        except ProviderError as e:
            raise ModelNotFoundError(f"Model {model_id} lookup failed: {e}") from e
        return _CacheEntry(value=profile, fetched_at=self._clock())

    def list_models(self) -> list[ModelProfile]:
        """Static profiles followed by any fetched profiles still in cache."""
        models = list(self._static.values())
        for model_id in sorted(self._cache):
            entry = self._fresh(model_id)
            if entry is not None and entry.value is not None:
                models.append(entry.value)
        return models
