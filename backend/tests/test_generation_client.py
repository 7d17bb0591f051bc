"""Generation client: model resolution, retry/backoff, fallback and output normalization."""

import asyncio

import httpx
import pytest

from conftest import FakeTransport, RecordingSleep
from vidweave.errors import (
    ModelNotFoundError,
    ProviderAuthError,
    UnrecognizedOutputError,
)
from vidweave.schemas.generation import (
    GenericInput,
    LumaInput,
    ModelProfile,
    MultipleOutput,
    SceneGenerationParams,
    SingleOutput,
    SoraInput,
    UnrecognizedOutput,
    VeoExtendInput,
    VeoFastInput,
    provider_payload,
)
from vidweave.schemas.scenes import SceneDescriptor
from vidweave.services.generation_client import (
    GenerationClient,
    build_provider_input,
    normalize_output,
    prepare_prompt,
    quantize_duration,
    sanitize_prompt,
)
from vidweave.services.model_catalog import ModelCatalog
from vidweave.services.provider import error_for_status

SCENE = SceneDescriptor(
    scene_number=1, prompt="A lighthouse at dawn", duration=8.0, start_time=0.0, end_time=8.0,
)


def _client(transport, sleep=None, fallback_models=None, **kwargs) -> GenerationClient:
    return GenerationClient(
        transport,
        fallback_models=fallback_models or [],
        max_attempts=3,
        base_delay=2.0,
        server_error_base_delay=10.0,
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


def _profile(model_id: str, family: str = "generic", max_duration: int = 5) -> ModelProfile:
    return ModelProfile(id=model_id, name=model_id, family=family, max_duration=max_duration)


# ---------------------------------------------------------------------------
# Retry / fallback
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_success_first_try():
    transport = FakeTransport({"google/veo-3.1": ["https://cdn.test/a.mp4"]})
    result = await _client(transport).generate(SCENE, "google/veo-3.1")
    assert result.status == "succeeded"
    assert result.outputs == ["https://cdn.test/a.mp4"]
    assert result.model_id == "google/veo-3.1"
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_invalid_input_falls_back_without_delay():
    sleep = RecordingSleep()
    transport = FakeTransport({
        "google/veo-3.1": [error_for_status(422, "google/veo-3.1", "bad aspect ratio")],
        "luma/ray": ["https://cdn.test/luma.mp4"],
    })
    result = await _client(transport, sleep, fallback_models=["luma/ray"]).generate(SCENE, "google/veo-3.1")

    assert result.status == "succeeded"
    assert result.model_id == "luma/ray"
    assert sleep.delays == []
    assert [model for model, _ in transport.calls] == ["google/veo-3.1", "luma/ray"]


@pytest.mark.asyncio
async def test_server_error_backoff_larger_than_rate_limit():
    server_sleep = RecordingSleep()
    transport = FakeTransport({
        "google/veo-3.1": [error_for_status(500, "google/veo-3.1", "boom"), "https://cdn.test/ok.mp4"],
    })
    result = await _client(transport, server_sleep).generate(SCENE, "google/veo-3.1")
    assert result.status == "succeeded"

    limit_sleep = RecordingSleep()
    transport = FakeTransport({
        "google/veo-3.1": [error_for_status(429, "google/veo-3.1", "slow down"), "https://cdn.test/ok.mp4"],
    })
    result = await _client(transport, limit_sleep).generate(SCENE, "google/veo-3.1")
    assert result.status == "succeeded"

    assert server_sleep.delays == [20.0]
    assert limit_sleep.delays == [4.0]
    assert server_sleep.delays[0] > limit_sleep.delays[0]


@pytest.mark.asyncio
async def test_all_models_fail_names_last_model():
    sleep = RecordingSleep()
    transport = FakeTransport({
        "google/veo-3.1": [error_for_status(500, "google/veo-3.1", "down")],
        "luma/ray": [error_for_status(503, "luma/ray", "down")],
    })
    result = await _client(transport, sleep, fallback_models=["luma/ray"]).generate(SCENE, "google/veo-3.1")

    assert result.status == "failed"
    assert result.error.startswith("All video generation models failed. Last error:")
    assert "luma/ray" in result.error
    # 3 attempts per model, attempt counter reset per model
    assert len(transport.calls) == 6
    assert sleep.delays == [20.0, 40.0, 20.0, 40.0]


@pytest.mark.asyncio
async def test_auth_error_aborts_without_fallback():
    transport = FakeTransport({"google/veo-3.1": [error_for_status(401, "google/veo-3.1", "unauthorized")]})
    with pytest.raises(ProviderAuthError):
        await _client(transport, fallback_models=["luma/ray"]).generate(SCENE, "google/veo-3.1")
    assert [model for model, _ in transport.calls] == ["google/veo-3.1"]


@pytest.mark.asyncio
async def test_unrecognized_output_is_hard_failure():
    transport = FakeTransport({"google/veo-3.1": [{"status": "done"}]})
    with pytest.raises(UnrecognizedOutputError):
        await _client(transport, fallback_models=["luma/ray"]).generate(SCENE, "google/veo-3.1")
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_unknown_model_not_substituted():
    transport = FakeTransport()
    with pytest.raises(ModelNotFoundError):
        await _client(transport, fallback_models=["luma/ray"]).generate(SCENE, "acme/does-not-exist")
    assert transport.calls == []
    assert transport.fetches == ["acme/does-not-exist"]


@pytest.mark.asyncio
async def test_unresolvable_fallback_skipped():
    transport = FakeTransport({"google/veo-3.1": [error_for_status(422, "google/veo-3.1", "nope")]})
    result = await _client(
        transport, fallback_models=["acme/missing", "luma/ray"]
    ).generate(SCENE, "google/veo-3.1")
    assert result.model_id == "luma/ray"


@pytest.mark.asyncio
async def test_luma_returns_continuation_handle():
    transport = FakeTransport({"luma/ray": ["https://cdn.test/luma.mp4"]})
    result = await _client(transport).generate(SCENE, "luma/ray")
    assert result.continuation_handle == "pred-1"

    transport = FakeTransport({"google/veo-3.1": ["https://cdn.test/veo.mp4"]})
    result = await _client(transport).generate(SCENE, "google/veo-3.1")
    assert result.continuation_handle is None


@pytest.mark.asyncio
async def test_unreachable_reference_image_dropped():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    transport = FakeTransport({"google/veo-3.1": ["https://cdn.test/veo.mp4"]})
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = _client(transport, http_client=http)
    params = SceneGenerationParams(reference_image="https://media.test/gone.png")

    await client.generate(SCENE, "google/veo-3.1", params)
    _, payload = transport.calls[0]
    assert "image" not in payload
    await http.aclose()


@pytest.mark.asyncio
async def test_reference_image_kept_when_check_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    transport = FakeTransport({"google/veo-3.1": ["https://cdn.test/veo.mp4"]})
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = _client(transport, http_client=http)
    params = SceneGenerationParams(reference_image="https://media.test/frame.png")

    await client.generate(SCENE, "google/veo-3.1", params)
    _, payload = transport.calls[0]
    assert payload["image"] == "https://media.test/frame.png"
    await http.aclose()


# ---------------------------------------------------------------------------
# Model catalogue cache
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_catalogue_static_lookup_needs_no_network():
    transport = FakeTransport()
    profile = await ModelCatalog(transport).resolve("openai/sora-2")
    assert profile.family == "sora"
    assert transport.fetches == []


@pytest.mark.asyncio
async def test_catalogue_cache_expires():
    now = [0.0]
    transport = FakeTransport(profiles={"acme/custom": _profile("acme/custom")})
    catalog = ModelCatalog(transport, ttl=60, clock=lambda: now[0])

    await catalog.resolve("acme/custom")
    now[0] = 59
    await catalog.resolve("acme/custom")
    assert transport.fetches == ["acme/custom"]

    now[0] = 61
    await catalog.resolve("acme/custom")
    assert transport.fetches == ["acme/custom", "acme/custom"]


@pytest.mark.asyncio
async def test_catalogue_refresh_is_single_flight():
    class SlowTransport(FakeTransport):
        async def fetch_model(self, model_id):
            await asyncio.sleep(0.01)
            return await super().fetch_model(model_id)

    transport = SlowTransport(profiles={"acme/custom": _profile("acme/custom")})
    catalog = ModelCatalog(transport, ttl=60)
    profiles = await asyncio.gather(*(catalog.resolve("acme/custom") for _ in range(5)))

    assert {p.id for p in profiles} == {"acme/custom"}
    assert transport.fetches == ["acme/custom"]


@pytest.mark.asyncio
async def test_catalogue_lookups_for_different_ids_overlap():
    b_started = asyncio.Event()

    class GatedTransport(FakeTransport):
        async def fetch_model(self, model_id):
            if model_id == "acme/a":
                # Only completes if the lookup for acme/b is not queued behind this one
                await b_started.wait()
            else:
                b_started.set()
            return await super().fetch_model(model_id)

    transport = GatedTransport(profiles={"acme/a": _profile("acme/a"), "acme/b": _profile("acme/b")})
    catalog = ModelCatalog(transport, ttl=60)

    a, b = await asyncio.wait_for(
        asyncio.gather(catalog.resolve("acme/a"), catalog.resolve("acme/b")), timeout=2,
    )

    assert (a.id, b.id) == ("acme/a", "acme/b")


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------
def test_quantize_duration_ties_go_shorter():
    assert quantize_duration(7, (4, 6, 8)) == 6
    assert quantize_duration(7.2, (4, 6, 8)) == 8
    assert quantize_duration(7, (5, 9)) == 5
    assert quantize_duration(2, (4, 8, 12)) == 4


def test_veo_extend_request():
    profile = ModelProfile(id="google/veo-3.1", name="veo", family="veo-extend", max_duration=8)
    params = SceneGenerationParams(
        aspect_ratio="portrait", reference_image="https://f/last.png", end_frame="https://f/end.png",
        continuation_handle="pred-9",
    )
    request = build_provider_input(profile, "A bridge", 7.2, params)
    assert isinstance(request, VeoExtendInput)
    payload = provider_payload(request)
    assert payload["aspect_ratio"] == "9:16"
    assert payload["duration"] == 8
    assert payload["image"] == "https://f/last.png"
    assert payload["last_frame"] == "https://f/end.png"
    assert "family" not in payload
    # Veo does not take continuation handles
    assert "pred-9" not in payload.values()


def test_veo_fast_request_is_minimal():
    profile = ModelProfile(id="google/veo-3-fast", name="fast", family="veo-fast", max_duration=8)
    request = build_provider_input(
        profile, "A bridge", 8, SceneGenerationParams(reference_image="https://f/x.png"),
    )
    assert isinstance(request, VeoFastInput)
    assert provider_payload(request) == {"prompt": "A bridge", "enhance_prompt": True}


def test_sora_request_uses_orientation():
    profile = ModelProfile(id="openai/sora-2", name="sora", family="sora", max_duration=12)
    request = build_provider_input(profile, "A bridge", 20, SceneGenerationParams(aspect_ratio="9:16"))
    assert isinstance(request, SoraInput)
    assert request.aspect_ratio == "portrait"
    assert request.seconds == 12


def test_luma_request_carries_continuation():
    profile = ModelProfile(id="luma/ray", name="ray", family="luma", max_duration=9)
    request = build_provider_input(
        profile, "A bridge", 6.5,
        SceneGenerationParams(aspect_ratio="square", continuation_handle="pred-1", seed=3),
    )
    assert isinstance(request, LumaInput)
    payload = provider_payload(request)
    assert payload["duration"] == 5
    assert payload["aspect_ratio"] == "1:1"
    assert payload["start_video_id"] == "pred-1"
    assert "seed" not in payload


def test_generic_request_clamps_duration():
    profile = _profile("anotherjesse/zeroscope-v2-xl", max_duration=5)
    request = build_provider_input(profile, "A bridge", 8, SceneGenerationParams())
    assert isinstance(request, GenericInput)
    assert request.duration == 5


def test_prompt_sanitized_and_suffix_survives_truncation():
    params = SceneGenerationParams(style="noir", mood="tense")
    text = "A city \x00at night 🌃 " + "rain " * 200
    prompt = prepare_prompt(text, params, 500)
    assert len(prompt) <= 500
    assert prompt.endswith(". noir style, tense mood")
    assert "\x00" not in prompt
    assert "🌃" not in prompt


def test_sanitize_collapses_whitespace():
    assert sanitize_prompt("  a\tb\n\nc  ") == "a b c"


# ---------------------------------------------------------------------------
# Output normalization
# ---------------------------------------------------------------------------
class _FileOutput:
    def __init__(self, url):
        self._url = url

    def url(self):
        return self._url


class _AsyncFileOutput(_FileOutput):
    async def url(self):
        return self._url


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://cdn.test/a.mp4", SingleOutput("https://cdn.test/a.mp4")),
        (_FileOutput("https://cdn.test/b.mp4"), SingleOutput("https://cdn.test/b.mp4")),
        (_AsyncFileOutput("https://cdn.test/c.mp4"), SingleOutput("https://cdn.test/c.mp4")),
        ({"video_url": "https://cdn.test/d.mp4"}, SingleOutput("https://cdn.test/d.mp4")),
        (
            {"generatedSamples": [{"video": {"uri": "https://cdn.test/e.mp4"}}]},
            MultipleOutput(("https://cdn.test/e.mp4",)),
        ),
        (
            ["https://cdn.test/f.mp4", {"url": "https://cdn.test/g.mp4"}],
            MultipleOutput(("https://cdn.test/f.mp4", "https://cdn.test/g.mp4")),
        ),
    ],
)
async def test_normalize_output_shapes(raw, expected):
    assert await normalize_output(raw) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [None, "", 42, {"status": "ok"}, [], ["https://cdn.test/a.mp4", 7]])
async def test_normalize_output_unrecognized(raw):
    assert isinstance(await normalize_output(raw), UnrecognizedOutput)


@pytest.mark.asyncio
async def test_non_http_references_accepted_bare_or_in_list():
    reference = "gs://bucket/clip.mp4"
    assert await normalize_output(reference) == SingleOutput(reference)
    assert await normalize_output([reference, "https://cdn.test/b.mp4"]) == MultipleOutput(
        (reference, "https://cdn.test/b.mp4")
    )
    assert await normalize_output({"uri": reference}) == SingleOutput(reference)


@pytest.mark.asyncio
async def test_blank_strings_rejected_bare_or_in_list():
    assert isinstance(await normalize_output("   "), UnrecognizedOutput)
    assert isinstance(await normalize_output(["https://cdn.test/a.mp4", "  "]), UnrecognizedOutput)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_generate_image_converts_named_aspect_ratio():
    transport = FakeTransport({"google/imagen-4": [["https://cdn.test/img.png"]]})
    result = await _client(transport).generate_image(
        "A red fox in snow " + "x" * 1200, "google/imagen-4", SceneGenerationParams(aspect_ratio="portrait"),
    )

    assert result.status == "succeeded"
    assert result.outputs == ["https://cdn.test/img.png"]
    model_id, payload = transport.calls[0]
    assert model_id == "google/imagen-4"
    assert payload["aspect_ratio"] == "9:16"
    assert len(payload["prompt"]) == 1000


@pytest.mark.asyncio
async def test_generate_image_defaults():
    transport = FakeTransport()
    result = await _client(transport).generate_image(
        "A lighthouse", params=SceneGenerationParams(aspect_ratio="panoramic"),
    )
    model_id, payload = transport.calls[0]
    assert model_id == "openai/dall-e-3"
    assert result.model_id == "openai/dall-e-3"
    # Unknown names fall back to 16:9; no ratio at all is left out
    assert payload["aspect_ratio"] == "16:9"

    await _client(transport).generate_image("A lighthouse", "openai/dall-e-3")
    assert "aspect_ratio" not in transport.calls[1][1]


@pytest.mark.asyncio
async def test_generate_image_retries_then_fails():
    sleep = RecordingSleep()
    transport = FakeTransport({"openai/dall-e-3": [error_for_status(500, "openai/dall-e-3", "down")]})
    result = await _client(transport, sleep).generate_image("A lighthouse")

    assert result.status == "failed"
    assert "openai/dall-e-3" in result.error
    assert len(transport.calls) == 3
    assert sleep.delays == [20.0, 40.0]


@pytest.mark.asyncio
async def test_generate_image_rejects_bare_model_name():
    with pytest.raises(ModelNotFoundError):
        await _client(FakeTransport()).generate_image("A lighthouse", "dall-e")


# ---------------------------------------------------------------------------
# Prediction status
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "prediction, status, outputs, error",
    [
        ({"status": "succeeded", "output": "https://cdn.test/a.mp4"}, "succeeded", ["https://cdn.test/a.mp4"], None),
        ({"status": "processing"}, "processing", [], None),
        ({"status": "starting"}, "processing", [], None),
        ({"status": "failed", "error": "NSFW content"}, "failed", [], "NSFW content"),
        ({"status": "canceled"}, "failed", [], "Prediction p-1 canceled"),
    ],
)
async def test_check_prediction(prediction, status, outputs, error):
    transport = FakeTransport(predictions={"p-1": prediction})
    result = await _client(transport).check_prediction("p-1")
    assert result.status == status
    assert result.outputs == outputs
    assert result.error == error


@pytest.mark.asyncio
async def test_check_prediction_provider_error_is_failed_result():
    transport = FakeTransport(predictions={
        "p-1": error_for_status(404, None, "not found", subject="Prediction p-1"),
        "p-2": error_for_status(401, None, subject="Prediction p-2"),
    })
    client = _client(transport)

    result = await client.check_prediction("p-1")
    assert result.status == "failed"
    assert "Prediction p-1" in result.error

    with pytest.raises(ProviderAuthError):
        await client.check_prediction("p-2")
