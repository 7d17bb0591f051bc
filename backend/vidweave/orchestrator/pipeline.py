"""Job pipeline: one GenerationJob from prompt to final video.

Steps, with the progress reported after each:
- load project (5), parse prompt (10), plan scenes (15)
- per scene: generate, store clip, extract frames, upsert scene (15..75)
- concatenate (85), mix audio if requested (90)
- upload final video and thumbnail (95), persist completed (100)

Scenes run strictly in order so that, with reference frames enabled, each
scene can start from the previous scene's last frame. Any failure persists
project status "failed" with the error message, then re-raises; scene rows
already written are kept. A cancelled job is persisted as "failed" too.
"""

import asyncio
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Optional

from vidweave.config import settings
from vidweave.db.state_sink import ProjectStateSink
from vidweave.errors import AllModelsExhaustedError, MediaError
from vidweave.orchestrator.state import PROGRESS, scene_progress
from vidweave.pipeline.prompt_parser import parse_prompt
from vidweave.pipeline.scene_planner import plan_scenes
from vidweave.schemas.generation import SceneGenerationParams
from vidweave.schemas.jobs import FrameUrls, GenerationJob, JobResult, ProjectRecord, SceneRecord
from vidweave.schemas.scenes import ParsedPrompt, SceneDescriptor
from vidweave.services.generation_client import GenerationClient
from vidweave.services.media_assembler import MediaAssembler
from vidweave.services.media_store import MediaStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

# Project config keys that override what the prompt parser found
_HINT_KEYS = ("style", "mood", "aspect_ratio", "color_palette", "pacing")


def merge_hints(parsed: ParsedPrompt, job: GenerationJob, config: dict[str, Any]) -> ParsedPrompt:
    """Project config beats the job request, which beats the parsed prompt."""
    update = {}
    for key in ("style", "mood"):
        if getattr(job, key):
            update[key] = getattr(job, key)
    for key in _HINT_KEYS:
        if config.get(key):
            update[key] = config[key]
    return parsed.model_copy(update=update) if update else parsed


class JobPipeline:
    """
    Runs GenerationJobs against injected collaborators.

    Args:
        sink: Project State Sink
        client: Generation client
        assembler: Media assembler
        store: Media store for the final video
        default_model: Model used when the project config names none
        tmp_dir: Parent of the per-job scratch directory
    """

    def __init__(
        self,
        sink: ProjectStateSink,
        client: GenerationClient,
        assembler: MediaAssembler,
        store: MediaStore,
        default_model: Optional[str] = None,
        tmp_dir: Optional[Path] = None,
    ):
        self.sink = sink
        self.client = client
        self.assembler = assembler
        self.store = store
        self.default_model = default_model or settings.provider.default_model
        self.tmp_dir = Path(tmp_dir if tmp_dir is not None else settings.storage.tmp_dir)

    async def close(self) -> None:
        await self.client.close()

    def _scene_params(
        self,
        hints: ParsedPrompt,
        config: dict[str, Any],
        previous_frames: Optional[FrameUrls],
        previous_handle: Optional[str],
    ) -> SceneGenerationParams:
        params = SceneGenerationParams(
            aspect_ratio=hints.aspect_ratio,
            style=hints.style,
            mood=hints.mood,
            color_palette=hints.color_palette,
            pacing=hints.pacing,
            negative_prompt=config.get("negative_prompt"),
            seed=config.get("seed"),
        )
        use_reference = config.get("use_reference_frame", settings.pipeline.use_reference_frame)
        if use_reference:
            params.reference_image = previous_frames.last if previous_frames else None
            params.continuation_handle = previous_handle
        return params

    async def _store_clip(self, job: GenerationJob, scene: SceneDescriptor, provider_url: str) -> str:
        try:
            return await self.assembler.store_clip(
                provider_url, job.user_id, job.project_id, scene.scene_number
            )
        except (MediaError, OSError) as e:
            logger.warning(
                f"Scene {scene.scene_number}: could not copy clip to media store, "
                f"keeping provider URL: {e}"
            )
            return provider_url

    async def _extract_frames(self, job: GenerationJob, scene: SceneDescriptor, clip_url: str) -> FrameUrls:
        try:
            return await self.assembler.extract_frames(
                clip_url, job.user_id, job.project_id, scene.scene_number
            )
        except (MediaError, OSError) as e:
            logger.warning(f"Scene {scene.scene_number}: frame extraction failed: {e}")
            return FrameUrls()

    async def _generate_scenes(
        self,
        job: GenerationJob,
        project: ProjectRecord,
        scenes: list[SceneDescriptor],
        hints: ParsedPrompt,
        report: ProgressCallback,
    ) -> tuple[list[str], list[FrameUrls]]:
        model_id = project.config.get("model_id") or self.default_model
        scene_urls: list[str] = []
        frame_urls: list[FrameUrls] = []
        previous_frames: Optional[FrameUrls] = None
        previous_handle: Optional[str] = None

        for scene in scenes:
            params = self._scene_params(hints, project.config, previous_frames, previous_handle)
            result = await self.client.generate(scene, model_id, params)
            if result.status != "succeeded" or not result.primary_url:
                raise AllModelsExhaustedError(
                    result.error or f"Scene {scene.scene_number} produced no video",
                    last_error=result.error,
                )

            video_url = await self._store_clip(job, scene, result.primary_url)
            frames = await self._extract_frames(job, scene, video_url)
            await self.sink.upsert_scene(
                job.project_id,
                scene.scene_number,
                SceneRecord(
                    prompt=scene.prompt,
                    duration=scene.duration,
                    start_time=scene.start_time,
                    video_url=video_url,
                    first_frame_url=frames.first,
                    last_frame_url=frames.last,
                ),
            )

            scene_urls.append(video_url)
            frame_urls.append(frames)
            previous_frames = frames
            previous_handle = result.continuation_handle
            report(
                scene_progress(scene.scene_number, len(scenes)),
                f"Generated scene {scene.scene_number}/{len(scenes)} with {result.model_id}",
            )
        return scene_urls, frame_urls

    async def _assemble(
        self,
        job: GenerationJob,
        project: ProjectRecord,
        scene_urls: list[str],
        report: ProgressCallback,
    ) -> tuple[str, Optional[str]]:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f"vidweave-job-{job.id}-", dir=self.tmp_dir) as scratch:
            scratch = Path(scratch)
            final_path = await self.assembler.concatenate(scene_urls, scratch / "concatenated.mp4")
            report(PROGRESS["concatenate"], f"Concatenated {len(scene_urls)} scenes")

            if job.audio_url:
                final_path = await self.assembler.mix_audio(
                    final_path,
                    job.audio_url,
                    scratch / "with_audio.mp4",
                    volume=project.config.get("audio_volume"),
                )
                report(PROGRESS["mix_audio"], "Mixed audio track")

            video_url = await self.store.upload(
                final_path, job.user_id, job.project_id, "video", "final.mp4"
            )
            try:
                thumbnail_url = await self.assembler.extract_thumbnail(
                    final_path, job.user_id, job.project_id
                )
            except (MediaError, OSError) as e:
                logger.warning(f"Job {job.id}: thumbnail extraction failed: {e}")
                thumbnail_url = None
            report(PROGRESS["upload"], "Uploaded final video")
        return video_url, thumbnail_url

    async def run(
        self,
        job: GenerationJob,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> JobResult:
        """Execute the job end to end.

        Raises:
            Exception: Re-raises any step failure after persisting failed state
        """

        def report(progress: int, message: str) -> None:
            logger.info(f"Job {job.id} [{progress}%]: {message}")
            if progress_callback:
                progress_callback(progress, message)

        pipeline_start = time.monotonic()
        try:
            project = await self.sink.read_project(job.project_id)
            await self.sink.set_project_status(job.project_id, "processing")
            report(PROGRESS["load_project"], "Loaded project")

            hints = merge_hints(parse_prompt(job.prompt, job.duration), job, project.config)
            report(PROGRESS["parse_prompt"], "Parsed prompt")

            scenes = plan_scenes(job.prompt, job.duration, hints)
            report(PROGRESS["plan_scenes"], f"Planned {len(scenes)} scenes")

            step_start = time.monotonic()
            scene_urls, frame_urls = await self._generate_scenes(job, project, scenes, hints, report)
            logger.info(f"Job {job.id}: scene generation completed in {time.monotonic() - step_start:.2f}s")

            step_start = time.monotonic()
            video_url, thumbnail_url = await self._assemble(job, project, scene_urls, report)
            logger.info(f"Job {job.id}: assembly completed in {time.monotonic() - step_start:.2f}s")

            await self.sink.set_project_status(
                job.project_id,
                "completed",
                config={"video_url": video_url, "scene_count": len(scenes)},
                thumbnail_url=thumbnail_url,
            )
            report(PROGRESS["completed"], "Completed")
            logger.info(f"Job {job.id} completed in {time.monotonic() - pipeline_start:.2f}s")

            return JobResult(
                video_url=video_url,
                thumbnail_url=thumbnail_url,
                scene_urls=scene_urls,
                frame_urls=frame_urls,
            )

        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} cancelled before it finished")
            try:
                await self.sink.set_project_status(
                    job.project_id, "failed", error_message="Worker stopped before the job finished",
                )
            except Exception as persist_err:
                logger.error(f"Failed to persist cancellation for project {job.project_id}: {persist_err}")
            raise

        except Exception as e:
            logger.error(f"Job {job.id} failed: {type(e).__name__}: {e}")
            try:
                await self.sink.set_project_status(job.project_id, "failed", error_message=str(e))
            except Exception as persist_err:
                logger.error(f"Failed to persist failure for project {job.project_id}: {persist_err}")
            raise
