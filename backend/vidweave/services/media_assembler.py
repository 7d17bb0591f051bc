"""Local media assembly with ffmpeg.

Turns generated clip URLs into the final artifact:
- extract_frames: first/last still of a clip, uploaded for continuity
- concatenate: concat demuxer with stream copy (no re-encode)
- mix_audio: loop short audio to the video length, then mux
- extract_thumbnail: one still near the start of the final video
- trim / apply_effect / apply_transition / merge_audio_tracks: single-purpose
  filter invocations

Every operation allocates its own scratch directory under
``storage.tmp_dir`` and removes it on success and on error.
"""

import asyncio
import logging
import math
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional, Union

import httpx
from pydantic import BaseModel

from vidweave.config import settings
from vidweave.errors import MediaError
from vidweave.schemas.jobs import FrameUrls
from vidweave.services.downloads import download_to_file, is_remote
from vidweave.services.ffmpeg import probe_duration, probe_frame_rate, run_ffmpeg
from vidweave.services.media_store import MediaStore

logger = logging.getLogger(__name__)

Source = Union[str, Path]

# ---------------------------------------------------------------------------
# Filter vocabularies
# ---------------------------------------------------------------------------
EFFECTS = ("fade_in", "fade_out", "blur", "brightness", "contrast", "saturation", "vintage", "black_white")

XFADE_TRANSITIONS = {
    "fade": "fade",
    "slide_left": "slideleft",
    "slide_right": "slideright",
    "slide_up": "slideup",
    "slide_down": "slidedown",
    "zoom_in": "zoomin",
    "zoom_out": "zoomout",
    "circle_open": "circleopen",
    "circle_close": "circleclose",
}


class AudioTrack(BaseModel):
    """One extra audio track placed on the video timeline."""

    source: str
    start_time: float = 0.0
    volume: float = 1.0


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def frame_timestamps(duration: float, fps: float) -> tuple[float, float]:
    """Timestamps of the first and last still to extract from a clip.

    first = min(0.5s, 10% of duration); last = one frame before the end.
    For clips so short that this would not land after ``first``, fall back
    to max(first + 1 frame, min(90% of duration, duration - 0.01)), and
    never at or past the end.
    """
    frame = 1.0 / fps
    first = min(0.5, 0.1 * duration)
    last = duration - frame
    if last <= first:
        last = max(first + frame, min(0.9 * duration, duration - 0.01))
    if last >= duration:
        last = max(first, duration - 0.01)
    return first, last


def audio_loop_count(audio_duration: float, video_duration: float) -> int:
    """How many times the audio must play to cover the video."""
    return max(1, math.ceil(video_duration / audio_duration))


def effect_filter(effect: str, value: Optional[float] = None, duration: Optional[float] = None) -> str:
    """ffmpeg -vf expression for a named effect.

    Args:
        effect: One of EFFECTS
        value: Fade length, blur amount or eq value depending on the effect
        duration: Clip duration, required for fade_out

    Raises:
        ValueError: Unknown effect, or fade_out without a duration
    """
    if effect == "fade_in":
        return f"fade=t=in:st=0:d={value or 1}"
    if effect == "fade_out":
        if duration is None:
            raise ValueError("fade_out needs the clip duration")
        fade = value or 1
        return f"fade=t=out:st={max(0.0, duration - fade):.3f}:d={fade}"
    if effect == "blur":
        amount = value or 5
        return f"boxblur={amount}:{amount}"
    if effect == "brightness":
        return f"eq=brightness={value if value is not None else 0}"
    if effect == "contrast":
        return f"eq=contrast={value if value is not None else 1}"
    if effect == "saturation":
        return f"eq=saturation={value if value is not None else 1}"
    if effect == "vintage":
        return "curves=vintage,eq=saturation=0.8:contrast=1.1"
    if effect == "black_white":
        return "hue=s=0"
    raise ValueError(f"Unknown effect: {effect}")


def transition_filter(transition: str, duration: float, first_duration: float, second_duration: float) -> str:
    """xfade filter_complex joining two clips.

    Raises:
        ValueError: Unknown transition
    """
    if transition in XFADE_TRANSITIONS:
        name = XFADE_TRANSITIONS[transition]
    elif transition in XFADE_TRANSITIONS.values():
        name = transition
    else:
        raise ValueError(f"Unknown transition: {transition}")
    length = min(duration, first_duration, second_duration)
    offset = first_duration - length
    return (
        f"[0:v][1:v]xfade=transition={name}:"
        f"duration={length:.3f}:offset={offset:.3f}[v]"
    )


def audio_mix_filter(tracks: list[AudioTrack]) -> str:
    """filter_complex delaying, scaling and mixing inputs 1..N into [audio]."""
    parts = []
    for i, track in enumerate(tracks):
        delay_ms = int(round(track.start_time * 1000))
        parts.append(f"[{i + 1}:a]adelay={delay_ms}|{delay_ms},volume={track.volume}[a{i}]")
    labels = "".join(f"[a{i}]" for i in range(len(tracks)))
    parts.append(f"{labels}amix=inputs={len(tracks)}:duration=longest:dropout_transition=2[audio]")
    return ";".join(parts)


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------
class MediaAssembler:
    """
    ffmpeg-backed media operations.

    Args:
        store: Media store frames and thumbnails are uploaded to
        http_client: Client for remote downloads (one per call if omitted)
        tmp_dir: Parent of per-operation scratch directories
    """

    def __init__(
        self,
        store: MediaStore,
        http_client: Optional[httpx.AsyncClient] = None,
        tmp_dir: Union[str, Path, None] = None,
    ):
        self.store = store
        self._http = http_client
        self.tmp_dir = Path(tmp_dir if tmp_dir is not None else settings.storage.tmp_dir)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        cfg = settings.pipeline
        self.thumbnail_timestamp = cfg.thumbnail_timestamp
        self.encode_preset = cfg.encode_preset
        self.encode_crf = cfg.encode_crf

    def _scratch(self, label: str) -> tempfile.TemporaryDirectory:
        return tempfile.TemporaryDirectory(prefix=f"vidweave-{label}-", dir=self.tmp_dir)

    async def _materialize(self, source: Source, scratch: Path, name: str) -> Path:
        """Local path for a source: store-owned URL, remote URL or local file."""
        source_str = str(source)
        local = self.store.resolve_local(source_str)
        if local is not None:
            return local
        if is_remote(source_str):
            suffix = Path(source_str.split("?", 1)[0]).suffix or ".bin"
            return await download_to_file(source_str, scratch / f"{name}{suffix}", self._http)
        path = Path(source_str)
        if not path.exists():
            raise MediaError(f"Media source not found: {source_str}")
        return path

    async def store_clip(
        self, clip_url: str, user_id: str, project_id: uuid.UUID, scene_number: int,
    ) -> str:
        """Copy a provider clip into the media store and return the stored URL."""
        with self._scratch("clip") as scratch:
            local = await self._materialize(clip_url, Path(scratch), "clip")
            return await self.store.upload(
                local, user_id, project_id, "video", f"scene-{scene_number}.mp4"
            )

    async def extract_frames(
        self, clip_url: str, user_id: str, project_id: uuid.UUID, scene_number: int,
    ) -> FrameUrls:
        """Extract and upload the first and last frame of a clip.

        Raises:
            MediaProbeError: Clip duration is zero, non-finite or unreadable
            MediaToolError: ffmpeg failed to extract a frame
            DownloadError: Clip could not be fetched
        """
        with self._scratch("frames") as scratch:
            scratch = Path(scratch)
            clip = await self._materialize(clip_url, scratch, "clip")
            duration = await probe_duration(clip)
            fps = await probe_frame_rate(clip)
            first_ts, last_ts = frame_timestamps(duration, fps)
            logger.info(
                f"Scene {scene_number}: extracting frames at {first_ts:.3f}s and "
                f"{last_ts:.3f}s (duration={duration:.3f}s, fps={fps:.2f})"
            )

            urls = {}
            for position, timestamp in (("first", first_ts), ("last", last_ts)):
                frame_path = scratch / f"{position}.png"
                await run_ffmpeg([
                    "-ss", f"{timestamp:.3f}", "-i", str(clip),
                    "-frames:v", "1", str(frame_path),
                ])
                if not frame_path.exists():
                    raise MediaError(f"No frame produced at {timestamp:.3f}s for scene {scene_number}")
                urls[position] = await self.store.upload(
                    frame_path, user_id, project_id, "frame",
                    f"scene-{scene_number}-{position}.png",
                )
            return FrameUrls(**urls)

    async def concatenate(self, clip_urls: list[str], output_path: Path) -> Path:
        """Concatenate clips in order with stream copy.

        Raises:
            ValueError: No clips given
            MediaToolError: ffmpeg failed (message carries its stderr)
        """
        if not clip_urls:
            raise ValueError("No scene videos to concatenate")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with self._scratch("concat") as scratch:
            scratch = Path(scratch)
            clips = [
                await self._materialize(url, scratch, f"clip-{i:03d}")
                for i, url in enumerate(clip_urls)
            ]
            list_file = scratch / "concat_list.txt"
            with open(list_file, "w") as f:
                for clip in clips:
                    f.write(f"file '{clip.resolve()}'\n")

            await run_ffmpeg([
                "-f", "concat", "-safe", "0",
                "-i", str(list_file),
                "-c", "copy",
                str(output_path),
            ])
        logger.info(f"Concatenated {len(clip_urls)} clips -> {output_path}")
        return output_path

    async def mix_audio(
        self,
        video_path: Path,
        audio_url: str,
        output_path: Path,
        volume: Optional[float] = None,
    ) -> Path:
        """Mux an audio track over the video, matching the video's duration.

        Audio shorter than the video is looped ceil(video/audio) times and
        trimmed to the exact video length first; longer audio is cut.
        """
        output_path = Path(output_path)
        with self._scratch("audio") as scratch:
            scratch = Path(scratch)
            audio = await self._materialize(audio_url, scratch, "audio")
            video_duration = await probe_duration(Path(video_path))
            audio_duration = await probe_duration(audio)

            if audio_duration < video_duration:
                loops = audio_loop_count(audio_duration, video_duration)
                looped = scratch / "looped.m4a"
                logger.info(
                    f"Looping {audio_duration:.2f}s audio {loops}x to cover {video_duration:.2f}s video"
                )
                await run_ffmpeg([
                    "-stream_loop", str(loops - 1), "-i", str(audio),
                    "-t", f"{video_duration:.3f}",
                    "-c:a", "aac",
                    str(looped),
                ])
                audio = looped

            args = ["-i", str(video_path), "-i", str(audio)]
            if volume is not None:
                args += ["-filter:a", f"volume={volume}"]
            args += [
                "-map", "0:v:0", "-map", "1:a:0",
                "-c:v", "copy", "-c:a", "aac",
                "-shortest", "-t", f"{video_duration:.3f}",
                str(output_path),
            ]
            await run_ffmpeg(args)
        return output_path

    async def extract_thumbnail(
        self, video_path: Path, user_id: str, project_id: uuid.UUID,
    ) -> str:
        """Upload one still from near the start of the video."""
        with self._scratch("thumb") as scratch:
            duration = await probe_duration(Path(video_path))
            timestamp = min(self.thumbnail_timestamp, duration / 2)
            thumb = Path(scratch) / "thumbnail.png"
            await run_ffmpeg([
                "-ss", f"{timestamp:.3f}", "-i", str(video_path),
                "-frames:v", "1", str(thumb),
            ])
            return await self.store.upload(thumb, user_id, project_id, "image", "thumbnail.png")

    async def trim(self, source: Source, output_path: Path, start: float, duration: float) -> Path:
        """Cut [start, start+duration] with codec copy."""
        with self._scratch("trim") as scratch:
            clip = await self._materialize(source, Path(scratch), "source")
            await run_ffmpeg([
                "-ss", f"{start:.3f}", "-i", str(clip),
                "-t", f"{duration:.3f}",
                "-c", "copy",
                str(output_path),
            ])
        return Path(output_path)

    async def apply_effect(
        self, source: Source, output_path: Path, effect: str, intensity: Optional[float] = None,
    ) -> Path:
        """Re-encode the video through one effect filter, copying audio."""
        if effect not in EFFECTS:
            raise ValueError(f"Unknown effect: {effect}")
        with self._scratch("effect") as scratch:
            clip = await self._materialize(source, Path(scratch), "source")
            duration = await probe_duration(clip) if effect == "fade_out" else None
            await run_ffmpeg([
                "-i", str(clip),
                "-vf", effect_filter(effect, intensity, duration),
                "-c:a", "copy",
                str(output_path),
            ])
        return Path(output_path)

    async def apply_transition(
        self,
        first: Source,
        second: Source,
        output_path: Path,
        transition: str = "fade",
        duration: float = 1.0,
    ) -> Path:
        """Join two clips with an xfade transition (re-encoded, video only)."""
        with self._scratch("transition") as scratch:
            scratch = Path(scratch)
            first_clip = await self._materialize(first, scratch, "first")
            second_clip = await self._materialize(second, scratch, "second")
            first_duration, second_duration = await asyncio.gather(
                probe_duration(first_clip), probe_duration(second_clip)
            )
            await run_ffmpeg([
                "-i", str(first_clip), "-i", str(second_clip),
                "-filter_complex",
                transition_filter(transition, duration, first_duration, second_duration),
                "-map", "[v]",
                "-c:v", "libx264", "-preset", self.encode_preset, "-crf", str(self.encode_crf),
                str(output_path),
            ])
        return Path(output_path)

    async def merge_audio_tracks(
        self, video_path: Path, tracks: list[AudioTrack], output_path: Path,
    ) -> Path:
        """Mix several delayed/scaled audio tracks under the video."""
        if not tracks:
            await asyncio.to_thread(shutil.copyfile, video_path, output_path)
            return Path(output_path)

        with self._scratch("merge-audio") as scratch:
            scratch = Path(scratch)
            inputs = ["-i", str(video_path)]
            for i, track in enumerate(tracks):
                inputs += ["-i", str(await self._materialize(track.source, scratch, f"audio-{i}"))]
            await run_ffmpeg([
                *inputs,
                "-filter_complex", audio_mix_filter(tracks),
                "-map", "0:v:0", "-map", "[audio]",
                "-c:v", "copy", "-c:a", "aac",
                "-shortest",
                str(output_path),
            ])
        return Path(output_path)
