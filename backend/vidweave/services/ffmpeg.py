"""Thin async wrappers around the ffmpeg and ffprobe command-line tools.

Every call runs ``subprocess.run(..., check=True, capture_output=True)`` in
a worker thread so a long encode never blocks the event loop. Non-zero
exits are translated once, here, into MediaToolError (or MediaProbeError
for ffprobe) carrying the tail of the tool's stderr.
"""

import asyncio
import json
import logging
import math
import subprocess
from pathlib import Path
from typing import Optional

from vidweave.errors import MediaProbeError, MediaToolError

logger = logging.getLogger(__name__)

DEFAULT_FRAME_RATE = 30.0
_STDERR_TAIL = 1500


def _run(cmd: list[str], error_cls: type[MediaToolError] | type[MediaProbeError]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, check=True, capture_output=True)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else "No error output"
        logger.error(f"{cmd[0]} exited with {e.returncode}: {stderr[-_STDERR_TAIL:]}")
        raise error_cls(
            f"{cmd[0]} failed (exit {e.returncode}): {stderr[-_STDERR_TAIL:]}"
        ) from e
    except FileNotFoundError as e:
        raise error_cls(f"{cmd[0]} not found on PATH") from e


async def run_ffmpeg(args: list[str]) -> None:
    """Run ffmpeg with ``-y`` (overwrite) and quiet logging plus ``args``."""
    cmd = ["ffmpeg", "-y", "-hide_banner", "-loglevel", "error", *args]
    logger.debug(f"Running: {' '.join(cmd)}")
    await asyncio.to_thread(_run, cmd, MediaToolError)


async def ffprobe(path: Path) -> dict:
    """Return ffprobe's JSON description (format + streams) of a media file."""
    cmd = [
        "ffprobe", "-v", "error",
        "-print_format", "json",
        "-show_format", "-show_streams",
        str(path),
    ]
    result = await asyncio.to_thread(_run, cmd, MediaProbeError)
    try:
        return json.loads(result.stdout or b"{}")
    except json.JSONDecodeError as e:
        raise MediaProbeError(f"ffprobe returned unreadable output for {path}") from e


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parse ffprobe's "num/den" rate; None for missing or degenerate values."""
    if not value:
        return None
    numerator, _, denominator = value.partition("/")
    try:
        rate = float(numerator) / float(denominator or 1)
    except (ValueError, ZeroDivisionError):
        return None
    return rate if rate > 0 and math.isfinite(rate) else None


def _duration_from_probe(data: dict) -> Optional[float]:
    raw = (data.get("format") or {}).get("duration")
    if raw is None:
        raw = next(
            (s.get("duration") for s in data.get("streams", []) if s.get("duration")),
            None,
        )
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


async def probe_duration(path: Path) -> float:
    """Duration in seconds.

    Raises:
        MediaProbeError: Source unreadable, or duration zero/non-finite
    """
    duration = _duration_from_probe(await ffprobe(path))
    if duration is None or not math.isfinite(duration) or duration <= 0:
        raise MediaProbeError(f"Invalid duration {duration!r} for {path}")
    return duration


async def probe_frame_rate(path: Path) -> float:
    """Frame rate of the first video stream, defaulting to 30 fps."""
    data = await ffprobe(path)
    for stream in data.get("streams", []):
        if stream.get("codec_type") != "video":
            continue
        rate = parse_frame_rate(stream.get("r_frame_rate")) or parse_frame_rate(
            stream.get("avg_frame_rate")
        )
        if rate:
            return rate
    return DEFAULT_FRAME_RATE
