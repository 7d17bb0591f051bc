"""vidweave - prompt-to-video generation pipeline.

This module provides startup validation functions to ensure the media
tooling is available before any job is processed.
Call validate_dependencies() during application startup.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

_REQUIRED_TOOLS = ("ffmpeg", "ffprobe")


def validate_dependencies() -> None:
    """Validate required system dependencies are available.

    Both ffmpeg and ffprobe are needed: ffprobe reads clip duration and
    frame rate, ffmpeg does every transform.

    Raises:
        RuntimeError: If ffmpeg or ffprobe is not found or not functional.
    """
    for tool in _REQUIRED_TOOLS:
        try:
            result = subprocess.run(
                [tool, '-version'],
                capture_output=True,
                check=True,
                text=True
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(
                f"{tool} not found on PATH. Install ffmpeg to use the video pipeline.\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg\n"
                "Windows: https://ffmpeg.org/download.html"
            ) from e
        version_line = result.stdout.split('\n')[0]
        logger.info(f"{tool} validated: {version_line}")
