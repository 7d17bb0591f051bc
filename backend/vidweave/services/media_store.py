"""Media store for generated clips, frames, thumbnails and final videos.

Objects are keyed as::

    users/{user_id}/projects/{project_id}/{purpose}/{timestamp_ms}-{filename}

The local implementation writes under ``storage.media_dir`` (served by the
API at /media) and returns public URLs under ``storage.public_base_url``.
Keys are checked against the base directory to prevent path traversal.
"""

import asyncio
import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Literal, Optional, Union

from vidweave.config import settings

logger = logging.getLogger(__name__)

MediaPurpose = Literal["audio", "image", "video", "frame"]

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)


def build_storage_key(
    user_id: str,
    project_id: Union[uuid.UUID, str],
    purpose: MediaPurpose,
    filename: str,
    timestamp_ms: int,
) -> str:
    return (
        f"users/{user_id}/projects/{project_id}/{purpose}/"
        f"{timestamp_ms}-{sanitize_filename(filename)}"
    )


class MediaStore(ABC):
    """Abstract media store consumed by the pipeline."""

    @abstractmethod
    async def upload(
        self,
        data: Union[bytes, Path],
        user_id: str,
        project_id: Union[uuid.UUID, str],
        purpose: MediaPurpose,
        filename: str,
    ) -> str:
        """Store bytes (or a local file) and return its public URL."""
        ...

    def resolve_local(self, url: str) -> Optional[Path]:
        """Local path for a URL this store issued, if it has one."""
        return None


class LocalMediaStore(MediaStore):
    """
    Filesystem-backed media store.

    Args:
        base_dir: Root directory for stored objects (default: settings.storage.media_dir)
        public_base_url: URL prefix the objects are served under
        clock: Wall clock in seconds, used for key timestamps
    """

    def __init__(
        self,
        base_dir: Union[str, Path, None] = None,
        public_base_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if base_dir is None:
            base_dir = settings.storage.media_dir
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.storage.public_base_url).rstrip("/")
        self._clock = clock

    def path_for_key(self, key: str) -> Path:
        """
        Resolve a storage key to a path inside base_dir.

        Raises:
            ValueError: If the key escapes base_dir (traversal attack)
        """
        path = (self.base_dir / key).resolve()
        if not path.is_relative_to(self.base_dir):
            raise ValueError("Invalid storage key")
        return path

    async def upload(
        self,
        data: Union[bytes, Path],
        user_id: str,
        project_id: Union[uuid.UUID, str],
        purpose: MediaPurpose,
        filename: str,
    ) -> str:
        key = build_storage_key(
            user_id, project_id, purpose, filename, int(self._clock() * 1000)
        )
        path = self.path_for_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(data, Path):
            payload = await asyncio.to_thread(data.read_bytes)
        else:
            payload = data
        await asyncio.to_thread(path.write_bytes, payload)

        url = f"{self.public_base_url}/{key}"
        logger.info(f"Stored {purpose} {filename} ({len(payload)} bytes) -> {url}")
        return url

    def resolve_local(self, url: str) -> Optional[Path]:
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            return None
        try:
            path = self.path_for_key(url[len(prefix):])
        except ValueError:
            return None
        return path if path.exists() else None
