"""Streaming downloads of remote media into local scratch files."""

import logging
from pathlib import Path
from typing import Optional

import httpx

from vidweave.config import settings
from vidweave.errors import DownloadError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


def is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


async def download_to_file(
    url: str,
    dest: Path,
    client: Optional[httpx.AsyncClient] = None,
) -> Path:
    """Stream ``url`` into ``dest``.

    Raises:
        DownloadError: Non-2xx response or network failure
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=settings.storage.download_timeout)
    try:
        async with client.stream("GET", url, follow_redirects=True) as response:
            if response.status_code >= 400:
                raise DownloadError(url, response.status_code, response.reason_phrase)
            with open(dest, "wb") as f:
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    f.write(chunk)
    except httpx.HTTPError as e:
        raise DownloadError(url, None, f"{type(e).__name__}: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    logger.debug(f"Downloaded {url} -> {dest} ({dest.stat().st_size} bytes)")
    return dest
