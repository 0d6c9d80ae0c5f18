"""
Download external images into the local image directory
"""

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse
import httpx
from core.config import settings
import logging

logger = logging.getLogger(__name__)

UNSAFE_CHARS = re.compile(r"[^\w.-]")


@dataclass(frozen=True)
class ImageRef:
    """Local file name (relative to the image directory) and the URL it came from."""
    local_name: str
    source_url: str


class MediaStore:
    """
    Materializes images on disk.

    A file that already exists is not downloaded again, so re-running a
    batch is cheap. A failed download only loses that image: save() logs
    the failure and returns None.
    """

    def __init__(
        self,
        image_path: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        self.root = Path(image_path or settings.IMAGE_PATH)
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self._client = client
        self._owns_client = client is None

    @staticmethod
    def filename_for(url: str, prefix: str = "") -> str:
        """
        Stable file name for url: optional prefix, a short digest of the whole
        URL and the sanitized last path segment. Two URLs sharing a basename
        never map to the same file.
        """
        path = urlparse(url).path
        base = UNSAFE_CHARS.sub("_", path.rsplit("/", 1)[-1]) or "image"
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
        name = f"{digest}_{base}"
        return f"{UNSAFE_CHARS.sub('_', prefix)}_{name}" if prefix else name

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def save(self, url: Optional[str], prefix: str = "") -> Optional[ImageRef]:
        if not url:
            return None
        if url.startswith("//"):
            url = f"https:{url}"

        name = self.filename_for(url, prefix)
        target = self.root / name
        if target.exists():
            logger.debug(f"Image already stored: {name}")
            return ImageRef(local_name=name, source_url=url)

        try:
            client = await self._get_client()
            response = await client.get(url)
            response.raise_for_status()
            self.root.mkdir(parents=True, exist_ok=True)
            # Only a complete download ever appears under the final name
            partial = target.with_name(target.name + ".part")
            partial.write_bytes(response.content)
            partial.replace(target)
        except (httpx.HTTPError, OSError) as e:
            logger.warning(f"Image download failed, dropping {url}: {e}")
            return None

        logger.debug(f"Downloaded image {url} -> {name}")
        return ImageRef(local_name=name, source_url=url)
