"""
Kivvy Media

Uploads activity images to the configured image host and returns the public
URL. Without a host, files are assumed to be served from ``public_base_url``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx
import structlog

from kivvy.core.config import MediaConfig
from kivvy.jobs.errors import DeliveryRejected, RecordNotFound

logger = structlog.get_logger(__name__)


class ImageHost(ABC):
    @abstractmethod
    async def upload(self, path: str, folder: str) -> str:
        """Upload the file at ``path`` and return its public URL."""


class HttpImageHost(ImageHost):
    """Unsigned multipart upload (Cloudinary-style preset)."""

    def __init__(self, config: MediaConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    async def upload(self, path: str, folder: str) -> str:
        source = Path(path)
        if not source.is_file():
            raise RecordNotFound("ImageFile", path)

        if not self.config.upload_url:
            url = f"{self.config.public_base_url.rstrip('/')}/{source.name}"
            logger.info("Image host not configured, using local URL", path=path, url=url)
            return url

        content = await asyncio.to_thread(source.read_bytes)
        files = {"file": (source.name, content)}
        data = {"folder": folder}
        if self.config.upload_preset:
            data["upload_preset"] = self.config.upload_preset

        if self._client is not None:
            response = await self._client.post(self.config.upload_url, files=files, data=data)
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(self.config.upload_url, files=files, data=data)

        if 400 <= response.status_code < 500 and response.status_code != 429:
            raise DeliveryRejected(f"Image upload rejected: {response.status_code}")
        response.raise_for_status()

        url = response.json()["secure_url"]
        logger.info("Image uploaded", path=path, url=url, size=len(content))
        return url
