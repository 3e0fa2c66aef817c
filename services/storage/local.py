"""Filesystem object storage — call recordings under a root directory.

Signed URLs are plain file:// URLs; the TTL has no meaning locally.
"""

import os
from pathlib import Path
from loguru import logger

from config.errors import UpstreamError, ValidationError
from services.storage.download import download_url

STORAGE_ROOT = os.getenv("STORAGE_ROOT", "data/storage")


class LocalObjectStorage:
    def __init__(self, root: str = STORAGE_ROOT):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        full = (self.root / path.lstrip("/")).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValidationError(f"Storage path escapes storage root: {path}")
        return full

    def signed_url(self, path: str, ttl_sec: int = 3600) -> str:
        full = self._resolve(path)
        if not full.is_file():
            raise UpstreamError(f"Failed to create signed URL: {path} not found")
        return full.as_uri()

    def download(self, url: str, timeout: float = 600.0) -> bytes:
        return download_url(url, timeout=timeout)

    def upload(self, path: str, data: bytes, content_type: str = "audio/mpeg") -> None:
        full = self._resolve(path)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_bytes(data)
        except OSError as e:
            raise UpstreamError(f"Failed to upload {path}: {e}") from e
        logger.debug(f"Stored {len(data)} bytes at {full}")

    def remove(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)
