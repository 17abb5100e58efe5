"""Filesystem blob store used in development and tests."""

from __future__ import annotations

import asyncio
import hashlib
import time
from pathlib import Path

import structlog

from dattrain.errors import NotFoundError, ValidationError
from dattrain.schemas.training import BlobUploadResult

from .base import BlobStore

logger = structlog.get_logger(__name__)

SECONDS_PER_STORAGE_EPOCH = 86400


class LocalBlobStore(BlobStore):
    """
    Content-addressed store that emulates the Walrus interface on local disk.

    Blobs live under ``base_dir/{sha256}``; uploading the same bytes twice
    returns the same blob id.
    """

    def __init__(self, base_dir: str | Path, simulated_latency: float = 0.0, default_retention_epochs: int = 5) -> None:
        self.base_dir = Path(base_dir)
        self.simulated_latency = simulated_latency
        self.default_retention_epochs = default_retention_epochs

    def _resolve(self, blob_id: str) -> Path:
        if not blob_id or not all(char in "0123456789abcdef" for char in blob_id):
            raise ValidationError(f"Invalid local blob id: {blob_id!r}")
        return self.base_dir / blob_id

    async def upload_blob(self, data: bytes, retention_epochs: int | None = None) -> BlobUploadResult:
        if not data:
            raise ValidationError("Blob is required")
        await asyncio.sleep(self.simulated_latency)

        blob_id = hashlib.sha256(data).hexdigest()
        dest = self._resolve(blob_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)

        epochs = retention_epochs or self.default_retention_epochs
        end_epoch = int(time.time()) + epochs * SECONDS_PER_STORAGE_EPOCH
        logger.debug("local_blob_store.uploaded", blob_id=blob_id, size=len(data))
        return BlobUploadResult(blob_id=blob_id, size=len(data), end_epoch=end_epoch, method="local")

    async def download_blob(self, blob_id: str) -> bytes:
        await asyncio.sleep(self.simulated_latency)
        path = self._resolve(blob_id)
        if not path.exists():
            raise NotFoundError(f"Blob not found: {blob_id}")
        return path.read_bytes()

    def get_blob_url(self, blob_id: str) -> str:
        return f"local://{blob_id}"

    async def blob_exists(self, blob_id: str) -> bool:
        try:
            return self._resolve(blob_id).exists()
        except ValidationError:
            return False
