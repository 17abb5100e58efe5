"""Abstract interface for content-addressed blob stores."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from dattrain.schemas.training import BlobUploadResult


class BlobStore(ABC):
    """Common interface for the local store (dev) and Walrus (network)."""

    @abstractmethod
    async def upload_blob(self, data: bytes, retention_epochs: int | None = None) -> BlobUploadResult:
        """Store bytes for ``retention_epochs`` storage epochs and return the blob id."""

    @abstractmethod
    async def download_blob(self, blob_id: str) -> bytes:
        """Fetch the bytes of a blob. Raises NotFoundError if it does not exist."""

    @abstractmethod
    def get_blob_url(self, blob_id: str) -> str:
        """Direct URL for a blob."""

    @abstractmethod
    async def blob_exists(self, blob_id: str) -> bool:
        """Check whether a blob can be downloaded."""

    async def upload_json(self, payload: Any, retention_epochs: int | None = None) -> BlobUploadResult:
        return await self.upload_blob(json.dumps(payload).encode("utf-8"), retention_epochs)

    async def download_json(self, blob_id: str) -> Any:
        return json.loads((await self.download_blob(blob_id)).decode("utf-8"))

    async def close(self) -> None:
        """Release network resources, if any."""
