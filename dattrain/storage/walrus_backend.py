"""Walrus blob store over HTTP (publisher for writes, aggregator for reads)."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from dattrain.errors import NetworkError, NotFoundError, ValidationError
from dattrain.schemas.training import BlobUploadResult

from .base import BlobStore

logger = structlog.get_logger(__name__)

UPLOAD_PATHS = ("/v1/store", "/v1/blobs", "/store")


def parse_store_response(payload: Any, fallback_size: int) -> BlobUploadResult:
    """Extract blob id, size and end epoch from a publisher response."""
    if not isinstance(payload, dict):
        raise NetworkError("Unexpected response format from Walrus publisher")

    for key in ("newlyCreated", "alreadyCertified"):
        info = payload.get(key)
        if not isinstance(info, dict):
            continue
        blob_object = info.get("blobObject") or {}
        blob_id = blob_object.get("blobId") or info.get("blobId")
        if blob_id:
            return BlobUploadResult(
                blob_id=str(blob_id),
                size=int(blob_object.get("size", fallback_size)),
                end_epoch=info.get("endEpoch"),
                method="walrus",
            )

    if payload.get("blobId"):
        return BlobUploadResult(blob_id=str(payload["blobId"]), size=fallback_size, method="walrus")

    raise NetworkError("Unexpected response format from Walrus publisher")


class WalrusBlobStore(BlobStore):
    """
    Async client for the Walrus publisher/aggregator HTTP API.

    Uploads try every publisher (and every known path) in order; downloads
    fall over across aggregators. A 404 from the aggregator is a missing blob,
    anything else that fails on every endpoint is a NetworkError.
    """

    def __init__(
        self,
        publisher_urls: Sequence[str],
        aggregator_urls: Sequence[str],
        timeout_seconds: float = 30.0,
        default_retention_epochs: int = 5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not publisher_urls or not aggregator_urls:
            raise ValidationError("Walrus needs at least one publisher and one aggregator URL")
        self.publisher_urls = [url.rstrip("/") for url in publisher_urls]
        self.aggregator_urls = [url.rstrip("/") for url in aggregator_urls]
        self.default_retention_epochs = default_retention_epochs
        self.session = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def upload_blob(self, data: bytes, retention_epochs: int | None = None) -> BlobUploadResult:
        if not data:
            raise ValidationError("Blob is required")
        epochs = retention_epochs or self.default_retention_epochs

        last_error: Exception | None = None
        for publisher in self.publisher_urls:
            for path in UPLOAD_PATHS:
                url = f"{publisher}{path}"
                try:
                    response = await self.session.put(
                        url,
                        params={"epochs": epochs},
                        content=data,
                        headers={"Content-Type": "application/octet-stream"},
                    )
                    response.raise_for_status()
                    result = parse_store_response(response.json(), fallback_size=len(data))
                    logger.info("walrus_upload_success", blob_id=result.blob_id, size=result.size, publisher=publisher)
                    return result
                except (httpx.HTTPError, ValueError, NetworkError) as exc:
                    last_error = exc
                    logger.warning("walrus_upload_attempt_failed", url=url, error=str(exc))

        raise NetworkError(f"All Walrus publishers failed: {last_error}")

    async def download_blob(self, blob_id: str) -> bytes:
        if not blob_id:
            raise ValidationError("Blob ID is required")

        not_found = 0
        last_error: Exception | None = None
        for aggregator in self.aggregator_urls:
            url = f"{aggregator}/v1/{blob_id}"
            try:
                response = await self.session.get(url)
                if response.status_code == 404:
                    not_found += 1
                    continue
                response.raise_for_status()
                logger.debug("walrus_download_success", blob_id=blob_id, size=len(response.content))
                return response.content
            except httpx.HTTPError as exc:
                last_error = exc
                logger.warning("walrus_download_attempt_failed", url=url, error=str(exc))

        if not_found == len(self.aggregator_urls):
            raise NotFoundError(f"Blob not found: {blob_id}")
        raise NetworkError(f"All Walrus aggregators failed: {last_error}")

    def get_blob_url(self, blob_id: str) -> str:
        return f"{self.aggregator_urls[0]}/v1/{blob_id}"

    async def blob_exists(self, blob_id: str) -> bool:
        if not blob_id:
            return False
        try:
            response = await self.session.head(self.get_blob_url(blob_id))
        except httpx.HTTPError:
            return False
        return response.is_success

    async def close(self) -> None:
        await self.session.aclose()
