"""Singleton factory for the active blob store."""

from __future__ import annotations

from functools import lru_cache

from .base import BlobStore


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    """
    Return the blob store selected by configuration.

    - USE_WALRUS_STORAGE=true  -> WalrusBlobStore (public publishers/aggregators)
    - USE_WALRUS_STORAGE=false -> LocalBlobStore (filesystem under BLOB_DIR)
    """
    from dattrain.config import get_settings

    settings = get_settings()

    if settings.use_walrus_storage:
        from .walrus_backend import WalrusBlobStore

        return WalrusBlobStore(
            publisher_urls=settings.walrus_publisher_list,
            aggregator_urls=settings.walrus_aggregator_list,
            timeout_seconds=settings.walrus_timeout_ms / 1000,
            default_retention_epochs=settings.blob_retention_epochs,
        )

    from .local_backend import LocalBlobStore

    return LocalBlobStore(
        base_dir=settings.blob_dir,
        simulated_latency=settings.blob_simulated_latency_ms / 1000,
        default_retention_epochs=settings.blob_retention_epochs,
    )
