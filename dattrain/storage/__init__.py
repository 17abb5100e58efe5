"""Blob stores for dattrain: local filesystem (dev) and Walrus (network)."""

from .base import BlobStore
from .factory import get_blob_store

__all__ = ["BlobStore", "get_blob_store"]
