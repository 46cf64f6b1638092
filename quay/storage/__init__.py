"""Blob storage layer."""

from functools import lru_cache

from quay.config import get_settings
from quay.storage.base import BlobInfo, BlobStore, UploadSession
from quay.storage.local import LocalBlobStore


@lru_cache
def get_blob_store() -> BlobStore:
    """Get cached blob store instance.

    Uses lru_cache so resumable sessions are shared across requests.
    """
    settings = get_settings()
    return LocalBlobStore(
        root_path=settings.storage.root_path,
        session_ttl_seconds=settings.storage.upload_session_ttl_seconds,
    )


__all__ = ["BlobInfo", "BlobStore", "LocalBlobStore", "UploadSession", "get_blob_store"]
