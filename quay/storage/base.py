"""BlobStore base class - storage abstraction.

The blob store is non-transactional and may disagree with the database at
any instant. Callers order their writes around it (see UploadManager and
FileManager); the store itself only guarantees:

- delete() of an absent blob succeeds (idempotent)
- exists() reports a path as taken while a resumable session targets it
- backend failures raise InfrastructureError
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


@dataclass
class BlobInfo:
    """Stored blob metadata."""

    path: str
    size: int
    modified_at: datetime


@dataclass
class UploadSession:
    """Resumable upload session."""

    session_id: str
    path: str
    expected_size: int
    content_type: str
    created_at: datetime
    expires_at: datetime
    received_bytes: int = 0

    @property
    def is_complete(self) -> bool:
        return self.received_bytes == self.expected_size


class BlobStore(ABC):
    """Abstract blob store."""

    @abstractmethod
    async def put(self, path: str, data: bytes, *, content_type: str | None = None) -> BlobInfo:
        """Write a whole blob, replacing nothing (ConflictError if taken)."""
        ...

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Whether a blob or a live upload session occupies the path."""
        ...

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete a blob.

        Returns:
            True if a blob was removed, False if it was already absent
        """
        ...

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """Read a whole blob (NotFoundError if absent)."""
        ...

    @abstractmethod
    async def copy(self, source: str, destination: str) -> BlobInfo:
        """Copy a blob to a free destination path."""
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[BlobInfo]:
        """List committed blobs under a prefix."""
        ...

    # ---- Resumable sessions ----

    @abstractmethod
    async def initiate_upload(
        self,
        path: str,
        *,
        expected_size: int,
        content_type: str = "application/octet-stream",
    ) -> UploadSession:
        """Open a resumable session targeting a free path."""
        ...

    @abstractmethod
    async def upload_chunk(self, session_id: str, offset: int, data: bytes) -> UploadSession:
        """Append a chunk at the given offset."""
        ...

    @abstractmethod
    async def verify_upload(self, session_id: str) -> BlobInfo:
        """Commit a complete session and return the stored blob."""
        ...

    @abstractmethod
    async def abort_upload(self, session_id: str) -> None:
        """Discard a session and its partial data (idempotent)."""
        ...

    @abstractmethod
    async def purge_expired_sessions(self) -> list[UploadSession]:
        """Discard sessions past their expiry; returns the purged sessions."""
        ...
