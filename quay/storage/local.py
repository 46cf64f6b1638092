"""LocalBlobStore - filesystem-backed blob store.

Blobs live under ``root_path`` at their logical path. Resumable sessions
write to ``root_path/.uploads/{session_id}.part`` and are renamed into place
on verify.

Note: the session index is held in memory, so sessions only survive within a
single process. Part files left behind by a restart are removed by
purge_expired_sessions().
"""

from __future__ import annotations

import asyncio
import os
import uuid
from datetime import timedelta
from pathlib import Path, PurePosixPath

import aiofiles
import aiofiles.os
import structlog

from quay.errors import ConflictError, InfrastructureError, NotFoundError, ValidationError
from quay.storage.base import BlobInfo, BlobStore, UploadSession
from quay.utils.datetime import from_timestamp, utcnow

logger = structlog.get_logger()

_UPLOADS_DIR = ".uploads"
_COPY_CHUNK = 1024 * 1024


class LocalBlobStore(BlobStore):
    """Blob store on the local filesystem."""

    def __init__(self, root_path: str | Path, *, session_ttl_seconds: int = 86400) -> None:
        self._root = Path(root_path)
        self._session_ttl = timedelta(seconds=session_ttl_seconds)
        self._sessions: dict[str, UploadSession] = {}
        self._sessions_lock = asyncio.Lock()
        self._log = logger.bind(component="blob_store", backend="local")

    # ---- Helpers ----

    def _resolve(self, path: str) -> Path:
        """Map a logical path to a file under root, rejecting escapes."""
        if not path or "\x00" in path:
            raise ValidationError(
                message="Blob path cannot be empty",
                details={"field": "path", "reason": "empty_path"},
            )
        logical = PurePosixPath(path)
        if logical.is_absolute() or ".." in logical.parts or logical.parts[0] == _UPLOADS_DIR:
            raise ValidationError(
                message=f"Invalid blob path: {path}",
                details={"field": "path", "reason": "path_escape"},
            )
        return self._root.joinpath(*logical.parts)

    def _part_file(self, session_id: str) -> Path:
        return self._root / _UPLOADS_DIR / f"{session_id}.part"

    def _live_session_for(self, path: str) -> UploadSession | None:
        now = utcnow()
        for session in self._sessions.values():
            if session.path == path and session.expires_at > now:
                return session
        return None

    async def _get_session(self, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None or session.expires_at <= utcnow():
            raise NotFoundError(
                f"Upload session not found or expired: {session_id}",
                details={"session_id": session_id},
            )
        return session

    async def _stat(self, target: Path, path: str) -> BlobInfo:
        stat = await aiofiles.os.stat(target)
        return BlobInfo(
            path=path,
            size=stat.st_size,
            modified_at=from_timestamp(stat.st_mtime),
        )

    # ---- Blobs ----

    async def put(self, path: str, data: bytes, *, content_type: str | None = None) -> BlobInfo:
        target = self._resolve(path)
        if await self.exists(path):
            raise ConflictError(f"Blob already exists: {path}", details={"path": path})
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(target, "wb") as f:
                await f.write(data)
            return await self._stat(target, path)
        except OSError as e:
            raise InfrastructureError(f"Failed to write blob {path}: {e}") from e

    async def exists(self, path: str) -> bool:
        target = self._resolve(path)
        if self._live_session_for(path) is not None:
            return True
        try:
            return await aiofiles.os.path.isfile(target)
        except OSError as e:
            raise InfrastructureError(f"Failed to stat blob {path}: {e}") from e

    async def delete(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            await aiofiles.os.remove(target)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise InfrastructureError(f"Failed to delete blob {path}: {e}") from e
        self._log.debug("blob.deleted", path=path)
        return True

    async def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"Blob not found: {path}", details={"path": path}) from e
        except OSError as e:
            raise InfrastructureError(f"Failed to read blob {path}: {e}") from e

    async def copy(self, source: str, destination: str) -> BlobInfo:
        src = self._resolve(source)
        dst = self._resolve(destination)
        if await self.exists(destination):
            raise ConflictError(
                f"Blob already exists: {destination}", details={"path": destination}
            )
        try:
            await aiofiles.os.makedirs(dst.parent, exist_ok=True)
            async with aiofiles.open(src, "rb") as reader, aiofiles.open(dst, "wb") as writer:
                while chunk := await reader.read(_COPY_CHUNK):
                    await writer.write(chunk)
            return await self._stat(dst, destination)
        except FileNotFoundError as e:
            raise NotFoundError(f"Blob not found: {source}", details={"path": source}) from e
        except OSError as e:
            raise InfrastructureError(f"Failed to copy blob {source}: {e}") from e

    async def list(self, prefix: str = "") -> list[BlobInfo]:
        try:
            return await asyncio.to_thread(self._walk, prefix)
        except OSError as e:
            raise InfrastructureError(f"Failed to list blobs under {prefix!r}: {e}") from e

    def _walk(self, prefix: str) -> list[BlobInfo]:
        start = self._resolve(prefix) if prefix else self._root
        if not start.exists():
            return []
        blobs: list[BlobInfo] = []
        for dirpath, dirnames, filenames in os.walk(start):
            if Path(dirpath) == self._root:
                dirnames[:] = [d for d in dirnames if d != _UPLOADS_DIR]
            for filename in filenames:
                full = Path(dirpath) / filename
                stat = full.stat()
                blobs.append(
                    BlobInfo(
                        path=full.relative_to(self._root).as_posix(),
                        size=stat.st_size,
                        modified_at=from_timestamp(stat.st_mtime),
                    )
                )
        return sorted(blobs, key=lambda b: b.path)

    # ---- Resumable sessions ----

    async def initiate_upload(
        self,
        path: str,
        *,
        expected_size: int,
        content_type: str = "application/octet-stream",
    ) -> UploadSession:
        if expected_size < 0:
            raise ValidationError(
                message="expected_size must be >= 0",
                details={"field": "expected_size", "reason": "negative"},
            )
        async with self._sessions_lock:
            if await self.exists(path):
                raise ConflictError(f"Blob already exists: {path}", details={"path": path})

            now = utcnow()
            session = UploadSession(
                session_id=f"up-{uuid.uuid4().hex}",
                path=path,
                expected_size=expected_size,
                content_type=content_type,
                created_at=now,
                expires_at=now + self._session_ttl,
            )
            part = self._part_file(session.session_id)
            try:
                await aiofiles.os.makedirs(part.parent, exist_ok=True)
                async with aiofiles.open(part, "wb"):
                    pass
            except OSError as e:
                raise InfrastructureError(f"Failed to open upload session: {e}") from e
            self._sessions[session.session_id] = session

        self._log.info(
            "blob.session.initiated",
            session_id=session.session_id,
            path=path,
            expected_size=expected_size,
        )
        return session

    async def upload_chunk(self, session_id: str, offset: int, data: bytes) -> UploadSession:
        session = await self._get_session(session_id)
        if offset != session.received_bytes:
            raise ValidationError(
                message=(
                    f"Chunk offset {offset} does not match received bytes "
                    f"{session.received_bytes}"
                ),
                details={"field": "offset", "expected": session.received_bytes},
            )
        if session.received_bytes + len(data) > session.expected_size:
            raise ValidationError(
                message="Chunk exceeds the declared upload size",
                details={"field": "data", "expected_size": session.expected_size},
            )
        try:
            async with aiofiles.open(self._part_file(session_id), "ab") as f:
                await f.write(data)
        except OSError as e:
            raise InfrastructureError(f"Failed to write chunk: {e}") from e
        session.received_bytes += len(data)
        return session

    async def verify_upload(self, session_id: str) -> BlobInfo:
        session = await self._get_session(session_id)
        if not session.is_complete:
            raise ValidationError(
                message="Upload is incomplete",
                details={
                    "session_id": session_id,
                    "received_bytes": session.received_bytes,
                    "expected_size": session.expected_size,
                },
            )
        target = self._resolve(session.path)
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            await aiofiles.os.replace(self._part_file(session_id), target)
            info = await self._stat(target, session.path)
        except OSError as e:
            raise InfrastructureError(f"Failed to commit upload {session_id}: {e}") from e

        async with self._sessions_lock:
            self._sessions.pop(session_id, None)
        self._log.info(
            "blob.session.verified", session_id=session_id, path=session.path, size=info.size
        )
        return info

    async def abort_upload(self, session_id: str) -> None:
        async with self._sessions_lock:
            self._sessions.pop(session_id, None)
        try:
            await aiofiles.os.remove(self._part_file(session_id))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise InfrastructureError(f"Failed to abort upload {session_id}: {e}") from e

    async def purge_expired_sessions(self) -> list[UploadSession]:
        now = utcnow()
        # Held throughout so a session opened meanwhile is never mistaken for a leftover
        async with self._sessions_lock:
            expired = [s for s in self._sessions.values() if s.expires_at <= now]
            for session in expired:
                self._sessions.pop(session.session_id, None)

            uploads_dir = self._root / _UPLOADS_DIR
            try:
                entries = await aiofiles.os.listdir(uploads_dir)
            except FileNotFoundError:
                entries = []
            except OSError as e:
                raise InfrastructureError(f"Failed to list upload sessions: {e}") from e

            # Part files with no live session: expired ones and leftovers from a restart
            for entry in entries:
                if not entry.endswith(".part") or entry.removesuffix(".part") in self._sessions:
                    continue
                try:
                    await aiofiles.os.remove(uploads_dir / entry)
                except FileNotFoundError:
                    pass

        if expired:
            self._log.info("blob.session.purged", count=len(expired))
        return expired
