"""OrphanBlobGC - delete blobs that no row points at."""

from __future__ import annotations

from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.models.file import File
from quay.models.upload import PendingUpload
from quay.services.gc.base import GCResult, GCTask
from quay.storage.base import BlobStore
from quay.utils.datetime import utcnow

logger = structlog.get_logger()


class OrphanBlobGC(GCTask):
    """GC task for blobs with no File or PendingUpload row.

    Such blobs come from an upload whose row insert failed after
    verification. Blobs younger than the grace period are skipped so an
    upload between verify and commit is never touched.

    Trigger condition:
        blob path not in files.storage_path / pending_uploads.storage_path
        AND modified_at < now - grace_seconds

    Action:
        Delete the blob.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        blob_store: BlobStore,
        *,
        grace_seconds: int,
    ) -> None:
        self._db = db_session
        self._blobs = blob_store
        self._grace = timedelta(seconds=grace_seconds)
        self._log = logger.bind(gc_task="orphan_blob")

    @property
    def name(self) -> str:
        return "orphan_blob"

    async def _known_paths(self) -> set[str]:
        files = await self._db.execute(select(File.storage_path))
        pending = await self._db.execute(select(PendingUpload.storage_path))
        return set(files.scalars().all()) | set(pending.scalars().all())

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)
        cutoff = utcnow() - self._grace

        blobs = await self._blobs.list()
        known = await self._known_paths()

        for blob in blobs:
            if blob.path in known:
                continue
            if blob.modified_at > cutoff:
                result.skipped_count += 1
                continue
            try:
                await self._blobs.delete(blob.path)
                result.cleaned_count += 1
                self._log.info("gc.orphan_blob.deleted", path=blob.path, size=blob.size)
            except Exception as e:
                self._log.exception("gc.orphan_blob.item_error", path=blob.path, error=str(e))
                result.add_error(f"blob {blob.path}: {e}")

        return result
