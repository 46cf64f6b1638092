"""ExpiredUploadGC - discard abandoned resumable uploads."""

from __future__ import annotations

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.models.upload import PendingUpload
from quay.services.gc.base import GCResult, GCTask
from quay.storage.base import BlobStore
from quay.utils.datetime import utcnow

logger = structlog.get_logger()


class ExpiredUploadGC(GCTask):
    """GC task for uploads that were reserved but never completed.

    Trigger condition:
        pending_uploads.expires_at < now, or a blob session past its expiry

    Action:
        Abort the blob session (removes partial data), delete the pending row.
        Expired pending rows also release their reserved names.
    """

    def __init__(self, db_session: AsyncSession, blob_store: BlobStore) -> None:
        self._db = db_session
        self._blobs = blob_store
        self._log = logger.bind(gc_task="expired_upload")

    @property
    def name(self) -> str:
        return "expired_upload"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)

        purged = await self._blobs.purge_expired_sessions()
        result.cleaned_count += len(purged)

        rows = await self._db.execute(
            select(PendingUpload.id).where(PendingUpload.expires_at < utcnow())
        )
        expired_ids = list(rows.scalars().all())
        self._log.info(
            "gc.expired_upload.found",
            sessions=len(purged),
            pending_rows=len(expired_ids),
        )

        for upload_id in expired_ids:
            try:
                await self._blobs.abort_upload(upload_id)
                await self._db.execute(delete(PendingUpload).where(PendingUpload.id == upload_id))
                await self._db.commit()
                result.cleaned_count += 1
            except Exception as e:
                await self._db.rollback()
                self._log.exception(
                    "gc.expired_upload.item_error", upload_id=upload_id, error=str(e)
                )
                result.add_error(f"upload {upload_id}: {e}")

        return result
