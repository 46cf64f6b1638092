"""OrphanRecordGC - remove rows left behind by a failed file delete."""

from __future__ import annotations

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.models.file import File
from quay.services.gc.base import GCResult, GCTask
from quay.storage.base import BlobStore

logger = structlog.get_logger()


class OrphanRecordGC(GCTask):
    """GC task for file rows flagged requires_cleanup.

    Trigger condition:
        files.requires_cleanup = TRUE

    Action:
        Delete the blob again (idempotent), then the row.
    """

    def __init__(self, db_session: AsyncSession, blob_store: BlobStore) -> None:
        self._db = db_session
        self._blobs = blob_store
        self._log = logger.bind(gc_task="orphan_record")

    @property
    def name(self) -> str:
        return "orphan_record"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)

        rows = await self._db.execute(
            select(File.id, File.storage_path).where(File.requires_cleanup == True)  # noqa: E712
        )
        orphans = list(rows.all())
        self._log.info("gc.orphan_record.found", count=len(orphans))

        for file_id, storage_path in orphans:
            try:
                await self._blobs.delete(storage_path)
                await self._db.execute(delete(File).where(File.id == file_id))
                await self._db.commit()
                result.cleaned_count += 1
                self._log.info("gc.orphan_record.deleted", file_id=file_id)
            except Exception as e:
                await self._db.rollback()
                self._log.exception("gc.orphan_record.item_error", file_id=file_id, error=str(e))
                result.add_error(f"file {file_id}: {e}")

        return result
