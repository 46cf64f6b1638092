"""GC lifecycle management for FastAPI lifespan integration."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from quay.config import GCConfig, get_settings
from quay.db.session import get_async_session
from quay.services.gc.base import GCResult, GCTask
from quay.services.gc.scheduler import GCScheduler
from quay.services.gc.tasks import (
    ExpiredUploadGC,
    OrphanBlobGC,
    OrphanRecordGC,
    StorageReconcileGC,
)
from quay.storage import get_blob_store
from quay.storage.base import BlobStore

logger = structlog.get_logger()

# Global scheduler instance
_gc_scheduler: GCScheduler | None = None


def build_gc_tasks(
    db_session: AsyncSession,
    blob_store: BlobStore,
    gc_config: GCConfig,
) -> list[GCTask]:
    """Enabled tasks, in execution order.

    Expired uploads go first so their names and sessions are released before
    the orphan scans look at the blob store.
    """
    tasks: list[GCTask] = []
    if gc_config.expired_upload.enabled:
        tasks.append(ExpiredUploadGC(db_session, blob_store))
    if gc_config.orphan_record.enabled:
        tasks.append(OrphanRecordGC(db_session, blob_store))
    if gc_config.storage_reconcile.enabled:
        tasks.append(StorageReconcileGC(db_session))
    if gc_config.orphan_blob.enabled:
        tasks.append(
            OrphanBlobGC(
                db_session,
                blob_store,
                grace_seconds=gc_config.orphan_blob_grace_seconds,
            )
        )
    return tasks


class SessionPerCycleGCScheduler(GCScheduler):
    """GC Scheduler that opens a fresh db session for each cycle."""

    def __init__(self, config: GCConfig, blob_store: BlobStore | None = None) -> None:
        super().__init__(tasks=[], config=config)
        self._blob_store = blob_store or get_blob_store()

    async def _run_cycle(self) -> list[GCResult]:
        self._log.info("gc.cycle.start")
        results: list[GCResult] = []

        async with self._coordinator.acquire() as acquired:
            if not acquired:
                self._log.info("gc.cycle.skipped", reason="coordination_lock_not_acquired")
                return results

            async with get_async_session() as db_session:
                for task in build_gc_tasks(db_session, self._blob_store, self._config):
                    results.append(await self._run_task(task))

        self._log.info(
            "gc.cycle.complete",
            total_cleaned=sum(r.cleaned_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )
        return results


async def init_gc_scheduler() -> GCScheduler:
    """Create the scheduler and start its loop if gc.enabled.

    The scheduler always exists so /v1/admin/gc/run works with the loop off.
    """
    global _gc_scheduler

    gc_config = get_settings().gc
    logger.info(
        "gc.init",
        enabled=gc_config.enabled,
        interval_seconds=gc_config.interval_seconds,
        run_on_startup=gc_config.run_on_startup,
        tasks={
            "expired_upload": gc_config.expired_upload.enabled,
            "orphan_record": gc_config.orphan_record.enabled,
            "storage_reconcile": gc_config.storage_reconcile.enabled,
            "orphan_blob": gc_config.orphan_blob.enabled,
        },
    )

    _gc_scheduler = SessionPerCycleGCScheduler(config=gc_config)

    if not gc_config.enabled:
        logger.info("gc.background_disabled", reason="gc.enabled=false")
        return _gc_scheduler

    if gc_config.run_on_startup:
        try:
            results = await _gc_scheduler.run_once()
            logger.info(
                "gc.run_on_startup.complete",
                cleaned=sum(r.cleaned_count for r in results),
                errors=sum(len(r.errors) for r in results),
            )
        except Exception as e:
            # Startup continues; the loop retries on its next cycle
            logger.exception("gc.run_on_startup.failed", error=str(e))

    await _gc_scheduler.start()
    return _gc_scheduler


async def shutdown_gc_scheduler() -> None:
    global _gc_scheduler

    if _gc_scheduler is not None:
        await _gc_scheduler.stop()
        _gc_scheduler = None


def get_gc_scheduler() -> GCScheduler | None:
    """Get the current GC scheduler instance."""
    return _gc_scheduler
