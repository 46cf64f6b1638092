"""StorageReconcileGC - recompute usage counters from file sizes."""

from __future__ import annotations

from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.models.storage import StorageCounter
from quay.models.workspace import Workspace
from quay.services.gc.base import GCResult, GCTask
from quay.services.quota import QuotaService
from quay.utils.datetime import utcnow

logger = structlog.get_logger()

# Counters changed this recently may have adjustments still in flight
SETTLE_SECONDS = 60


class StorageReconcileGC(GCTask):
    """GC task that corrects counter drift.

    Trigger condition:
        storage_counters.bytes_used != SUM(file_size) of the owner's files
        (workspace files plus files still in the owner's link contexts,
        excluding rows flagged requires_cleanup), and the counter has not
        changed in the last SETTLE_SECONDS

    Action:
        One UPDATE per owner that recomputes bytes_used in the database
        (QuotaService.reconcile_usage).
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._quota = QuotaService(db_session)
        self._log = logger.bind(gc_task="storage_reconcile")

    @property
    def name(self) -> str:
        return "storage_reconcile"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)
        settled_before = utcnow() - timedelta(seconds=SETTLE_SECONDS)

        rows = await self._db.execute(
            select(Workspace.owner_id, StorageCounter.bytes_used, StorageCounter.updated_at)
            .select_from(Workspace)
            .outerjoin(StorageCounter, StorageCounter.owner_id == Workspace.owner_id)
        )

        for owner_id, recorded, updated_at in rows.all():
            if updated_at is not None and updated_at >= settled_before:
                result.skipped_count += 1
                continue
            try:
                if not await self._quota.reconcile_usage(owner_id, settled_before=settled_before):
                    continue
                result.cleaned_count += 1
                self._log.info("gc.storage_reconcile.drift", owner_id=owner_id, recorded=recorded)
            except Exception as e:
                self._log.exception(
                    "gc.storage_reconcile.item_error", owner_id=owner_id, error=str(e)
                )
                result.add_error(f"owner {owner_id}: {e}")

        return result
