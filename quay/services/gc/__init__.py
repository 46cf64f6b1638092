"""Reconciliation (GC) between the database and the blob store.

Tasks:
- ExpiredUploadGC: abandoned resumable sessions and pending rows
- OrphanRecordGC: rows flagged requires_cleanup after a failed delete
- StorageReconcileGC: usage counter drift
- OrphanBlobGC: blobs without a row (disabled by default)
"""

from quay.services.gc.base import GCResult, GCTask
from quay.services.gc.coordinator import GCCoordinator, NoopCoordinator
from quay.services.gc.scheduler import GCScheduler

__all__ = [
    "GCCoordinator",
    "GCResult",
    "GCScheduler",
    "GCTask",
    "NoopCoordinator",
]
