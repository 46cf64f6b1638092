"""GC task implementations."""

from quay.services.gc.tasks.expired_upload import ExpiredUploadGC
from quay.services.gc.tasks.orphan_blob import OrphanBlobGC
from quay.services.gc.tasks.orphan_record import OrphanRecordGC
from quay.services.gc.tasks.storage_reconcile import StorageReconcileGC

__all__ = ["ExpiredUploadGC", "OrphanBlobGC", "OrphanRecordGC", "StorageReconcileGC"]
