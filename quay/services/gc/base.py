"""GC task base classes and result structures."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class GCResult:
    """Result of one reconciliation task run.

    Attributes:
        task_name: Name of the GC task
        cleaned_count: Records, sessions or blobs repaired
        skipped_count: Candidates left alone (e.g. still inside a grace period)
        errors: Per-item failures; they never abort the task
    """

    task_name: str = ""
    cleaned_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def to_dict(self) -> dict:
        return {
            "task_name": self.task_name,
            "cleaned_count": self.cleaned_count,
            "skipped_count": self.skipped_count,
            "errors": list(self.errors),
        }


class GCTask(ABC):
    """A reconciliation job between the database and the blob store.

    - OrphanRecordGC: rows flagged requires_cleanup after a failed delete
    - ExpiredUploadGC: abandoned resumable sessions and their pending rows
    - StorageReconcileGC: usage counters recomputed from file sizes
    - OrphanBlobGC: blobs no row points at (opt-in)
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Task name used in config, logs and results."""
        ...

    @abstractmethod
    async def run(self) -> GCResult:
        """Run the task once.

        A failure on one item is recorded in GCResult.errors and the task
        moves on to the next item.
        """
        ...
