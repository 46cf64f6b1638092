"""Admin API endpoints.

Manual reconciliation (GC) trigger and status. Restricted to
security.admin_principals.
"""

from __future__ import annotations

import time
from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from quay.api.dependencies import AdminDep
from quay.config import get_settings
from quay.errors import ConflictError, InfrastructureError
from quay.services.gc.lifecycle import get_gc_scheduler

router = APIRouter(prefix="/admin", tags=["admin"])


# ---- Request/Response Models ----


class GCRunRequest(BaseModel):
    """Request body for manual GC trigger."""

    tasks: list[str] | None = Field(
        default=None,
        description="Task names to report. None = all enabled tasks. "
        "Valid names: expired_upload, orphan_record, storage_reconcile, orphan_blob",
    )


class GCTaskResult(BaseModel):
    task_name: str
    cleaned_count: int
    skipped_count: int
    errors: list[str]


class GCRunResponse(BaseModel):
    results: list[GCTaskResult]
    total_cleaned: int
    total_errors: int
    duration_ms: int


class GCStatusResponse(BaseModel):
    enabled: bool
    is_running: bool
    is_cycle_in_progress: bool
    interval_seconds: int
    last_run_at: datetime | None
    tasks: dict[str, dict[str, bool]]


# ---- Endpoints ----


@router.post("/gc/run", response_model=GCRunResponse)
async def run_gc(
    admin: AdminDep,
    request: GCRunRequest | None = None,
) -> GCRunResponse:
    """Run one reconciliation cycle synchronously.

    Works even when gc.enabled is false (the scheduler always exists).

    **Status Codes**:
    - 200: cycle ran (individual items may have errors)
    - 409: a cycle is already in progress
    - 503: scheduler not initialized
    """
    scheduler = get_gc_scheduler()
    if scheduler is None:
        raise InfrastructureError("GC scheduler is not available")
    if scheduler.is_cycle_in_progress:
        raise ConflictError("GC is already running", details={"reason": "gc_in_progress"})

    start = time.monotonic()
    results = await scheduler.run_once()

    if request and request.tasks is not None:
        allowed = set(request.tasks)
        results = [r for r in results if r.task_name in allowed]

    duration_ms = int((time.monotonic() - start) * 1000)
    return GCRunResponse(
        results=[
            GCTaskResult(
                task_name=r.task_name,
                cleaned_count=r.cleaned_count,
                skipped_count=r.skipped_count,
                errors=r.errors,
            )
            for r in results
        ],
        total_cleaned=sum(r.cleaned_count for r in results),
        total_errors=sum(len(r.errors) for r in results),
        duration_ms=duration_ms,
    )


@router.get("/gc/status", response_model=GCStatusResponse)
async def get_gc_status(admin: AdminDep) -> GCStatusResponse:
    gc_config = get_settings().gc
    scheduler = get_gc_scheduler()

    return GCStatusResponse(
        enabled=gc_config.enabled,
        is_running=scheduler.is_running if scheduler else False,
        is_cycle_in_progress=scheduler.is_cycle_in_progress if scheduler else False,
        interval_seconds=gc_config.interval_seconds,
        last_run_at=scheduler.last_run_at if scheduler else None,
        tasks={
            "expired_upload": {"enabled": gc_config.expired_upload.enabled},
            "orphan_record": {"enabled": gc_config.orphan_record.enabled},
            "storage_reconcile": {"enabled": gc_config.storage_reconcile.enabled},
            "orphan_blob": {"enabled": gc_config.orphan_blob.enabled},
        },
    )
