"""Files API endpoints.

Storage counters are adjusted after the response is sent (BackgroundTasks).
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks
from pydantic import BaseModel, Field

from quay.api.dependencies import AuthDep, FileManagerDep
from quay.services.quota import apply_usage_adjustment

router = APIRouter()


# Request/Response Models


class FileResponse(BaseModel):
    """File response model (storage_path is internal)."""

    id: str
    folder_id: str | None
    workspace_id: str | None
    link_id: str | None
    batch_id: str | None
    file_name: str
    original_name: str
    file_size: int
    mime_type: str
    checksum: str | None
    uploader_name: str | None
    uploader_email: str | None
    created_at: datetime
    updated_at: datetime


class UpdateFileRequest(BaseModel):
    """Rename and/or move. folder_id: null moves to the context root."""

    file_name: str | None = None
    folder_id: str | None = None


class BulkDeleteRequest(BaseModel):
    file_ids: list[str] = Field(min_length=1, max_length=1000)


class FileDeleteResponse(BaseModel):
    file_id: str
    freed_bytes: int
    orphaned: bool


class BulkDeleteResponse(BaseModel):
    deleted_count: int
    failed_ids: list[str]
    orphaned_ids: list[str]
    freed_bytes: int


class CopyRequest(BaseModel):
    folder_id: str | None = None


def file_to_response(file) -> FileResponse:
    """Convert File model to API response."""
    return FileResponse(
        id=file.id,
        folder_id=file.folder_id,
        workspace_id=file.workspace_id,
        link_id=file.link_id,
        batch_id=file.batch_id,
        file_name=file.file_name,
        original_name=file.original_name,
        file_size=file.file_size,
        mime_type=file.mime_type,
        checksum=file.checksum,
        uploader_name=file.uploader_name,
        uploader_email=file.uploader_email,
        created_at=file.created_at,
        updated_at=file.updated_at,
    )


# Endpoints


@router.get("/{file_id}", response_model=FileResponse)
async def get_file(
    file_id: str,
    file_mgr: FileManagerDep,
    principal: AuthDep,
) -> FileResponse:
    file = await file_mgr.get(file_id, principal.id)
    return file_to_response(file)


@router.delete("/{file_id}", response_model=FileDeleteResponse)
async def delete_file(
    file_id: str,
    file_mgr: FileManagerDep,
    principal: AuthDep,
    background_tasks: BackgroundTasks,
) -> FileDeleteResponse:
    """Delete a file: blob first, then the row.

    503 if the blob could not be deleted (the file is untouched).
    """
    deletion = await file_mgr.delete_file(file_id, principal.id)
    background_tasks.add_task(
        apply_usage_adjustment, principal.id, -deletion.freed_bytes, "delete", deletion.file_id
    )
    return FileDeleteResponse(
        file_id=deletion.file_id,
        freed_bytes=deletion.freed_bytes,
        orphaned=deletion.orphaned,
    )


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete(
    request: BulkDeleteRequest,
    file_mgr: FileManagerDep,
    principal: AuthDep,
    background_tasks: BackgroundTasks,
) -> BulkDeleteResponse:
    """Delete many files. Each blob delete succeeds or fails on its own."""
    result = await file_mgr.bulk_delete(request.file_ids, principal.id)
    for file_id, size in result.deleted_sizes.items():
        background_tasks.add_task(apply_usage_adjustment, principal.id, -size, "delete", file_id)
    return BulkDeleteResponse(
        deleted_count=result.deleted_count,
        failed_ids=result.failed_ids,
        orphaned_ids=result.orphaned_ids,
        freed_bytes=result.freed_bytes,
    )


@router.patch("/{file_id}", response_model=FileResponse)
async def update_file(
    file_id: str,
    request: UpdateFileRequest,
    file_mgr: FileManagerDep,
    principal: AuthDep,
) -> FileResponse:
    file = await file_mgr.get(file_id, principal.id)
    if "folder_id" in request.model_fields_set:
        file = await file_mgr.move(file_id, principal.id, request.folder_id)
    if request.file_name is not None:
        file = await file_mgr.rename(file_id, principal.id, request.file_name)
    return file_to_response(file)


@router.post("/{file_id}/copy-to-workspace", response_model=FileResponse, status_code=201)
async def copy_to_workspace(
    file_id: str,
    file_mgr: FileManagerDep,
    principal: AuthDep,
    background_tasks: BackgroundTasks,
    request: CopyRequest | None = None,
) -> FileResponse:
    """Copy a file into the workspace; counts against the owner's quota."""
    copy = await file_mgr.copy_to_workspace(
        file_id,
        principal.id,
        folder_id=request.folder_id if request else None,
    )
    background_tasks.add_task(apply_usage_adjustment, principal.id, copy.file_size, "copy", copy.id)
    return file_to_response(copy)
