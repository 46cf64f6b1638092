"""Personal upload API endpoints.

Flow: POST /uploads (admission and name reservation), PUT /uploads/{id}/chunk
(resumable transfer), POST /uploads/{id}/complete (verification, File row).
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Query, Request
from pydantic import BaseModel, Field

from quay.api.dependencies import AuthDep, UploadManagerDep
from quay.api.v1.files import FileResponse, file_to_response
from quay.services.quota import apply_usage_adjustment

router = APIRouter()


# Request/Response Models


class UploadRequest(BaseModel):
    """Request to start an upload."""

    file_name: str = Field(min_length=1)
    size: int = Field(ge=0)
    mime_type: str | None = None


class PersonalUploadRequest(UploadRequest):
    folder_id: str | None = None


class CompleteRequest(BaseModel):
    checksum: str | None = None


class UploadResponse(BaseModel):
    """A reserved upload: the resolved name may differ from the requested one."""

    upload_id: str
    file_name: str
    original_name: str
    folder_id: str | None
    expected_size: int
    expires_at: datetime


class ChunkResponse(BaseModel):
    upload_id: str
    received_bytes: int
    expected_size: int
    is_complete: bool


def upload_to_response(pending) -> UploadResponse:
    return UploadResponse(
        upload_id=pending.id,
        file_name=pending.file_name,
        original_name=pending.original_name,
        folder_id=pending.folder_id,
        expected_size=pending.expected_size,
        expires_at=pending.expires_at,
    )


def session_to_response(session) -> ChunkResponse:
    return ChunkResponse(
        upload_id=session.session_id,
        received_bytes=session.received_bytes,
        expected_size=session.expected_size,
        is_complete=session.is_complete,
    )


# Endpoints


@router.post("", response_model=UploadResponse, status_code=201)
async def request_upload(
    request: PersonalUploadRequest,
    upload_mgr: UploadManagerDep,
    principal: AuthDep,
) -> UploadResponse:
    """Admit an upload into the caller's workspace.

    413 quota_exceeded / file_too_large, 429 rate_limited. A name already
    taken in the folder is resolved to ``name (n).ext``.
    """
    pending = await upload_mgr.request_upload(
        principal.id,
        request.file_name,
        request.size,
        folder_id=request.folder_id,
        mime_type=request.mime_type,
    )
    return upload_to_response(pending)


@router.put("/{upload_id}/chunk", response_model=ChunkResponse)
async def upload_chunk(
    upload_id: str,
    http_request: Request,
    upload_mgr: UploadManagerDep,
    principal: AuthDep,
    offset: int = Query(0, ge=0),
) -> ChunkResponse:
    """Append the raw request body at offset."""
    data = await http_request.body()
    session = await upload_mgr.upload_chunk(upload_id, offset, data, owner_id=principal.id)
    return session_to_response(session)


@router.post("/{upload_id}/complete", response_model=FileResponse, status_code=201)
async def complete_upload(
    upload_id: str,
    upload_mgr: UploadManagerDep,
    principal: AuthDep,
    background_tasks: BackgroundTasks,
    request: CompleteRequest | None = None,
) -> FileResponse:
    completed = await upload_mgr.complete_upload(
        upload_id,
        owner_id=principal.id,
        checksum=request.checksum if request else None,
    )
    background_tasks.add_task(
        apply_usage_adjustment,
        completed.owner_id,
        completed.file.file_size,
        "upload",
        completed.file.id,
    )
    return file_to_response(completed.file)


@router.delete("/{upload_id}", status_code=204)
async def abort_upload(
    upload_id: str,
    upload_mgr: UploadManagerDep,
    principal: AuthDep,
) -> None:
    await upload_mgr.abort_upload(upload_id, owner_id=principal.id)
