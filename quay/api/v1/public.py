"""Public uploader endpoints, addressed by link slug.

No principal is required: access is decided per link (active, unexpired,
password, private-link permissions) when a batch is opened. Each later call
is scoped to its batch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Query, Request
from pydantic import BaseModel, Field

from quay.api.dependencies import LinkManagerDep, UploadManagerDep
from quay.api.v1.uploads import (
    ChunkResponse,
    CompleteRequest,
    UploadRequest,
    UploadResponse,
    session_to_response,
    upload_to_response,
)
from quay.errors import NotFoundError
from quay.managers.link import LinkManager
from quay.managers.upload import UploadManager
from quay.models.batch import Batch
from quay.services.quota import apply_usage_adjustment

router = APIRouter()


# Request/Response Models


class PublicLinkResponse(BaseModel):
    """What an uploader sees before opening a batch."""

    slug: str
    name: str
    description: str | None
    branding: dict[str, Any]
    custom_message: str | None
    requires_name: bool
    requires_password: bool
    is_public: bool
    is_accepting_uploads: bool
    max_file_size: int | None
    expires_at: datetime | None


class OpenBatchRequest(BaseModel):
    uploader_name: str | None = Field(default=None, max_length=255)
    uploader_email: str | None = None
    uploader_message: str | None = Field(default=None, max_length=2000)
    password: str | None = None


class BatchResponse(BaseModel):
    id: str
    status: str
    uploader_name: str
    total_files: int
    total_size: int
    created_at: datetime
    completed_at: datetime | None


class ReceivedFileResponse(BaseModel):
    """Uploader-facing view of a delivered file."""

    id: str
    file_name: str
    file_size: int
    mime_type: str
    created_at: datetime


def _batch_to_response(batch: Batch) -> BatchResponse:
    return BatchResponse(
        id=batch.id,
        status=batch.status,
        uploader_name=batch.uploader_name,
        total_files=batch.total_files,
        total_size=batch.total_size,
        created_at=batch.created_at,
        completed_at=batch.completed_at,
    )


async def _batch_for(
    slug: str,
    batch_id: str,
    link_mgr: LinkManager,
    upload_mgr: UploadManager,
) -> Batch:
    link = await link_mgr.get_by_slug(slug)
    batch = await upload_mgr.get_batch(batch_id)
    if batch.link_id != link.id:
        raise NotFoundError(f"Batch not found: {batch_id}")
    return batch


# Endpoints


@router.get("/{slug}", response_model=PublicLinkResponse)
async def get_public_link(
    slug: str,
    link_mgr: LinkManagerDep,
) -> PublicLinkResponse:
    link = await link_mgr.get_by_slug(slug)
    config = link.link_config or {}
    return PublicLinkResponse(
        slug=link.slug,
        name=link.name,
        description=link.description,
        branding=link.branding or {},
        custom_message=config.get("custom_message"),
        requires_name=bool(config.get("requires_name")),
        requires_password=bool(link.password_hash),
        is_public=link.is_public,
        is_accepting_uploads=link.is_active and not link.is_expired,
        max_file_size=link.max_file_size,
        expires_at=link.expires_at,
    )


@router.post("/{slug}/batches", response_model=BatchResponse, status_code=201)
async def open_batch(
    slug: str,
    request: OpenBatchRequest,
    upload_mgr: UploadManagerDep,
) -> BatchResponse:
    """Open an uploader batch. 403 with details.reason if access is refused."""
    batch = await upload_mgr.open_batch(
        slug,
        uploader_name=request.uploader_name,
        uploader_email=request.uploader_email,
        uploader_message=request.uploader_message,
        password=request.password,
    )
    return _batch_to_response(batch)


@router.post("/{slug}/batches/{batch_id}/uploads", response_model=UploadResponse, status_code=201)
async def request_link_upload(
    slug: str,
    batch_id: str,
    request: UploadRequest,
    link_mgr: LinkManagerDep,
    upload_mgr: UploadManagerDep,
) -> UploadResponse:
    batch = await _batch_for(slug, batch_id, link_mgr, upload_mgr)
    pending = await upload_mgr.request_link_upload(
        batch.id,
        request.file_name,
        request.size,
        mime_type=request.mime_type,
    )
    return upload_to_response(pending)


@router.put(
    "/{slug}/batches/{batch_id}/uploads/{upload_id}/chunk",
    response_model=ChunkResponse,
)
async def upload_chunk(
    slug: str,
    batch_id: str,
    upload_id: str,
    http_request: Request,
    link_mgr: LinkManagerDep,
    upload_mgr: UploadManagerDep,
    offset: int = Query(0, ge=0),
) -> ChunkResponse:
    batch = await _batch_for(slug, batch_id, link_mgr, upload_mgr)
    data = await http_request.body()
    session = await upload_mgr.upload_chunk(upload_id, offset, data, batch_id=batch.id)
    return session_to_response(session)


@router.post(
    "/{slug}/batches/{batch_id}/uploads/{upload_id}/complete",
    response_model=ReceivedFileResponse,
    status_code=201,
)
async def complete_link_upload(
    slug: str,
    batch_id: str,
    upload_id: str,
    link_mgr: LinkManagerDep,
    upload_mgr: UploadManagerDep,
    background_tasks: BackgroundTasks,
    request: CompleteRequest | None = None,
) -> ReceivedFileResponse:
    batch = await _batch_for(slug, batch_id, link_mgr, upload_mgr)
    completed = await upload_mgr.complete_upload(
        upload_id,
        batch_id=batch.id,
        checksum=request.checksum if request else None,
    )
    background_tasks.add_task(
        apply_usage_adjustment,
        completed.owner_id,
        completed.file.file_size,
        "upload",
        completed.file.id,
    )
    file = completed.file
    return ReceivedFileResponse(
        id=file.id,
        file_name=file.file_name,
        file_size=file.file_size,
        mime_type=file.mime_type,
        created_at=file.created_at,
    )


@router.post("/{slug}/batches/{batch_id}/complete", response_model=BatchResponse)
async def complete_batch(
    slug: str,
    batch_id: str,
    link_mgr: LinkManagerDep,
    upload_mgr: UploadManagerDep,
) -> BatchResponse:
    """Close the batch; the link owner is notified."""
    batch = await _batch_for(slug, batch_id, link_mgr, upload_mgr)
    batch = await upload_mgr.complete_batch(batch.id)
    return _batch_to_response(batch)
