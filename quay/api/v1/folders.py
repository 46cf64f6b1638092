"""Folders API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from quay.api.dependencies import AuthDep, FileManagerDep, FolderManagerDep, LinkManagerDep
from quay.api.v1.files import FileResponse, file_to_response
from quay.api.v1.links import LinkOptions, LinkResponse, link_to_response
from quay.managers.link import LinkSpec

router = APIRouter()


# Request/Response Models


class CreateFolderRequest(BaseModel):
    """Request to create a folder.

    With parent_folder_id the folder inherits the parent's context. Without
    it, the folder is created at the root of the given workspace or link
    (the caller's workspace if neither is given).
    """

    name: str
    parent_folder_id: str | None = None
    workspace_id: str | None = None
    link_id: str | None = None
    sort_order: int = 0


class UpdateFolderRequest(BaseModel):
    """Rename and/or move. parent_folder_id: null moves to the context root."""

    name: str | None = None
    parent_folder_id: str | None = None


class ShareFolderRequest(LinkOptions):
    """Share a workspace folder through a generated link.

    link_id converts an existing inactive link instead of creating one.
    """

    link_id: str | None = None
    slug: str | None = None


class FolderResponse(BaseModel):
    id: str
    parent_folder_id: str | None
    workspace_id: str | None
    link_id: str | None
    name: str
    path: str
    depth: int
    sort_order: int
    created_at: datetime
    updated_at: datetime


class FolderContentsResponse(FolderResponse):
    folders: list[FolderResponse] = Field(default_factory=list)
    files: list[FileResponse] = Field(default_factory=list)


class FolderDeleteResponse(BaseModel):
    folder_id: str
    deleted_folder_ids: list[str]
    detached_file_count: int
    removed_link_ids: list[str]


def _folder_to_response(folder) -> FolderResponse:
    return FolderResponse(
        id=folder.id,
        parent_folder_id=folder.parent_folder_id,
        workspace_id=folder.workspace_id,
        link_id=folder.link_id,
        name=folder.name,
        path=folder.path,
        depth=folder.depth,
        sort_order=folder.sort_order,
        created_at=folder.created_at,
        updated_at=folder.updated_at,
    )


# Endpoints


@router.post("", response_model=FolderResponse, status_code=201)
async def create_folder(
    request: CreateFolderRequest,
    folder_mgr: FolderManagerDep,
    principal: AuthDep,
) -> FolderResponse:
    folder = await folder_mgr.create(
        principal.id,
        request.name,
        parent_folder_id=request.parent_folder_id,
        workspace_id=request.workspace_id,
        link_id=request.link_id,
        sort_order=request.sort_order,
    )
    return _folder_to_response(folder)


@router.get("/{folder_id}", response_model=FolderContentsResponse)
async def get_folder(
    folder_id: str,
    folder_mgr: FolderManagerDep,
    file_mgr: FileManagerDep,
    principal: AuthDep,
) -> FolderContentsResponse:
    """Get a folder with its direct subfolders and files."""
    folder = await folder_mgr.get(folder_id, principal.id)
    children = await folder_mgr.list_children(folder.id)
    files = await file_mgr.list_in_folder(principal.id, folder.id)
    return FolderContentsResponse(
        **_folder_to_response(folder).model_dump(),
        folders=[_folder_to_response(child) for child in children],
        files=[file_to_response(file) for file in files],
    )


@router.patch("/{folder_id}", response_model=FolderResponse)
async def update_folder(
    folder_id: str,
    request: UpdateFolderRequest,
    folder_mgr: FolderManagerDep,
    principal: AuthDep,
) -> FolderResponse:
    """Rename and/or move a folder. Moving into a descendant is rejected."""
    folder = await folder_mgr.get(folder_id, principal.id)
    if request.name is not None:
        folder = await folder_mgr.rename(folder_id, principal.id, request.name)
    if "parent_folder_id" in request.model_fields_set:
        folder = await folder_mgr.move(folder_id, principal.id, request.parent_folder_id)
    return _folder_to_response(folder)


@router.delete("/{folder_id}", response_model=FolderDeleteResponse)
async def delete_folder(
    folder_id: str,
    folder_mgr: FolderManagerDep,
    principal: AuthDep,
) -> FolderDeleteResponse:
    """Delete a folder and its subfolders.

    Files inside are kept and moved to the context root. Generated links
    sharing a deleted folder are removed.
    """
    deletion = await folder_mgr.delete(folder_id, principal.id)
    return FolderDeleteResponse(
        folder_id=deletion.folder_id,
        deleted_folder_ids=deletion.deleted_folder_ids,
        detached_file_count=deletion.detached_file_count,
        removed_link_ids=deletion.removed_link_ids,
    )


@router.post("/{folder_id}/link", response_model=LinkResponse, status_code=201)
async def share_folder(
    folder_id: str,
    request: ShareFolderRequest,
    link_mgr: LinkManagerDep,
    principal: AuthDep,
) -> LinkResponse:
    """Share a workspace folder; uploads through the link land in it."""
    new_link = LinkSpec(
        slug=request.slug,
        name=request.name,
        description=request.description,
        is_public=request.is_public,
        editor_emails=request.editor_emails,
        link_config=request.link_config,
        branding=request.branding,
        max_files=request.max_files,
        max_file_size=request.max_file_size,
        password=request.password,
    )
    link = await link_mgr.link_existing_folder(
        principal.id,
        principal.email,
        folder_id,
        link_id=request.link_id,
        new_link=new_link,
    )
    return link_to_response(link)
