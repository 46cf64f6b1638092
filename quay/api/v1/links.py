"""Links API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from quay.api.dependencies import AuthDep, LinkManagerDep
from quay.managers.link import LinkSpec
from quay.models.link import Link, LinkType

router = APIRouter()


# Request/Response Models


class LinkOptions(BaseModel):
    """Fields shared by link creation requests."""

    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    is_public: bool = True
    editor_emails: list[str] = Field(default_factory=list)
    link_config: dict[str, Any] = Field(
        default_factory=dict,
        description="expires_at, notify_on_upload, custom_message, requires_name",
    )
    branding: dict[str, Any] = Field(default_factory=dict)
    max_files: int | None = Field(default=None, ge=1)
    max_file_size: int | None = Field(default=None, ge=1)
    password: str | None = None


class CreateLinkRequest(LinkOptions):
    """Request to create a base or custom link."""

    slug: str
    link_type: LinkType = LinkType.CUSTOM

    def to_spec(self) -> LinkSpec:
        return LinkSpec(
            slug=self.slug,
            name=self.name,
            link_type=self.link_type.value,
            description=self.description,
            is_public=self.is_public,
            editor_emails=self.editor_emails,
            link_config=self.link_config,
            branding=self.branding,
            max_files=self.max_files,
            max_file_size=self.max_file_size,
            password=self.password,
        )


class UpdateLinkRequest(BaseModel):
    """Partial link update. Only fields present in the body are applied."""

    slug: str | None = None
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    is_public: bool | None = None
    link_config: dict[str, Any] | None = None
    branding: dict[str, Any] | None = None
    max_files: int | None = Field(default=None, ge=1)
    max_file_size: int | None = Field(default=None, ge=1)
    password: str | None = Field(default=None, description="Empty string removes the password")


class LinkResponse(BaseModel):
    """Link response model.

    The password hash never leaves the service; has_password says whether
    one is set.
    """

    id: str
    slug: str
    name: str
    description: str | None
    link_type: str
    is_active: bool
    is_public: bool
    source_folder_id: str | None
    expires_at: datetime | None
    has_password: bool
    link_config: dict[str, Any]
    branding: dict[str, Any]
    max_files: int | None
    max_file_size: int | None
    created_at: datetime
    updated_at: datetime


class LinkListResponse(BaseModel):
    items: list[LinkResponse]


class LinkDeleteResponse(BaseModel):
    link_id: str
    rehomed_folders: int
    rehomed_files: int


def link_to_response(link: Link) -> LinkResponse:
    """Convert Link model to API response."""
    config = {k: v for k, v in (link.link_config or {}).items() if k != "password_hash"}
    return LinkResponse(
        id=link.id,
        slug=link.slug,
        name=link.name,
        description=link.description,
        link_type=link.link_type,
        is_active=link.is_active,
        is_public=link.is_public,
        source_folder_id=link.source_folder_id,
        expires_at=link.expires_at,
        has_password=bool(link.password_hash),
        link_config=config,
        branding=link.branding or {},
        max_files=link.max_files,
        max_file_size=link.max_file_size,
        created_at=link.created_at,
        updated_at=link.updated_at,
    )


# Endpoints


@router.post("", response_model=LinkResponse, status_code=201)
async def create_link(
    request: CreateLinkRequest,
    link_mgr: LinkManagerDep,
    principal: AuthDep,
) -> LinkResponse:
    """Create a base or custom link.

    The link, its owner permission, editor permissions and its root folder
    are created together or not at all. 409 slug_taken if the slug is in use.
    """
    link = await link_mgr.create_link_with_root_folder(
        principal.id, principal.email, request.to_spec()
    )
    return link_to_response(link)


@router.get("", response_model=LinkListResponse)
async def list_links(
    link_mgr: LinkManagerDep,
    principal: AuthDep,
    include_inactive: bool = Query(True),
) -> LinkListResponse:
    links = await link_mgr.list(principal.id, include_inactive=include_inactive)
    return LinkListResponse(items=[link_to_response(link) for link in links])


@router.get("/{link_id}", response_model=LinkResponse)
async def get_link(
    link_id: str,
    link_mgr: LinkManagerDep,
    principal: AuthDep,
) -> LinkResponse:
    link = await link_mgr.get(link_id, principal.id)
    return link_to_response(link)


@router.patch("/{link_id}", response_model=LinkResponse)
async def update_link(
    link_id: str,
    request: UpdateLinkRequest,
    link_mgr: LinkManagerDep,
    principal: AuthDep,
) -> LinkResponse:
    changes = request.model_dump(exclude_unset=True)
    link = await link_mgr.update(link_id, principal.id, changes)
    return link_to_response(link)


@router.post("/{link_id}/deactivate", response_model=LinkResponse)
async def deactivate_link(
    link_id: str,
    link_mgr: LinkManagerDep,
    principal: AuthDep,
) -> LinkResponse:
    link = await link_mgr.deactivate(link_id, principal.id)
    return link_to_response(link)


@router.delete("/{link_id}", response_model=LinkDeleteResponse)
async def delete_link(
    link_id: str,
    link_mgr: LinkManagerDep,
    principal: AuthDep,
) -> LinkDeleteResponse:
    """Delete a custom or generated link.

    Folders and files delivered through the link move into the workspace.
    The base link cannot be deleted (403).
    """
    removal = await link_mgr.delete(link_id, principal.id)
    return LinkDeleteResponse(
        link_id=removal.link_id,
        rehomed_folders=removal.rehomed_folders,
        rehomed_files=removal.rehomed_files,
    )
