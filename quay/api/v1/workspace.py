"""Workspace API endpoints (owner onboarding)."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from quay.api.dependencies import AuthDep, LinkManagerDep, WorkspaceManagerDep
from quay.managers.link import LinkSpec
from quay.models.link import LinkType

router = APIRouter()


# Request/Response Models


class OnboardRequest(BaseModel):
    """Request to create the caller's workspace."""

    name: str | None = Field(default=None, max_length=255)
    base_link_slug: str | None = Field(
        default=None,
        description="If set, the owner's base link is created with this slug.",
    )


class WorkspaceResponse(BaseModel):
    """Workspace response model."""

    id: str
    name: str
    plan: str
    base_link_id: str | None = None
    created_at: datetime


def _workspace_to_response(workspace, base_link_id: str | None = None) -> WorkspaceResponse:
    return WorkspaceResponse(
        id=workspace.id,
        name=workspace.name,
        plan=workspace.plan,
        base_link_id=base_link_id,
        created_at=workspace.created_at,
    )


# Endpoints


@router.post("", response_model=WorkspaceResponse, status_code=201)
async def onboard(
    request: OnboardRequest,
    workspace_mgr: WorkspaceManagerDep,
    link_mgr: LinkManagerDep,
    principal: AuthDep,
) -> WorkspaceResponse:
    """Create the caller's workspace and, optionally, their base link.

    409 if the caller already has a workspace.
    """
    workspace = await workspace_mgr.create(principal.id, name=request.name)
    base_link_id = None
    if request.base_link_slug:
        link = await link_mgr.create_link_with_root_folder(
            principal.id,
            principal.email,
            LinkSpec(slug=request.base_link_slug, link_type=LinkType.BASE.value),
        )
        base_link_id = link.id
    return _workspace_to_response(workspace, base_link_id)


@router.get("", response_model=WorkspaceResponse)
async def get_workspace(
    workspace_mgr: WorkspaceManagerDep,
    principal: AuthDep,
) -> WorkspaceResponse:
    workspace = await workspace_mgr.get_for_owner(principal.id)
    return _workspace_to_response(workspace)
