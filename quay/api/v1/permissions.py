"""Link permissions API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from quay.api.dependencies import AccessResolverDep, AuthDep
from quay.models.permission import PermissionRole

router = APIRouter()


class GrantRequest(BaseModel):
    email: str
    role: PermissionRole = PermissionRole.UPLOADER


class PermissionResponse(BaseModel):
    id: str
    email: str
    role: str
    is_verified: bool
    verified_at: datetime | None
    created_at: datetime


class PermissionListResponse(BaseModel):
    items: list[PermissionResponse]


def _permission_to_response(permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        email=permission.email,
        role=permission.role,
        is_verified=permission.is_verified,
        verified_at=permission.verified_at,
        created_at=permission.created_at,
    )


@router.get("/{link_id}/permissions", response_model=PermissionListResponse)
async def list_permissions(
    link_id: str,
    access: AccessResolverDep,
    principal: AuthDep,
) -> PermissionListResponse:
    permissions = await access.list_permissions(link_id, principal.id)
    return PermissionListResponse(items=[_permission_to_response(p) for p in permissions])


@router.post("/{link_id}/permissions", response_model=PermissionResponse, status_code=201)
async def grant_permission(
    link_id: str,
    request: GrantRequest,
    access: AccessResolverDep,
    principal: AuthDep,
) -> PermissionResponse:
    """Grant editor or uploader access; the grantee is notified."""
    permission = await access.grant(link_id, principal.id, request.email, request.role.value)
    return _permission_to_response(permission)


@router.delete("/{link_id}/permissions/{email}", status_code=204)
async def revoke_permission(
    link_id: str,
    email: str,
    access: AccessResolverDep,
    principal: AuthDep,
) -> None:
    """Revoke a permission. The owner permission cannot be revoked (403)."""
    await access.revoke(link_id, principal.id, email)
