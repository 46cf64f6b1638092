"""FastAPI dependencies for the Quay API.

Provides dependency injection for:
- Database sessions
- Managers (Workspace, Link, Folder, File, Upload)
- Services (Quota, Access)
- Blob store
- Authentication
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from quay.config import get_settings
from quay.db.session import get_session_dependency
from quay.errors import ForbiddenError, UnauthorizedError
from quay.managers import FileManager, FolderManager, LinkManager, UploadManager, WorkspaceManager
from quay.services.access import AccessResolver
from quay.services.notifications import get_notification_dispatcher
from quay.services.quota import QuotaService
from quay.storage import BlobStore, get_blob_store

logger = structlog.get_logger()

PRINCIPAL_ID_HEADER = "X-Principal-Id"
PRINCIPAL_EMAIL_HEADER = "X-Principal-Email"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, as asserted by the upstream identity proxy."""

    id: str
    email: str


def authenticate(request: Request) -> Principal:
    """Authenticate request and return the principal.

    Authentication flow:
    1. X-Principal-Id (and X-Principal-Email) set by the gateway → use them
    2. No principal and allow_anonymous → the configured dev principal
    3. Otherwise → 401 Unauthorized

    Raises:
        UnauthorizedError: If authentication fails
    """
    security = get_settings().security
    principal_id = (request.headers.get(PRINCIPAL_ID_HEADER) or "").strip()

    if principal_id:
        email = (request.headers.get(PRINCIPAL_EMAIL_HEADER) or "").strip().lower()
        if not email:
            raise UnauthorizedError(
                "Principal email is required",
                details={"header": PRINCIPAL_EMAIL_HEADER},
            )
        return Principal(id=principal_id, email=email)

    if security.allow_anonymous:
        logger.debug("auth.success", source="anonymous")
        return Principal(id=security.anonymous_principal, email=security.anonymous_email)

    raise UnauthorizedError("Authentication required")


def require_admin(principal: Annotated[Principal, Depends(authenticate)]) -> Principal:
    """Allow only principals listed in security.admin_principals.

    In anonymous mode with no admins configured, everyone is admin.
    """
    security = get_settings().security
    if principal.id in security.admin_principals:
        return principal
    if security.allow_anonymous and not security.admin_principals:
        return principal
    raise ForbiddenError("Admin access required", details={"reason": "not_admin"})


async def get_workspace_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> WorkspaceManager:
    return WorkspaceManager(db_session=session)


async def get_link_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> LinkManager:
    """Get LinkManager with injected dependencies."""
    return LinkManager(db_session=session, dispatcher=get_notification_dispatcher())


async def get_folder_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> FolderManager:
    return FolderManager(db_session=session)


async def get_quota_service(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> QuotaService:
    return QuotaService(db_session=session)


async def get_access_resolver(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> AccessResolver:
    return AccessResolver(db_session=session, dispatcher=get_notification_dispatcher())


async def get_file_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> FileManager:
    """Get FileManager with injected dependencies."""
    return FileManager(db_session=session, blob_store=blob_store, quota=QuotaService(session))


async def get_upload_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> UploadManager:
    """Get UploadManager with injected dependencies."""
    dispatcher = get_notification_dispatcher()
    return UploadManager(
        db_session=session,
        blob_store=blob_store,
        quota=QuotaService(session),
        access=AccessResolver(session, dispatcher),
        dispatcher=dispatcher,
    )


# Type aliases for cleaner dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session_dependency)]
BlobStoreDep = Annotated[BlobStore, Depends(get_blob_store)]
AuthDep = Annotated[Principal, Depends(authenticate)]
AdminDep = Annotated[Principal, Depends(require_admin)]
WorkspaceManagerDep = Annotated[WorkspaceManager, Depends(get_workspace_manager)]
LinkManagerDep = Annotated[LinkManager, Depends(get_link_manager)]
FolderManagerDep = Annotated[FolderManager, Depends(get_folder_manager)]
FileManagerDep = Annotated[FileManager, Depends(get_file_manager)]
UploadManagerDep = Annotated[UploadManager, Depends(get_upload_manager)]
QuotaServiceDep = Annotated[QuotaService, Depends(get_quota_service)]
AccessResolverDep = Annotated[AccessResolver, Depends(get_access_resolver)]
