"""WorkspaceManager - owner onboarding and workspace lookup."""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.config import get_settings
from quay.db.errors import is_unique_violation
from quay.db.transaction import atomic
from quay.errors import ConflictError, NotFoundError
from quay.models.workspace import Workspace

logger = structlog.get_logger()


class WorkspaceManager:
    """Manages the one-per-owner workspace."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(manager="workspace")
        self._settings = get_settings()

    async def create(
        self,
        owner_id: str,
        *,
        name: str | None = None,
        plan: str | None = None,
    ) -> Workspace:
        """Create the owner's workspace.

        Raises:
            ConflictError: If the owner already has one
        """
        workspace = Workspace(
            id=f"ws-{uuid.uuid4().hex[:12]}",
            owner_id=owner_id,
            name=(name or "").strip() or "My Workspace",
            plan=plan or self._settings.quota.default_plan,
        )
        try:
            async with atomic(self._db, "workspace.create", owner_id=owner_id):
                self._db.add(workspace)
        except IntegrityError as e:
            if is_unique_violation(e):
                raise ConflictError(
                    "Workspace already exists for this owner",
                    details={"owner_id": owner_id},
                ) from e
            raise

        self._log.info("workspace.created", workspace_id=workspace.id, owner_id=owner_id)
        return workspace

    async def get_for_owner(self, owner_id: str) -> Workspace:
        """Get the owner's workspace.

        Raises:
            NotFoundError: If the owner has not been onboarded
        """
        result = await self._db.execute(select(Workspace).where(Workspace.owner_id == owner_id))
        workspace = result.scalars().first()
        if workspace is None:
            raise NotFoundError("Workspace not found", details={"owner_id": owner_id})
        return workspace
