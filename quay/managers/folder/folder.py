"""FolderManager - folder tree operations.

Folder deletion is database-only: subfolders are deleted, contained files are
detached (folder_id = NULL) and keep their blobs. Generated links sharing a
deleted folder are removed with their content re-homed.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.concurrency import destination_key, forget_destination_locks
from quay.db.transaction import atomic
from quay.errors import ConflictError, NotFoundError, ValidationError
from quay.managers.link.link import remove_link_rows
from quay.models.file import File
from quay.models.folder import Folder
from quay.models.link import Link, LinkType
from quay.models.upload import PendingUpload
from quay.models.workspace import Workspace
from quay.utils.datetime import utcnow
from quay.validators.context import Context, validate_context
from quay.validators.names import validate_folder_name

logger = structlog.get_logger()


@dataclass
class FolderDeletion:
    """Result of a folder deletion."""

    folder_id: str
    deleted_folder_ids: list[str]
    detached_file_count: int
    removed_link_ids: list[str]


def _child_path(parent: Folder | None, name: str) -> str:
    if parent is None:
        return f"/{name}"
    return f"{parent.path.rstrip('/')}/{name}"


class FolderManager:
    """Manages folders in workspaces and links."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(manager="folder")

    async def _workspace_id(self, owner_id: str) -> str:
        result = await self._db.execute(select(Workspace.id).where(Workspace.owner_id == owner_id))
        workspace_id = result.scalars().first()
        if workspace_id is None:
            raise NotFoundError("Workspace not found", details={"owner_id": owner_id})
        return workspace_id

    async def _owned_link_ids(self, workspace_id: str) -> set[str]:
        result = await self._db.execute(select(Link.id).where(Link.workspace_id == workspace_id))
        return set(result.scalars().all())

    async def _check_context_owned(self, owner_id: str, context: Context) -> None:
        workspace_id = await self._workspace_id(owner_id)
        if context.workspace_id is not None:
            if context.workspace_id != workspace_id:
                raise NotFoundError(f"Workspace not found: {context.workspace_id}")
        elif context.link_id not in await self._owned_link_ids(workspace_id):
            raise NotFoundError(f"Link not found: {context.link_id}")

    async def get(self, folder_id: str, owner_id: str) -> Folder:
        """Get folder by ID.

        Raises:
            NotFoundError: If folder not found or not owned
        """
        result = await self._db.execute(select(Folder).where(Folder.id == folder_id))
        folder = result.scalars().first()
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        try:
            await self._check_context_owned(owner_id, Context.of(folder))
        except NotFoundError:
            raise NotFoundError(f"Folder not found: {folder_id}") from None
        return folder

    async def list_children(self, folder_id: str) -> list[Folder]:
        result = await self._db.execute(
            select(Folder)
            .where(Folder.parent_folder_id == folder_id)
            .order_by(Folder.sort_order, Folder.name)
        )
        return list(result.scalars().all())

    async def create(
        self,
        owner_id: str,
        name: str,
        *,
        parent_folder_id: str | None = None,
        workspace_id: str | None = None,
        link_id: str | None = None,
        sort_order: int = 0,
    ) -> Folder:
        """Create a folder.

        With a parent, the folder inherits the parent's context (an explicit
        context must match it). Without one, exactly one of workspace_id /
        link_id must be given; workspace_id defaults to the owner's workspace.
        """
        name = validate_folder_name(name)

        parent: Folder | None = None
        if parent_folder_id is not None:
            parent = await self.get(parent_folder_id, owner_id)
            parent_context = Context.of(parent)
            candidate = (
                Context(workspace_id=workspace_id, link_id=link_id)
                if workspace_id is not None or link_id is not None
                else parent_context
            )
            validate_context(candidate, parent_context)
        else:
            if workspace_id is None and link_id is None:
                workspace_id = await self._workspace_id(owner_id)
            candidate = Context(workspace_id=workspace_id, link_id=link_id)
            validate_context(candidate)
            await self._check_context_owned(owner_id, candidate)

        folder = Folder(
            id=f"fld-{uuid.uuid4().hex[:12]}",
            parent_folder_id=parent.id if parent else None,
            workspace_id=candidate.workspace_id,
            link_id=candidate.link_id,
            name=name,
            path=_child_path(parent, name),
            depth=parent.depth + 1 if parent else 0,
            sort_order=sort_order,
        )
        async with atomic(self._db, "folder.create", folder_id=folder.id):
            self._db.add(folder)

        self._log.info(
            "folder.created",
            folder_id=folder.id,
            parent_folder_id=folder.parent_folder_id,
            context=candidate.kind,
        )
        return folder

    async def _subtree(self, root: Folder) -> list[Folder]:
        """Root and all descendants, breadth first."""
        subtree = [root]
        frontier = [root.id]
        while frontier:
            result = await self._db.execute(
                select(Folder).where(Folder.parent_folder_id.in_(frontier))
            )
            children = list(result.scalars().all())
            subtree.extend(children)
            frontier = [child.id for child in children]
        return subtree

    def _repath(self, subtree: list[Folder]) -> None:
        """Recompute path/depth below a root whose own path/depth are set."""
        by_id = {folder.id: folder for folder in subtree}
        now = utcnow()
        for folder in subtree[1:]:
            parent = by_id[folder.parent_folder_id]
            folder.path = _child_path(parent, folder.name)
            folder.depth = parent.depth + 1
            folder.updated_at = now

    async def rename(self, folder_id: str, owner_id: str, name: str) -> Folder:
        folder = await self.get(folder_id, owner_id)
        name = validate_folder_name(name)
        if name == folder.name:
            return folder

        parent = None
        if folder.parent_folder_id is not None:
            parent = await self.get(folder.parent_folder_id, owner_id)
        subtree = await self._subtree(folder)

        async with atomic(self._db, "folder.rename", folder_id=folder.id):
            folder.name = name
            folder.path = _child_path(parent, name)
            folder.updated_at = utcnow()
            self._repath(subtree)

        self._log.info("folder.renamed", folder_id=folder.id, name=name)
        return folder

    async def move(self, folder_id: str, owner_id: str, new_parent_id: str | None) -> Folder:
        """Move a folder under a new parent (None = context root).

        Raises:
            ContextError: If the new parent is in another context
            ValidationError: If the move would create a cycle
        """
        folder = await self.get(folder_id, owner_id)
        if folder.parent_folder_id == new_parent_id:
            return folder

        subtree = await self._subtree(folder)
        parent: Folder | None = None
        if new_parent_id is not None:
            parent = await self.get(new_parent_id, owner_id)
            if parent.id in {node.id for node in subtree}:
                raise ValidationError(
                    message="A folder cannot be moved into itself or its descendants",
                    details={"reason": "folder_cycle", "folder_id": folder.id},
                )
            validate_context(Context.of(folder), Context.of(parent))
        elif folder.link_id is not None:
            raise ValidationError(
                message="Link folders must stay under the link's root folder",
                details={"reason": "link_root_fixed", "folder_id": folder.id},
            )

        async with atomic(self._db, "folder.move", folder_id=folder.id):
            folder.parent_folder_id = parent.id if parent else None
            folder.path = _child_path(parent, folder.name)
            folder.depth = parent.depth + 1 if parent else 0
            folder.updated_at = utcnow()
            self._repath(subtree)

        self._log.info("folder.moved", folder_id=folder.id, parent_folder_id=new_parent_id)
        return folder

    async def delete(self, folder_id: str, owner_id: str) -> FolderDeletion:
        """Delete a folder and its subfolders; files are detached, not deleted.

        Raises:
            ConflictError: For a link's root folder (delete the link instead)
        """
        folder = await self.get(folder_id, owner_id)
        if folder.link_id is not None and folder.is_root:
            raise ConflictError(
                "A link's root folder cannot be deleted, delete the link instead",
                details={"folder_id": folder.id, "link_id": folder.link_id},
            )

        subtree = await self._subtree(folder)
        subtree_ids = [node.id for node in subtree]
        context = Context.of(folder)

        result = await self._db.execute(
            select(Link).where(
                Link.source_folder_id.in_(subtree_ids),
                Link.link_type == LinkType.GENERATED.value,
            )
        )
        shared_links = list(result.scalars().all())

        async with atomic(self._db, "folder.delete", folder_id=folder.id):
            for link in shared_links:
                await remove_link_rows(self._db, link)

            file_result = await self._db.execute(
                update(File)
                .where(File.folder_id.in_(subtree_ids))
                .values(folder_id=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self._db.execute(
                delete(PendingUpload)
                .where(PendingUpload.folder_id.in_(subtree_ids))
                .execution_options(synchronize_session=False)
            )
            for node in sorted(subtree, key=lambda f: f.depth, reverse=True):
                await self._db.delete(node)
                await self._db.flush()

        await forget_destination_locks(
            {destination_key(context.owner_key, node_id) for node_id in subtree_ids}
        )
        self._db.expunge_all()

        deletion = FolderDeletion(
            folder_id=folder.id,
            deleted_folder_ids=subtree_ids,
            detached_file_count=file_result.rowcount or 0,
            removed_link_ids=[link.id for link in shared_links],
        )
        self._log.info(
            "folder.deleted",
            folder_id=folder.id,
            deleted_folders=len(subtree_ids),
            detached_files=deletion.detached_file_count,
            removed_links=len(shared_links),
        )
        return deletion
