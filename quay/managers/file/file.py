"""FileManager - file deletion, rename, move and copy.

Deletion order is blob first, database second:

- Blob delete fails: abort with InfrastructureError, the row is untouched.
- Blob gone but the row delete fails: the row is flagged requires_cleanup
  (best effort), ``file.delete.orphaned_record`` is logged, and the delete is
  reported as a success. The orphan_record GC task removes the row later.

A row pointing at a missing blob is recoverable; a blob with no row is not
visible to anyone, so the reverse order is never used.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.concurrency import destination_key, get_destination_lock
from quay.db.transaction import atomic
from quay.errors import InfrastructureError, NotFoundError, QuayError
from quay.managers.naming import NameReserver
from quay.models.file import File
from quay.models.folder import Folder
from quay.models.link import Link
from quay.models.workspace import Workspace
from quay.services.quota import QuotaService
from quay.storage.base import BlobStore
from quay.storage.paths import blob_path
from quay.utils.datetime import utcnow
from quay.validators.context import Context, validate_context
from quay.validators.names import sanitize_file_name
from quay.validators.shapes import PersonalUpload, shape_columns

logger = structlog.get_logger()


@dataclass
class FileDeletion:
    """Result of a single-file delete."""

    file_id: str
    freed_bytes: int
    orphaned: bool = False


@dataclass
class BulkDeleteResult:
    """Result of a bulk delete.

    deleted_count counts files whose blob was deleted, including rows left
    behind as orphans (also listed in orphaned_ids).
    """

    deleted_count: int = 0
    failed_ids: list[str] = field(default_factory=list)
    orphaned_ids: list[str] = field(default_factory=list)
    deleted_sizes: dict[str, int] = field(default_factory=dict)

    @property
    def freed_bytes(self) -> int:
        return sum(self.deleted_sizes.values())


class FileManager:
    """Manages stored files."""

    def __init__(
        self,
        db_session: AsyncSession,
        blob_store: BlobStore,
        quota: QuotaService | None = None,
    ) -> None:
        self._db = db_session
        self._blobs = blob_store
        self._quota = quota
        self._log = logger.bind(manager="file")

    # ---- Lookups ----

    async def _visibility(self, owner_id: str):
        """WHERE clause matching files in the owner's workspace or links."""
        result = await self._db.execute(select(Workspace.id).where(Workspace.owner_id == owner_id))
        workspace_id = result.scalars().first()
        if workspace_id is None:
            raise NotFoundError("Workspace not found", details={"owner_id": owner_id})
        link_ids = select(Link.id).where(Link.workspace_id == workspace_id)
        return workspace_id, or_(File.workspace_id == workspace_id, File.link_id.in_(link_ids))

    async def get(self, file_id: str, owner_id: str) -> File:
        """Get file by ID.

        Raises:
            NotFoundError: If file not found or not owned
        """
        _, visible = await self._visibility(owner_id)
        result = await self._db.execute(select(File).where(File.id == file_id, visible))
        file = result.scalars().first()
        if file is None:
            raise NotFoundError(f"File not found: {file_id}")
        return file

    async def list_in_folder(self, owner_id: str, folder_id: str | None) -> list[File]:
        _, visible = await self._visibility(owner_id)
        query = select(File).where(visible)
        if folder_id is None:
            query = query.where(File.folder_id.is_(None))
        else:
            query = query.where(File.folder_id == folder_id)
        result = await self._db.execute(query.order_by(File.file_name))
        return list(result.scalars().all())

    # ---- Deletion ----

    async def _delete_blob(self, file: File) -> bool:
        try:
            return await self._blobs.delete(file.storage_path)
        except QuayError:
            raise
        except Exception as e:
            raise InfrastructureError(
                f"Failed to delete blob for file {file.id}: {e}",
                details={"file_id": file.id},
            ) from e

    async def _delete_rows(self, file_ids: list[str]) -> None:
        async with atomic(self._db, "file.delete", count=len(file_ids)):
            await self._db.execute(
                delete(File)
                .where(File.id.in_(file_ids))
                .execution_options(synchronize_session=False)
            )

    async def _flag_orphans(self, file_ids: list[str]) -> None:
        """Mark rows whose blob is gone; failures are logged only."""
        try:
            async with atomic(self._db, "file.flag_orphans", count=len(file_ids)):
                await self._db.execute(
                    update(File)
                    .where(File.id.in_(file_ids))
                    .values(requires_cleanup=True, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            self._log.warning("file.delete.flag_failed", file_ids=file_ids, error=str(e))

    async def _delete_rows_or_orphan(self, file_ids: list[str]) -> bool:
        """Delete rows whose blobs are gone. Returns False if they were orphaned."""
        try:
            await self._delete_rows(file_ids)
            return True
        except SQLAlchemyError as e:
            await self._flag_orphans(file_ids)
            for file_id in file_ids:
                self._log.error(
                    "file.delete.orphaned_record",
                    file_id=file_id,
                    requires_cleanup=True,
                    error=str(e),
                )
            return False

    async def delete_file(self, file_id: str, owner_id: str) -> FileDeletion:
        """Delete one file: blob first, then the row.

        Raises:
            NotFoundError: If file not found or not owned
            InfrastructureError: If the blob could not be deleted (row untouched)
        """
        file = await self.get(file_id, owner_id)
        size = file.file_size

        try:
            existed = await self._delete_blob(file)
        except InfrastructureError as e:
            self._log.warning("file.delete.blob_failed", file_id=file.id, error=e.message)
            raise
        if not existed:
            self._log.info("file.delete.blob_absent", file_id=file.id, path=file.storage_path)

        orphaned = not await self._delete_rows_or_orphan([file.id])
        self._db.expunge_all()
        self._log.info("file.deleted", file_id=file_id, size=size, orphaned=orphaned)
        return FileDeletion(file_id=file_id, freed_bytes=size, orphaned=orphaned)

    async def bulk_delete(self, file_ids: list[str], owner_id: str) -> BulkDeleteResult:
        """Delete many files; each blob succeeds or fails on its own.

        Ownership of every id is verified before anything is deleted. Blob
        deletions run concurrently; only files whose blob was deleted go to
        the single database delete.

        Raises:
            NotFoundError: If any id is unknown or not owned (nothing deleted)
        """
        unique_ids = list(dict.fromkeys(file_ids))
        result = BulkDeleteResult()
        if not unique_ids:
            return result

        _, visible = await self._visibility(owner_id)
        rows = await self._db.execute(select(File).where(File.id.in_(unique_ids), visible))
        files = {file.id: file for file in rows.scalars().all()}
        missing = [file_id for file_id in unique_ids if file_id not in files]
        if missing:
            raise NotFoundError(
                f"Files not found: {', '.join(missing)}",
                details={"file_ids": missing},
            )

        ordered = [files[file_id] for file_id in unique_ids]
        outcomes = await asyncio.gather(
            *(self._delete_blob(file) for file in ordered),
            return_exceptions=True,
        )

        for file, outcome in zip(ordered, outcomes):
            if isinstance(outcome, BaseException):
                result.failed_ids.append(file.id)
                self._log.warning("file.delete.blob_failed", file_id=file.id, error=str(outcome))
            else:
                result.deleted_sizes[file.id] = file.file_size

        deleted_ids = list(result.deleted_sizes)
        if deleted_ids and not await self._delete_rows_or_orphan(deleted_ids):
            result.orphaned_ids = deleted_ids
        result.deleted_count = len(deleted_ids)
        self._db.expunge_all()

        self._log.info(
            "file.bulk_deleted",
            requested=len(unique_ids),
            deleted=result.deleted_count,
            failed=len(result.failed_ids),
            orphaned=len(result.orphaned_ids),
        )
        return result

    # ---- Rename / move ----

    async def _target_folder(self, owner_id: str, folder_id: str) -> Folder:
        result = await self._db.execute(select(Folder).where(Folder.id == folder_id))
        folder = result.scalars().first()
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        workspace_id, _ = await self._visibility(owner_id)
        if folder.workspace_id is not None and folder.workspace_id != workspace_id:
            raise NotFoundError(f"Folder not found: {folder_id}")
        if folder.link_id is not None:
            owned = await self._db.execute(
                select(Link.id).where(Link.id == folder.link_id, Link.workspace_id == workspace_id)
            )
            if owned.scalars().first() is None:
                raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def rename(self, file_id: str, owner_id: str, new_name: str) -> File:
        """Rename a file in place; collisions get ``name (n).ext``.

        The blob keeps its storage path.
        """
        file = await self.get(file_id, owner_id)
        desired = sanitize_file_name(new_name)
        if desired == file.file_name:
            return file

        context = Context.of(file)
        reserver = NameReserver(self._db)
        async with await get_destination_lock(destination_key(context.owner_key, file.folder_id)):
            name = await reserver.resolve(
                owner_id, context, file.folder_id, desired, exclude_file_id=file.id
            )
            async with atomic(self._db, "file.rename", file_id=file.id):
                file.file_name = name
                file.updated_at = utcnow()

        self._log.info("file.renamed", file_id=file.id, file_name=name)
        return file

    async def move(self, file_id: str, owner_id: str, folder_id: str | None) -> File:
        """Move a file to another folder of the same context (None = root).

        Raises:
            ContextError: If the folder belongs to another context
        """
        file = await self.get(file_id, owner_id)
        if file.folder_id == folder_id:
            return file

        context = Context.of(file)
        if folder_id is not None:
            folder = await self._target_folder(owner_id, folder_id)
            validate_context(context, Context.of(folder))

        reserver = NameReserver(self._db)
        async with await get_destination_lock(destination_key(context.owner_key, folder_id)):
            name = await reserver.resolve(
                owner_id, context, folder_id, file.file_name, exclude_file_id=file.id
            )
            async with atomic(self._db, "file.move", file_id=file.id):
                file.folder_id = folder_id
                file.file_name = name
                file.updated_at = utcnow()

        self._log.info("file.moved", file_id=file.id, folder_id=folder_id)
        return file

    # ---- Copy ----

    async def copy_to_workspace(
        self,
        file_id: str,
        owner_id: str,
        *,
        folder_id: str | None = None,
    ) -> File:
        """Copy a file (typically a link upload) into the owner's workspace.

        The blob is copied to a fresh workspace path and a personal row is
        created. Counts against the owner's quota.

        Raises:
            QuotaExceededError: If the copy does not fit
            ContextError: If folder_id is not a workspace folder
        """
        source = await self.get(file_id, owner_id)
        workspace_id, _ = await self._visibility(owner_id)
        context = Context.workspace(workspace_id)
        if folder_id is not None:
            folder = await self._target_folder(owner_id, folder_id)
            validate_context(context, Context.of(folder))

        quota = self._quota or QuotaService(self._db)
        await quota.enforce_quota(owner_id, source.file_size, count_attempt=False)

        reserver = NameReserver(self._db, self._blobs)
        async with await get_destination_lock(destination_key(context.owner_key, folder_id)):
            name = await reserver.resolve(owner_id, context, folder_id, source.file_name)
            destination = blob_path(owner_id, context, folder_id, name)
            info = await self._blobs.copy(source.storage_path, destination)

            copy = File(
                id=f"file-{uuid.uuid4().hex[:12]}",
                folder_id=folder_id,
                **shape_columns(PersonalUpload(workspace_id=workspace_id)),
                file_name=name,
                original_name=source.original_name,
                file_size=info.size,
                mime_type=source.mime_type,
                checksum=source.checksum,
                storage_path=destination,
            )
            try:
                async with atomic(self._db, "file.copy", file_id=copy.id, source_id=source.id):
                    self._db.add(copy)
            except Exception:
                # No row will ever point at the copied blob
                await self._blobs.delete(destination)
                raise

        self._log.info(
            "file.copied",
            file_id=copy.id,
            source_id=source.id,
            size=copy.file_size,
        )
        return copy
