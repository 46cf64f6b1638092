"""NameReserver - dual-layer duplicate detection for upload destinations.

A name is free only if neither layer knows it:

1. Database: a File or PendingUpload with the same name in the same folder
   and context. Pending rows make names reserved earlier in the same batch
   count as taken.
2. Blob store: the computed destination path (an open resumable session
   counts as existing). Checked only when the database has no match.

Callers hold the destination lock (quay.concurrency) across resolve() and
the session open that follows.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.config import get_settings
from quay.errors import NameCollisionExhaustedError
from quay.models.file import File
from quay.models.upload import PendingUpload
from quay.storage.base import BlobStore
from quay.storage.paths import blob_path
from quay.utils.datetime import epoch_millis
from quay.validators.context import Context
from quay.validators.names import candidate_names, timestamped_name
from quay.validators.shapes import UploadShape

logger = structlog.get_logger()


@dataclass(frozen=True)
class UploadTarget:
    """Where an upload lands: owner, context, folder and row shape."""

    owner_id: str
    context: Context
    folder_id: str | None
    shape: UploadShape

    def path_for(self, file_name: str) -> str:
        return blob_path(self.owner_id, self.context, self.folder_id, file_name)


def _in_destination(model, context: Context, folder_id: str | None):
    """WHERE clauses for rows in one folder (or the context root)."""
    clauses = []
    if context.workspace_id is not None:
        clauses.append(model.workspace_id == context.workspace_id)
    else:
        clauses.append(model.link_id == context.link_id)
    if folder_id is None:
        clauses.append(model.folder_id.is_(None))
    else:
        clauses.append(model.folder_id == folder_id)
    return clauses


class NameReserver:
    """Finds a free file name in a destination."""

    def __init__(
        self,
        db_session: AsyncSession,
        blob_store: BlobStore | None = None,
        *,
        max_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._blobs = blob_store
        self._max_attempts = max_attempts or get_settings().upload.max_name_attempts
        self._log = logger.bind(component="name_reserver")

    async def taken_names(
        self,
        context: Context,
        folder_id: str | None,
        *,
        exclude_file_id: str | None = None,
    ) -> set[str]:
        """Names the database already holds in the destination."""
        files_query = select(File.file_name).where(*_in_destination(File, context, folder_id))
        if exclude_file_id is not None:
            files_query = files_query.where(File.id != exclude_file_id)
        files = await self._db.execute(files_query)

        pending = await self._db.execute(
            select(PendingUpload.file_name).where(
                *_in_destination(PendingUpload, context, folder_id)
            )
        )
        return set(files.scalars().all()) | set(pending.scalars().all())

    async def _blob_taken(
        self, owner_id: str, context: Context, folder_id: str | None, name: str
    ) -> bool:
        if self._blobs is None:
            return False
        return await self._blobs.exists(blob_path(owner_id, context, folder_id, name))

    async def resolve(
        self,
        owner_id: str,
        context: Context,
        folder_id: str | None,
        desired_name: str,
        *,
        exclude_file_id: str | None = None,
    ) -> str:
        """Return desired_name or the first free ``name (n).ext`` variant.

        Args:
            owner_id: Owner of the destination (blob path prefix)
            context: Workspace or link context of the destination
            folder_id: Destination folder (None = context root)
            desired_name: Sanitized file name
            exclude_file_id: File being renamed/moved (its own name is not a collision)

        Raises:
            NameCollisionExhaustedError: If the timestamp fallback is taken too
        """
        taken = await self.taken_names(context, folder_id, exclude_file_id=exclude_file_id)

        attempts = 0
        for candidate in candidate_names(desired_name, self._max_attempts):
            attempts += 1
            if candidate in taken:
                continue
            if await self._blob_taken(owner_id, context, folder_id, candidate):
                continue
            if candidate != desired_name:
                self._log.info(
                    "upload.name.resolved",
                    desired_name=desired_name,
                    resolved_name=candidate,
                    attempts=attempts,
                )
            return candidate

        fallback = timestamped_name(desired_name, epoch_millis())
        if fallback not in taken and not await self._blob_taken(
            owner_id, context, folder_id, fallback
        ):
            self._log.warning(
                "upload.name.fallback",
                desired_name=desired_name,
                resolved_name=fallback,
                attempts=attempts,
            )
            return fallback

        raise NameCollisionExhaustedError(
            f"No free name for {desired_name!r} after {attempts} attempts",
            details={"file_name": desired_name, "attempts": attempts, "folder_id": folder_id},
        )

    async def reserve(self, target: UploadTarget, desired_name: str) -> str:
        return await self.resolve(target.owner_id, target.context, target.folder_id, desired_name)
