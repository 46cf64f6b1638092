"""UploadManager - upload consistency protocol.

Flow for every upload, personal or through a link:

1. Admission: quota gate (size, plan storage, rate), link and batch limits.
2. Reservation: under the destination lock, resolve a free name against the
   database then the blob store, open a resumable session on the resulting
   path and record a PendingUpload with the session id.
3. Transfer: the client sends chunks to the session.
4. Completion: the blob store verifies the session; only then is the File
   row created (and the pending row removed) in one transaction.

Counter adjustments are left to the caller (a background task in the API).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.concurrency import destination_key, get_destination_lock
from quay.config import get_settings
from quay.db.transaction import atomic
from quay.errors import (
    ConflictError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from quay.managers.naming import NameReserver, UploadTarget
from quay.models.batch import Batch, BatchStatus
from quay.models.file import File
from quay.models.folder import Folder
from quay.models.link import Link
from quay.models.permission import Permission, PermissionRole
from quay.models.upload import PendingUpload
from quay.models.workspace import Workspace
from quay.services.access import AccessResolver, normalize_email
from quay.services.notifications import Notification, NotificationDispatcher
from quay.services.quota import QuotaService
from quay.storage.base import BlobStore, UploadSession
from quay.utils.datetime import utcnow
from quay.validators.context import Context
from quay.validators.names import sanitize_file_name
from quay.validators.shapes import (
    GeneratedLinkUpload,
    LinkUpload,
    PersonalUpload,
    shape_columns,
    validate_batch_target,
    validate_upload_shape,
)

logger = structlog.get_logger()

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class CompletedUpload:
    """A verified upload and the owner whose usage it counts against."""

    file: File
    owner_id: str


def _limit_error(message: str, reason: str, **details) -> QuotaExceededError:
    return QuotaExceededError(message, details={"reason": reason, **details})


class UploadManager:
    """Coordinates quota, naming, the blob store and the database for uploads."""

    def __init__(
        self,
        db_session: AsyncSession,
        blob_store: BlobStore,
        *,
        quota: QuotaService | None = None,
        access: AccessResolver | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._db = db_session
        self._blobs = blob_store
        self._quota = quota or QuotaService(db_session)
        self._access = access or AccessResolver(db_session, dispatcher)
        self._dispatcher = dispatcher
        self._settings = get_settings()
        self._reserver = NameReserver(
            db_session,
            blob_store,
            max_attempts=self._settings.upload.max_name_attempts,
        )
        self._log = logger.bind(manager="upload")

    # ---- Naming ----

    @staticmethod
    def _lock_key(target: UploadTarget) -> str:
        return destination_key(target.context.owner_key, target.folder_id)

    async def reserve_upload_name(self, target: UploadTarget, candidate_name: str) -> str:
        """Sanitize candidate_name and resolve a free name in the destination."""
        desired = sanitize_file_name(candidate_name)
        async with await get_destination_lock(self._lock_key(target)):
            return await self._reserver.reserve(target, desired)

    async def _reserve_and_open(
        self,
        target: UploadTarget,
        candidate_name: str,
        size: int,
        mime_type: str | None,
        *,
        uploader_name: str | None = None,
        uploader_email: str | None = None,
    ) -> PendingUpload:
        desired = sanitize_file_name(candidate_name)
        mime_type = mime_type or DEFAULT_MIME_TYPE

        async with await get_destination_lock(self._lock_key(target)):
            name = await self._reserver.reserve(target, desired)
            path = target.path_for(name)
            session = await self._blobs.initiate_upload(
                path, expected_size=size, content_type=mime_type
            )

            pending = PendingUpload(
                id=session.session_id,
                owner_id=target.owner_id,
                **shape_columns(target.shape),
                folder_id=target.folder_id,
                file_name=name,
                original_name=candidate_name,
                storage_path=path,
                expected_size=size,
                mime_type=mime_type,
                uploader_name=uploader_name,
                uploader_email=uploader_email,
                expires_at=session.expires_at,
            )
            try:
                async with atomic(self._db, "upload.reserve", upload_id=pending.id, path=path):
                    self._db.add(pending)
            except Exception:
                await self._blobs.abort_upload(session.session_id)
                raise

        self._log.info(
            "upload.reserved",
            upload_id=pending.id,
            owner_id=target.owner_id,
            file_name=name,
            size=size,
        )
        return pending

    # ---- Personal uploads ----

    async def request_upload(
        self,
        owner_id: str,
        file_name: str,
        size: int,
        *,
        folder_id: str | None = None,
        mime_type: str | None = None,
    ) -> PendingUpload:
        """Admit a personal upload into the owner's workspace.

        Raises:
            QuotaExceededError / RateLimitedError: If the quota gate denies it
            ContextError: If folder_id is not a folder of the owner's workspace
        """
        self._check_size(size)
        result = await self._db.execute(select(Workspace).where(Workspace.owner_id == owner_id))
        workspace = result.scalars().first()
        if workspace is None:
            raise NotFoundError("Workspace not found", details={"owner_id": owner_id})

        shape = PersonalUpload(workspace_id=workspace.id)
        if folder_id is not None:
            validate_upload_shape(shape, folder=await self._folder(folder_id))

        await self._quota.enforce_quota(owner_id, size)

        target = UploadTarget(
            owner_id=owner_id,
            context=Context.workspace(workspace.id),
            folder_id=folder_id,
            shape=shape,
        )
        return await self._reserve_and_open(target, file_name, size, mime_type)

    # ---- Link uploads ----

    async def _folder(self, folder_id: str) -> Folder:
        result = await self._db.execute(select(Folder).where(Folder.id == folder_id))
        folder = result.scalars().first()
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def _link(self, link_id: str) -> Link:
        result = await self._db.execute(select(Link).where(Link.id == link_id))
        link = result.scalars().first()
        if link is None:
            raise NotFoundError(f"Link not found: {link_id}")
        return link

    async def _owner_of(self, link: Link) -> str:
        result = await self._db.execute(
            select(Workspace.owner_id).where(Workspace.id == link.workspace_id)
        )
        return result.scalar_one()

    async def get_batch(self, batch_id: str) -> Batch:
        # Totals are bumped with bulk UPDATEs, so reload the row
        result = await self._db.execute(
            select(Batch).where(Batch.id == batch_id).execution_options(populate_existing=True)
        )
        batch = result.scalars().first()
        if batch is None:
            raise NotFoundError(f"Batch not found: {batch_id}")
        return batch

    async def open_batch(
        self,
        slug: str,
        *,
        uploader_name: str | None = None,
        uploader_email: str | None = None,
        uploader_message: str | None = None,
        password: str | None = None,
    ) -> Batch:
        """Start an uploader session on a link.

        Raises:
            NotFoundError: If no link has the slug
            ForbiddenError: If the uploader may not use the link
            ValidationError: If the link requires a name and none was given
        """
        result = await self._db.execute(select(Link).where(Link.slug == slug))
        link = result.scalars().first()
        if link is None:
            raise NotFoundError(f"Link not found: {slug}", details={"slug": slug})

        email = normalize_email(uploader_email) if uploader_email else None
        await self._access.check_upload_access(link, email=email, password=password)

        name = (uploader_name or "").strip()
        if not name:
            if (link.link_config or {}).get("requires_name"):
                raise ValidationError(
                    message="This link requires the uploader's name",
                    details={"field": "uploader_name", "reason": "required"},
                )
            name = "Anonymous"

        target_folder_id = link.source_folder_id if link.is_generated else None
        validate_batch_target(link, target_folder_id)

        batch = Batch(
            id=f"bat-{uuid.uuid4().hex[:12]}",
            link_id=link.id,
            target_folder_id=target_folder_id,
            uploader_name=name,
            uploader_email=email,
            uploader_message=uploader_message,
        )
        async with atomic(self._db, "batch.open", batch_id=batch.id, link_id=link.id):
            self._db.add(batch)

        self._log.info("batch.opened", batch_id=batch.id, link_id=link.id)
        return batch

    async def _link_target(self, link: Link, batch: Batch) -> UploadTarget:
        owner_id = await self._owner_of(link)
        if link.is_generated:
            return UploadTarget(
                owner_id=owner_id,
                context=Context.workspace(link.workspace_id),
                folder_id=batch.target_folder_id,
                shape=GeneratedLinkUpload(workspace_id=link.workspace_id, batch_id=batch.id),
            )

        result = await self._db.execute(
            select(Folder.id)
            .where(Folder.link_id == link.id, Folder.parent_folder_id.is_(None))
            .order_by(Folder.created_at)
        )
        return UploadTarget(
            owner_id=owner_id,
            context=Context.link(link.id),
            folder_id=result.scalars().first(),
            shape=LinkUpload(link_id=link.id, batch_id=batch.id),
        )

    async def _pending_for_batch(self, batch_id: str) -> tuple[int, int]:
        result = await self._db.execute(
            select(
                func.count(PendingUpload.id),
                func.coalesce(func.sum(PendingUpload.expected_size), 0),
            )
            .where(PendingUpload.batch_id == batch_id)
        )
        count, size = result.one()
        return count, size

    async def _check_link_limits(self, link: Link, batch: Batch, size: int) -> None:
        upload = self._settings.upload
        if link.max_file_size is not None and size > link.max_file_size:
            raise _limit_error(
                f"File exceeds this link's limit of {link.max_file_size} bytes",
                "file_too_large",
                max_file_size=link.max_file_size,
            )

        pending_count, pending_size = await self._pending_for_batch(batch.id)
        if batch.total_files + pending_count >= upload.max_files_per_batch:
            raise _limit_error(
                f"A batch holds at most {upload.max_files_per_batch} files",
                "batch_file_limit",
                max_files=upload.max_files_per_batch,
            )
        if batch.total_size + pending_size + size > upload.max_batch_size_bytes:
            raise _limit_error(
                "Batch size limit exceeded",
                "batch_size_limit",
                max_batch_size=upload.max_batch_size_bytes,
            )

        if link.max_files is not None:
            delivered = await self._db.execute(
                select(func.count(File.id)).where(
                    File.batch_id.in_(select(Batch.id).where(Batch.link_id == link.id))
                )
            )
            waiting = await self._db.execute(
                select(func.count(PendingUpload.id)).where(
                    PendingUpload.batch_id.in_(select(Batch.id).where(Batch.link_id == link.id))
                )
            )
            if delivered.scalar_one() + waiting.scalar_one() >= link.max_files:
                raise _limit_error(
                    f"This link accepts at most {link.max_files} files",
                    "link_file_limit",
                    max_files=link.max_files,
                )

    async def request_link_upload(
        self,
        batch_id: str,
        file_name: str,
        size: int,
        *,
        mime_type: str | None = None,
    ) -> PendingUpload:
        """Admit one file of an uploader batch.

        Base/custom links land in the link's root folder; generated links
        land in their source workspace folder.
        """
        self._check_size(size)
        batch = await self.get_batch(batch_id)
        if batch.status != BatchStatus.UPLOADING.value:
            raise ConflictError(
                "Batch is no longer accepting files",
                details={"batch_id": batch.id, "status": batch.status},
            )
        link = await self._link(batch.link_id)
        self._access.check_link_open(link)
        await self._check_link_limits(link, batch, size)

        target = await self._link_target(link, batch)
        await self._quota.enforce_quota(target.owner_id, size)

        return await self._reserve_and_open(
            target,
            file_name,
            size,
            mime_type,
            uploader_name=batch.uploader_name,
            uploader_email=batch.uploader_email,
        )

    # ---- Transfer and completion ----

    @staticmethod
    def _check_size(size: int) -> None:
        if size < 0:
            raise ValidationError(
                message="File size must be >= 0",
                details={"field": "size", "reason": "negative"},
            )

    async def get_pending(
        self,
        upload_id: str,
        *,
        owner_id: str | None = None,
        batch_id: str | None = None,
    ) -> PendingUpload:
        """Get a pending upload, scoped to its owner or batch.

        Raises:
            NotFoundError: If unknown or outside the given scope
        """
        result = await self._db.execute(select(PendingUpload).where(PendingUpload.id == upload_id))
        pending = result.scalars().first()
        if (
            pending is None
            or (owner_id is not None and pending.owner_id != owner_id)
            or (batch_id is not None and pending.batch_id != batch_id)
        ):
            raise NotFoundError(f"Upload not found: {upload_id}")
        return pending

    async def upload_chunk(
        self,
        upload_id: str,
        offset: int,
        data: bytes,
        *,
        owner_id: str | None = None,
        batch_id: str | None = None,
    ) -> UploadSession:
        await self.get_pending(upload_id, owner_id=owner_id, batch_id=batch_id)
        return await self._blobs.upload_chunk(upload_id, offset, data)

    async def complete_upload(
        self,
        upload_id: str,
        *,
        owner_id: str | None = None,
        batch_id: str | None = None,
        checksum: str | None = None,
    ) -> CompletedUpload:
        """Verify the blob, then create the File row.

        If the row cannot be written after verification, the blob is left in
        place and ``upload.complete.orphaned_blob`` is logged for the
        orphan_blob GC task.

        Raises:
            ValidationError: If the session is incomplete
            NotFoundError: If the upload or its session is gone
        """
        pending = await self.get_pending(upload_id, owner_id=owner_id, batch_id=batch_id)
        info = await self._blobs.verify_upload(upload_id)

        file = File(
            id=f"file-{uuid.uuid4().hex[:12]}",
            folder_id=pending.folder_id,
            workspace_id=pending.workspace_id,
            link_id=pending.link_id,
            batch_id=pending.batch_id,
            file_name=pending.file_name,
            original_name=pending.original_name,
            file_size=info.size,
            mime_type=pending.mime_type,
            checksum=checksum,
            storage_path=pending.storage_path,
            uploader_name=pending.uploader_name,
            uploader_email=pending.uploader_email,
        )
        try:
            async with atomic(self._db, "upload.complete", upload_id=upload_id, file_id=file.id):
                self._db.add(file)
                await self._db.delete(pending)
                if pending.batch_id is not None:
                    await self._db.execute(
                        update(Batch)
                        .where(Batch.id == pending.batch_id)
                        .values(
                            total_files=Batch.total_files + 1,
                            total_size=Batch.total_size + info.size,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
        except Exception as e:
            self._log.error(
                "upload.complete.orphaned_blob",
                upload_id=upload_id,
                path=pending.storage_path,
                error=str(e),
            )
            raise

        self._log.info(
            "upload.completed",
            upload_id=upload_id,
            file_id=file.id,
            size=file.file_size,
        )
        if pending.batch_id is not None:
            await self._notify_owner(
                pending.batch_id,
                "upload.received",
                {"file_id": file.id, "file_name": file.file_name, "size": file.file_size},
            )
        return CompletedUpload(file=file, owner_id=pending.owner_id)

    async def abort_upload(
        self,
        upload_id: str,
        *,
        owner_id: str | None = None,
        batch_id: str | None = None,
    ) -> None:
        pending = await self.get_pending(upload_id, owner_id=owner_id, batch_id=batch_id)
        await self._blobs.abort_upload(upload_id)
        async with atomic(self._db, "upload.abort", upload_id=upload_id):
            await self._db.delete(pending)
        self._log.info("upload.aborted", upload_id=upload_id)

    async def complete_batch(self, batch_id: str) -> Batch:
        """Close a batch; later uploads to it are refused."""
        batch = await self.get_batch(batch_id)
        if batch.status == BatchStatus.UPLOADING.value:
            async with atomic(self._db, "batch.complete", batch_id=batch.id):
                batch.status = BatchStatus.COMPLETED.value
                batch.completed_at = utcnow()
                batch.updated_at = utcnow()
            self._log.info("batch.completed", batch_id=batch.id, total_files=batch.total_files)
            await self._notify_owner(
                batch.id,
                "batch.completed",
                {"total_files": batch.total_files, "total_size": batch.total_size},
            )
        return batch

    async def _notify_owner(self, batch_id: str, event: str, payload: dict) -> None:
        if self._dispatcher is None:
            return
        batch = await self.get_batch(batch_id)
        link = await self._link(batch.link_id)
        if not link.notify_on_upload:
            return
        result = await self._db.execute(
            select(Permission.email).where(
                Permission.link_id == link.id,
                Permission.role == PermissionRole.OWNER.value,
            )
        )
        owner_email = result.scalars().first()
        if owner_email is None:
            return
        self._dispatcher.dispatch(
            Notification(
                event=event,
                recipient=owner_email,
                payload={
                    "link_id": link.id,
                    "slug": link.slug,
                    "batch_id": batch_id,
                    "uploader_name": batch.uploader_name,
                    **payload,
                },
            )
        )
