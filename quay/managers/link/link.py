"""LinkManager - link lifecycle and transactional creation.

A link is never visible without its owner permission: the link, the owner
permission, editor permissions and (for base/custom links) the link's root
folder are written in one transaction. Slug uniqueness is pre-checked for a
friendly error, but the unique index is the arbiter; a lost race surfaces as
SlugTakenError and is not retried.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.db.errors import is_unique_violation
from quay.db.transaction import atomic
from quay.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SlugTakenError,
    ValidationError,
)
from quay.models.batch import Batch
from quay.models.file import File
from quay.models.folder import Folder
from quay.models.link import Link, LinkType
from quay.models.permission import Permission, PermissionRole
from quay.models.upload import PendingUpload
from quay.models.workspace import Workspace
from quay.services.access import hash_password, normalize_email
from quay.services.notifications import Notification, NotificationDispatcher
from quay.utils.datetime import utcnow
from quay.validators.names import slugify, validate_folder_name, validate_slug
from quay.validators.shapes import validate_generated_source

logger = structlog.get_logger()

# Suffixes tried for a folder-derived slug: "-link", "-link-2" .. "-link-10"
GENERATED_SLUG_ATTEMPTS = 10

_UPDATABLE_FIELDS = frozenset(
    ["name", "description", "is_public", "branding", "max_files", "max_file_size"]
)


@dataclass
class LinkSpec:
    """Parameters for a new link."""

    slug: str | None = None
    name: str | None = None
    link_type: str = LinkType.CUSTOM.value
    description: str | None = None
    is_public: bool = True
    editor_emails: list[str] = field(default_factory=list)
    link_config: dict[str, Any] = field(default_factory=dict)
    branding: dict[str, Any] = field(default_factory=dict)
    max_files: int | None = None
    max_file_size: int | None = None
    password: str | None = None


@dataclass
class LinkRemoval:
    """What happened to a deleted link's content."""

    link_id: str
    rehomed_folders: int
    rehomed_files: int


def _new_link_id() -> str:
    return f"lnk-{uuid.uuid4().hex[:12]}"


def _build_config(config: dict[str, Any], password: str | None) -> dict[str, Any]:
    """Normalize link_config: ISO expiry, hashed password."""
    built = dict(config or {})
    built.pop("password_hash", None)
    expires_at = built.get("expires_at")
    if expires_at is not None:
        if isinstance(expires_at, str):
            try:
                expires_at = datetime.fromisoformat(expires_at)
            except ValueError as e:
                raise ValidationError(
                    message=f"Invalid expires_at: {expires_at!r}",
                    details={"field": "link_config.expires_at", "reason": "invalid_datetime"},
                ) from e
        if expires_at.tzinfo is not None:
            expires_at = expires_at.astimezone(UTC).replace(tzinfo=None)
        built["expires_at"] = expires_at.isoformat()
    if password:
        built["password_hash"] = hash_password(password)
    return built


def _validate_limits(max_files: int | None, max_file_size: int | None) -> None:
    for name, value in (("max_files", max_files), ("max_file_size", max_file_size)):
        if value is not None and value <= 0:
            raise ValidationError(
                message=f"{name} must be positive",
                details={"field": name, "reason": "not_positive"},
            )


async def remove_link_rows(db: AsyncSession, link: Link) -> LinkRemoval:
    """Delete a link, re-homing its content into the owner's workspace.

    Must run inside the caller's transaction. Folders are re-homed one depth
    level at a time so every folder lands under an already re-homed parent.
    Files leave the link context and lose their batch (personal shape).
    """
    workspace_id = link.workspace_id

    depth_rows = await db.execute(
        select(Folder.depth).where(Folder.link_id == link.id).distinct().order_by(Folder.depth)
    )
    rehomed_folders = 0
    for depth in depth_rows.scalars().all():
        result = await db.execute(
            update(Folder)
            .where(Folder.link_id == link.id, Folder.depth == depth)
            .values(workspace_id=workspace_id, link_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        rehomed_folders += result.rowcount or 0

    file_result = await db.execute(
        update(File)
        .where(File.link_id == link.id)
        .values(workspace_id=workspace_id, link_id=None, batch_id=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )

    batch_ids = select(Batch.id).where(Batch.link_id == link.id)
    await db.execute(
        update(File)
        .where(File.batch_id.in_(batch_ids))
        .values(batch_id=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(PendingUpload)
        .where(or_(PendingUpload.link_id == link.id, PendingUpload.batch_id.in_(batch_ids)))
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(Batch).where(Batch.link_id == link.id).execution_options(synchronize_session=False)
    )
    # Link before permissions: the owner permission is protected while its link exists
    await db.execute(
        delete(Link).where(Link.id == link.id).execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(Permission)
        .where(Permission.link_id == link.id)
        .execution_options(synchronize_session=False)
    )
    return LinkRemoval(
        link_id=link.id,
        rehomed_folders=rehomed_folders,
        rehomed_files=file_result.rowcount or 0,
    )


class LinkManager:
    """Manages link lifecycle."""

    def __init__(
        self,
        db_session: AsyncSession,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._db = db_session
        self._dispatcher = dispatcher
        self._log = logger.bind(manager="link")

    # ---- Lookups ----

    async def _workspace(self, owner_id: str) -> Workspace:
        result = await self._db.execute(select(Workspace).where(Workspace.owner_id == owner_id))
        workspace = result.scalars().first()
        if workspace is None:
            raise NotFoundError("Workspace not found", details={"owner_id": owner_id})
        return workspace

    async def is_slug_available(self, slug: str) -> bool:
        result = await self._db.execute(select(Link.id).where(Link.slug == slug))
        return result.scalars().first() is None

    async def get(self, link_id: str, owner_id: str) -> Link:
        """Get link by ID.

        Raises:
            NotFoundError: If link not found or not owned
        """
        result = await self._db.execute(
            select(Link)
            .join(Workspace, Workspace.id == Link.workspace_id)
            .where(Link.id == link_id, Workspace.owner_id == owner_id)
        )
        link = result.scalars().first()
        if link is None:
            raise NotFoundError(f"Link not found: {link_id}")
        return link

    async def get_by_slug(self, slug: str) -> Link:
        result = await self._db.execute(select(Link).where(Link.slug == slug))
        link = result.scalars().first()
        if link is None:
            raise NotFoundError(f"Link not found: {slug}", details={"slug": slug})
        return link

    async def list(self, owner_id: str, *, include_inactive: bool = True) -> list[Link]:
        query = (
            select(Link)
            .join(Workspace, Workspace.id == Link.workspace_id)
            .where(Workspace.owner_id == owner_id)
        )
        if not include_inactive:
            query = query.where(Link.is_active == True)  # noqa: E712
        result = await self._db.execute(query.order_by(Link.created_at, Link.id))
        return list(result.scalars().all())

    # ---- Creation ----

    async def _insert_owner_permission(self, link: Link, owner_email: str) -> Permission:
        now = utcnow()
        permission = Permission(
            id=f"perm-{uuid.uuid4().hex[:12]}",
            link_id=link.id,
            email=owner_email,
            role=PermissionRole.OWNER.value,
            is_verified=True,
            verified_at=now,
        )
        self._db.add(permission)
        await self._db.flush()
        return permission

    async def _insert_editor_permissions(
        self,
        link: Link,
        editor_emails: list[str],
        owner_email: str,
    ) -> list[str]:
        emails: list[str] = []
        for raw in editor_emails:
            email = normalize_email(raw)
            if email != owner_email and email not in emails:
                emails.append(email)
        for email in emails:
            self._db.add(
                Permission(
                    id=f"perm-{uuid.uuid4().hex[:12]}",
                    link_id=link.id,
                    email=email,
                    role=PermissionRole.EDITOR.value,
                )
            )
        if emails:
            await self._db.flush()
        return emails

    def _notify_editors(self, link: Link, emails: list[str]) -> None:
        if self._dispatcher is None:
            return
        for email in emails:
            self._dispatcher.dispatch(
                Notification(
                    event="permission.granted",
                    recipient=email,
                    payload={
                        "link_id": link.id,
                        "slug": link.slug,
                        "role": PermissionRole.EDITOR.value,
                    },
                )
            )

    async def _raise_for_unique(self, e: IntegrityError, slug: str) -> None:
        """Translate a unique violation raised while writing a link."""
        if not await self.is_slug_available(slug):
            self._log.info("link.create.slug_conflict", slug=slug)
            raise SlugTakenError(f"Slug is already taken: {slug}", details={"slug": slug}) from e
        raise ConflictError(
            "Link conflicts with an existing record",
            details={"slug": slug},
        ) from e

    async def create_link_with_root_folder(
        self,
        owner_id: str,
        owner_email: str,
        spec: LinkSpec,
    ) -> Link:
        """Create a base/custom link with its owner permission and root folder.

        One transaction: link, owner permission (auto-verified), editor
        permissions, root folder. Any failure rolls back all of it.

        Args:
            owner_id: Owner identifier
            owner_email: Owner's email (owner permission)
            spec: Link parameters

        Returns:
            Created link

        Raises:
            SlugTakenError: If the slug is taken (pre-check or unique index)
            ValidationError: If the slug, type or limits are invalid
        """
        if spec.link_type not in (LinkType.BASE.value, LinkType.CUSTOM.value):
            raise ValidationError(
                message="Only base or custom links can be created directly",
                details={"field": "link_type", "reason": "invalid_link_type"},
            )
        slug = validate_slug((spec.slug or "").strip().lower())
        name = validate_folder_name(spec.name or slug)
        owner_email = normalize_email(owner_email)
        _validate_limits(spec.max_files, spec.max_file_size)
        link_config = _build_config(spec.link_config, spec.password)

        workspace = await self._workspace(owner_id)

        if spec.link_type == LinkType.BASE.value:
            result = await self._db.execute(
                select(Link.id).where(
                    Link.workspace_id == workspace.id,
                    Link.link_type == LinkType.BASE.value,
                )
            )
            if result.scalars().first() is not None:
                raise ConflictError(
                    "A base link already exists for this workspace",
                    details={"workspace_id": workspace.id},
                )

        if not await self.is_slug_available(slug):
            raise SlugTakenError(f"Slug is already taken: {slug}", details={"slug": slug})

        link = Link(
            id=_new_link_id(),
            workspace_id=workspace.id,
            slug=slug,
            name=name,
            description=spec.description,
            link_type=spec.link_type,
            is_public=spec.is_public,
            link_config=link_config,
            branding=dict(spec.branding or {}),
            max_files=spec.max_files,
            max_file_size=spec.max_file_size,
        )

        self._log.info("link.create", link_id=link.id, slug=slug, owner_id=owner_id)

        try:
            async with atomic(self._db, "link.create", link_id=link.id, slug=slug):
                self._db.add(link)
                await self._db.flush()
                await self._insert_owner_permission(link, owner_email)
                editors = await self._insert_editor_permissions(
                    link, spec.editor_emails, owner_email
                )
                self._db.add(
                    Folder(
                        id=f"fld-{uuid.uuid4().hex[:12]}",
                        link_id=link.id,
                        name=name,
                        path=f"/{name}",
                        depth=0,
                    )
                )
                await self._db.flush()
        except IntegrityError as e:
            if is_unique_violation(e):
                await self._raise_for_unique(e, slug)
            raise

        self._log.info("link.created", link_id=link.id, slug=slug, editors=len(editors))
        self._notify_editors(link, editors)
        return link

    async def _folder_derived_slug(self, folder_name: str) -> str:
        base = slugify(folder_name) or "folder"
        candidates = [f"{base}-link"] + [
            f"{base}-link-{n}" for n in range(2, GENERATED_SLUG_ATTEMPTS + 1)
        ]
        for candidate in candidates:
            if await self.is_slug_available(candidate):
                return candidate
        raise SlugTakenError(
            f"No free slug derived from folder name {folder_name!r}",
            details={"slug": candidates[0], "attempts": len(candidates)},
        )

    async def link_existing_folder(
        self,
        owner_id: str,
        owner_email: str,
        folder_id: str,
        *,
        link_id: str | None = None,
        new_link: LinkSpec | None = None,
    ) -> Link:
        """Share a workspace folder through a generated link.

        With link_id, an existing inactive link is converted to a generated
        link on the folder and reactivated. Otherwise a new generated link is
        created, named after the folder unless new_link says otherwise.

        Raises:
            NotFoundError: If the folder or link is not the owner's
            ConflictError: If the folder is already shared or the link is in use
            ContextError: If the folder is not a workspace folder
        """
        owner_email = normalize_email(owner_email)
        workspace = await self._workspace(owner_id)

        result = await self._db.execute(select(Folder).where(Folder.id == folder_id))
        folder = result.scalars().first()
        if folder is None or (
            folder.workspace_id is not None and folder.workspace_id != workspace.id
        ):
            raise NotFoundError(f"Folder not found: {folder_id}")
        validate_generated_source(folder, workspace.id)

        result = await self._db.execute(
            select(Link.id).where(
                Link.source_folder_id == folder.id,
                Link.link_type == LinkType.GENERATED.value,
            )
        )
        shared_by = result.scalars().first()
        if shared_by is not None:
            raise ConflictError(
                "Folder is already shared",
                details={"folder_id": folder.id, "link_id": shared_by},
            )

        if link_id is not None:
            return await self._attach_existing(owner_id, folder, link_id)

        spec = new_link or LinkSpec()
        if spec.slug:
            slug = validate_slug(spec.slug.strip().lower())
            if not await self.is_slug_available(slug):
                raise SlugTakenError(f"Slug is already taken: {slug}", details={"slug": slug})
        else:
            slug = await self._folder_derived_slug(folder.name)
        _validate_limits(spec.max_files, spec.max_file_size)

        link = Link(
            id=_new_link_id(),
            workspace_id=workspace.id,
            slug=slug,
            name=validate_folder_name(spec.name or f"{folder.name} Link"),
            description=spec.description,
            link_type=LinkType.GENERATED.value,
            is_public=spec.is_public,
            source_folder_id=folder.id,
            link_config=_build_config(spec.link_config, spec.password),
            branding=dict(spec.branding or {}),
            max_files=spec.max_files,
            max_file_size=spec.max_file_size,
        )

        try:
            async with atomic(self._db, "link.generate", link_id=link.id, folder_id=folder.id):
                self._db.add(link)
                await self._db.flush()
                await self._insert_owner_permission(link, owner_email)
                editors = await self._insert_editor_permissions(
                    link, spec.editor_emails, owner_email
                )
        except IntegrityError as e:
            if is_unique_violation(e):
                await self._raise_for_unique(e, slug)
            raise

        self._log.info(
            "link.generated",
            link_id=link.id,
            slug=slug,
            folder_id=folder.id,
        )
        self._notify_editors(link, editors)
        return link

    async def _attach_existing(self, owner_id: str, folder: Folder, link_id: str) -> Link:
        link = await self.get(link_id, owner_id)
        if link.link_type == LinkType.BASE.value:
            raise ConflictError(
                "The base link cannot be attached to a folder",
                details={"link_id": link.id},
            )
        if link.is_active:
            raise ConflictError(
                "Only inactive links can be attached to a folder",
                details={"link_id": link.id},
            )

        try:
            async with atomic(self._db, "link.attach", link_id=link.id, folder_id=folder.id):
                link.link_type = LinkType.GENERATED.value
                link.source_folder_id = folder.id
                link.is_active = True
                link.updated_at = utcnow()
        except IntegrityError as e:
            if is_unique_violation(e):
                raise ConflictError(
                    "Folder is already shared",
                    details={"folder_id": folder.id},
                ) from e
            raise

        self._log.info("link.attached", link_id=link.id, folder_id=folder.id)
        return link

    # ---- Changes ----

    async def update(self, link_id: str, owner_id: str, changes: dict[str, Any]) -> Link:
        """Apply a partial update.

        Supported keys: name, description, is_public, branding, max_files,
        max_file_size, slug, link_config, password (None removes it).
        """
        link = await self.get(link_id, owner_id)

        new_slug = changes.get("slug")
        if new_slug is not None:
            new_slug = validate_slug(new_slug.strip().lower())
            if new_slug != link.slug and not await self.is_slug_available(new_slug):
                raise SlugTakenError(
                    f"Slug is already taken: {new_slug}", details={"slug": new_slug}
                )

        if "max_files" in changes or "max_file_size" in changes:
            _validate_limits(changes.get("max_files"), changes.get("max_file_size"))

        config = dict(link.link_config or {})
        if "link_config" in changes:
            password_hash = config.get("password_hash")
            config = _build_config(changes["link_config"] or {}, None)
            if password_hash:
                config["password_hash"] = password_hash
        if "password" in changes:
            config.pop("password_hash", None)
            if changes["password"]:
                config["password_hash"] = hash_password(changes["password"])

        try:
            async with atomic(self._db, "link.update", link_id=link.id):
                for key in _UPDATABLE_FIELDS & changes.keys():
                    value = changes[key]
                    if key == "name":
                        value = validate_folder_name(value)
                    setattr(link, key, value)
                if new_slug is not None:
                    link.slug = new_slug
                link.link_config = config
                link.updated_at = utcnow()
        except IntegrityError as e:
            if is_unique_violation(e) and new_slug is not None:
                await self._raise_for_unique(e, new_slug)
            raise

        self._log.info("link.updated", link_id=link.id, fields=sorted(changes))
        return link

    async def deactivate(self, link_id: str, owner_id: str) -> Link:
        """Stop accepting uploads; content and permissions stay."""
        link = await self.get(link_id, owner_id)
        if link.is_active:
            async with atomic(self._db, "link.deactivate", link_id=link.id):
                link.is_active = False
                link.updated_at = utcnow()
            self._log.info("link.deactivated", link_id=link.id)
        return link

    async def delete(self, link_id: str, owner_id: str) -> LinkRemoval:
        """Delete a link; its folders and files move into the workspace.

        Raises:
            ForbiddenError: For the base link
        """
        link = await self.get(link_id, owner_id)
        if link.link_type == LinkType.BASE.value:
            raise ForbiddenError(
                "The base link cannot be deleted, deactivate it instead",
                details={"reason": "base_link", "link_id": link.id},
            )

        async with atomic(self._db, "link.delete", link_id=link.id):
            removal = await remove_link_rows(self._db, link)
        self._db.expunge_all()

        self._log.info(
            "link.deleted",
            link_id=removal.link_id,
            rehomed_folders=removal.rehomed_folders,
            rehomed_files=removal.rehomed_files,
        )
        return removal
