"""Permission/Access Resolver.

Answers "who may act on this link, and how":
- resolve(): the {role, email} grants on a link
- check_upload_access(): whether an uploader may open a batch
- grant() / revoke() / verify(): manage non-owner permissions

The owner permission is created with the link (LinkManager) and can be
neither revoked nor demoted here; the database refuses it as well.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from functools import lru_cache

import structlog
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.config import get_settings
from quay.db.errors import is_unique_violation
from quay.db.transaction import atomic
from quay.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from quay.models.link import Link
from quay.models.permission import Permission, PermissionRole
from quay.models.workspace import Workspace
from quay.services.notifications import Notification, NotificationDispatcher
from quay.utils.datetime import utcnow

logger = structlog.get_logger()

PASSWORD_SCHEME = "pbkdf2_sha256"


@lru_cache
def _password_context(rounds: int) -> CryptContext:
    return CryptContext(
        schemes=[PASSWORD_SCHEME],
        deprecated="auto",
        pbkdf2_sha256__default_rounds=rounds,
    )


def hash_password(password: str, *, iterations: int | None = None) -> str:
    """Hash a link password (rounds from security.password_hash_iterations)."""
    rounds = iterations or get_settings().security.password_hash_iterations
    return _password_context(rounds).hash(password)


def verify_password(password: str, encoded: str) -> bool:
    """Check a password against a stored hash. Unknown or malformed hashes never match."""
    context = _password_context(get_settings().security.password_hash_iterations)
    try:
        return context.verify(password, encoded)
    except ValueError:
        return False


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
        raise ValidationError(
            message=f"Invalid email address: {email!r}",
            details={"field": "email", "reason": "invalid_email"},
        )
    return normalized


@dataclass(frozen=True)
class AccessGrant:
    """One {role, email} pair allowed to act on a link."""

    role: str
    email: str
    is_verified: bool = False


class AccessResolver:
    """Resolves and manages link permissions."""

    def __init__(
        self,
        db_session: AsyncSession,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._db = db_session
        self._dispatcher = dispatcher
        self._log = logger.bind(service="access")

    async def _owned_link(self, link_id: str, owner_id: str) -> Link:
        result = await self._db.execute(
            select(Link)
            .join(Workspace, Workspace.id == Link.workspace_id)
            .where(Link.id == link_id, Workspace.owner_id == owner_id)
        )
        link = result.scalars().first()
        if link is None:
            raise NotFoundError(f"Link not found: {link_id}")
        return link

    async def _permission(self, link_id: str, email: str) -> Permission | None:
        result = await self._db.execute(
            select(Permission).where(Permission.link_id == link_id, Permission.email == email)
        )
        return result.scalars().first()

    async def resolve(self, link_id: str) -> set[AccessGrant]:
        """All grants on a link (owner included)."""
        result = await self._db.execute(select(Permission).where(Permission.link_id == link_id))
        return {
            AccessGrant(role=p.role, email=p.email, is_verified=p.is_verified)
            for p in result.scalars().all()
        }

    async def role_for(self, link_id: str, email: str | None) -> str | None:
        """Role of an email on a link, or None."""
        if not email:
            return None
        permission = await self._permission(link_id, normalize_email(email))
        return permission.role if permission else None

    def check_link_open(self, link: Link) -> None:
        """Link must be active and unexpired to accept uploads.

        Raises:
            ForbiddenError: With reason link_inactive / link_expired
        """
        if not link.is_active:
            raise ForbiddenError(
                "This link is not accepting uploads",
                details={"reason": "link_inactive", "link_id": link.id},
            )
        if link.is_expired:
            raise ForbiddenError(
                "This link has expired",
                details={"reason": "link_expired", "link_id": link.id},
            )

    async def check_upload_access(
        self,
        link: Link,
        *,
        email: str | None = None,
        password: str | None = None,
    ) -> None:
        """Whether an uploader may deliver files through the link.

        Rules:
        1. Link active and not expired
        2. Password-protected links need the right password
        3. Private links need a permission for the uploader's email

        Raises:
            ForbiddenError: If any rule fails (details.reason says which)
        """
        self.check_link_open(link)

        if link.password_hash:
            if not password or not verify_password(password, link.password_hash):
                raise ForbiddenError(
                    "A valid password is required for this link",
                    details={"reason": "invalid_password", "link_id": link.id},
                )

        if not link.is_public:
            role = await self.role_for(link.id, email)
            if role is None:
                raise ForbiddenError(
                    "This link only accepts uploads from invited emails",
                    details={"reason": "not_permitted", "link_id": link.id},
                )

    async def can_upload(
        self,
        link: Link,
        *,
        email: str | None = None,
        password: str | None = None,
    ) -> bool:
        try:
            await self.check_upload_access(link, email=email, password=password)
        except ForbiddenError:
            return False
        return True

    async def grant(
        self,
        link_id: str,
        owner_id: str,
        email: str,
        role: str = PermissionRole.UPLOADER.value,
    ) -> Permission:
        """Grant editor/uploader access; notifies the grantee after commit."""
        if role not in (PermissionRole.EDITOR.value, PermissionRole.UPLOADER.value):
            raise ValidationError(
                message=f"Cannot grant role: {role}",
                details={"field": "role", "reason": "invalid_role"},
            )
        link = await self._owned_link(link_id, owner_id)
        email = normalize_email(email)

        existing = await self._permission(link.id, email)
        if existing is not None:
            if existing.role == PermissionRole.OWNER.value:
                raise ConflictError(
                    "The link owner already has full access",
                    details={"email": email},
                )
            if existing.role == role:
                return existing
            async with atomic(self._db, "permission.update", link_id=link.id, email=email):
                existing.role = role
                existing.updated_at = utcnow()
            self._log.info("permission.updated", link_id=link.id, email=email, role=role)
            return existing

        permission = Permission(
            id=f"perm-{uuid.uuid4().hex[:12]}",
            link_id=link.id,
            email=email,
            role=role,
        )
        try:
            async with atomic(self._db, "permission.grant", link_id=link.id, email=email):
                self._db.add(permission)
        except IntegrityError as e:
            if is_unique_violation(e):
                raise ConflictError(
                    f"Permission already exists for {email}",
                    details={"email": email, "link_id": link.id},
                ) from e
            raise

        self._log.info("permission.granted", link_id=link.id, email=email, role=role)
        if self._dispatcher is not None:
            self._dispatcher.dispatch(
                Notification(
                    event="permission.granted",
                    recipient=email,
                    payload={"link_id": link.id, "slug": link.slug, "role": role},
                )
            )
        return permission

    async def revoke(self, link_id: str, owner_id: str, email: str) -> None:
        """Remove a non-owner permission (idempotent)."""
        link = await self._owned_link(link_id, owner_id)
        email = normalize_email(email)
        permission = await self._permission(link.id, email)
        if permission is None:
            return
        if permission.role == PermissionRole.OWNER.value:
            raise ForbiddenError(
                "The owner permission cannot be revoked",
                details={"reason": "owner_permission", "link_id": link.id},
            )
        async with atomic(self._db, "permission.revoke", link_id=link.id, email=email):
            await self._db.delete(permission)
        self._log.info("permission.revoked", link_id=link.id, email=email)

    async def verify(self, link_id: str, email: str) -> Permission:
        """Mark a permission verified (called once the identity provider confirms the email)."""
        email = normalize_email(email)
        permission = await self._permission(link_id, email)
        if permission is None:
            raise NotFoundError(f"No permission for {email} on link {link_id}")
        if not permission.is_verified:
            async with atomic(self._db, "permission.verify", link_id=link_id, email=email):
                permission.is_verified = True
                permission.verified_at = utcnow()
                permission.updated_at = utcnow()
        return permission

    async def list_permissions(self, link_id: str, owner_id: str) -> list[Permission]:
        link = await self._owned_link(link_id, owner_id)
        result = await self._db.execute(
            select(Permission).where(Permission.link_id == link.id).order_by(Permission.created_at)
        )
        return list(result.scalars().all())
