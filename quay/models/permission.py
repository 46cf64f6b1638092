"""Permission data model.

Binds an email to a Link with one of three roles. Every link has exactly
one owner permission, created in the same transaction as the link.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class PermissionRole(str, Enum):
    """Role granted on a link."""

    OWNER = "owner"
    EDITOR = "editor"
    UPLOADER = "uploader"


class Permission(SQLModel, table=True):
    """Permission - role grant on a link."""

    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("link_id", "email", name="permissions_link_email_unique"),
        CheckConstraint(
            "role IN ('owner', 'editor', 'uploader')",
            name="permissions_role_valid",
        ),
        # At most one owner per link; the delete/demote triggers cover "at least"
        Index(
            "permissions_single_owner",
            "link_id",
            unique=True,
            sqlite_where=text("role = 'owner'"),
            postgresql_where=text("role = 'owner'"),
        ),
    )

    id: str = Field(primary_key=True)
    link_id: str = Field(foreign_key="links.id", ondelete="CASCADE", index=True)
    email: str = Field(index=True)
    role: str = Field(default=PermissionRole.UPLOADER.value)

    # Verification state
    is_verified: bool = Field(default=False)
    verified_at: Optional[datetime] = Field(default=None)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
