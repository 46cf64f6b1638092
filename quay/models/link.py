"""Link data model.

A Link is a shareable upload endpoint addressed by a globally unique slug.

Types:
- base: the owner's default link
- custom: additional topic links
- generated: created when a workspace folder is shared; uploads land in
  that folder (source_folder_id)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, CheckConstraint, Column, ForeignKey, Index, String, text
from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class LinkType(str, Enum):
    """Link kind."""

    BASE = "base"
    CUSTOM = "custom"
    GENERATED = "generated"


class Link(SQLModel, table=True):
    """Link - shareable upload endpoint."""

    __tablename__ = "links"
    __table_args__ = (
        CheckConstraint(
            "link_type IN ('base', 'custom', 'generated')",
            name="links_link_type_valid",
        ),
        CheckConstraint(
            "link_type != 'generated' OR source_folder_id IS NOT NULL",
            name="generated_links_require_source",
        ),
        # At most one generated link per source folder
        Index(
            "links_generated_source_unique",
            "source_folder_id",
            unique=True,
            sqlite_where=text("link_type = 'generated'"),
            postgresql_where=text("link_type = 'generated'"),
        ),
    )

    id: str = Field(primary_key=True)
    workspace_id: str = Field(foreign_key="workspaces.id", index=True)
    slug: str = Field(unique=True, index=True)
    name: str
    description: Optional[str] = Field(default=None)

    link_type: str = Field(default=LinkType.BASE.value)
    is_active: bool = Field(default=True)
    is_public: bool = Field(default=True)

    # Generated links only; use_alter breaks the links <-> folders FK cycle
    source_folder_id: Optional[str] = Field(
        default=None,
        sa_column=Column(
            String,
            ForeignKey("folders.id", use_alter=True, name="links_source_folder_id_fkey"),
            nullable=True,
            index=True,
        ),
    )

    # {expires_at, password_hash, notify_on_upload, custom_message, requires_name}
    link_config: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )
    branding: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )

    # Upload limits (None = unlimited / plan default)
    max_files: Optional[int] = Field(default=None)
    max_file_size: Optional[int] = Field(default=None)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_generated(self) -> bool:
        return self.link_type == LinkType.GENERATED.value

    @property
    def expires_at(self) -> datetime | None:
        """Expiry from link_config (ISO string), if any."""
        raw = (self.link_config or {}).get("expires_at")
        if not raw:
            return None
        if isinstance(raw, datetime):
            return raw
        return datetime.fromisoformat(raw)

    @property
    def is_expired(self) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and utcnow() > expires_at

    @property
    def password_hash(self) -> str | None:
        return (self.link_config or {}).get("password_hash")

    @property
    def notify_on_upload(self) -> bool:
        return bool((self.link_config or {}).get("notify_on_upload", True))
