"""Folder data model.

Folders form a tree. Each folder belongs to exactly one context: a workspace
(personal) or a link (shared), and always shares its parent's context.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class Folder(SQLModel, table=True):
    """Folder - hierarchical node."""

    __tablename__ = "folders"
    __table_args__ = (
        CheckConstraint(
            "(workspace_id IS NOT NULL AND link_id IS NULL) OR "
            "(workspace_id IS NULL AND link_id IS NOT NULL)",
            name="folders_single_context",
        ),
    )

    id: str = Field(primary_key=True)
    parent_folder_id: Optional[str] = Field(default=None, foreign_key="folders.id", index=True)

    # Context: exactly one of these is set
    workspace_id: Optional[str] = Field(default=None, foreign_key="workspaces.id", index=True)
    link_id: Optional[str] = Field(default=None, foreign_key="links.id", index=True)

    name: str
    # Materialized path of names from the root, e.g. "/Photos/2024"
    path: str = Field(default="/")
    depth: int = Field(default=0)
    sort_order: int = Field(default=0)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_folder_id is None
