"""File data model.

Upload-tracking shapes (the only allowed combinations):
- personal:              workspace set, link null, batch null
- link upload:           workspace null, link set, batch set
- generated-link upload: workspace set, link null, batch set
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, Column
from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class File(SQLModel, table=True):
    """File - leaf node backed by one blob."""

    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            "(workspace_id IS NOT NULL AND link_id IS NULL) OR "
            "(workspace_id IS NULL AND link_id IS NOT NULL)",
            name="files_single_context",
        ),
        CheckConstraint(
            "(workspace_id IS NOT NULL AND link_id IS NULL AND batch_id IS NULL) OR "
            "(workspace_id IS NULL AND link_id IS NOT NULL AND batch_id IS NOT NULL) OR "
            "(workspace_id IS NOT NULL AND link_id IS NULL AND batch_id IS NOT NULL)",
            name="files_upload_tracking",
        ),
    )

    id: str = Field(primary_key=True)
    folder_id: Optional[str] = Field(default=None, foreign_key="folders.id", index=True)

    # Context: exactly one of workspace_id / link_id is set
    workspace_id: Optional[str] = Field(default=None, foreign_key="workspaces.id", index=True)
    link_id: Optional[str] = Field(default=None, foreign_key="links.id", index=True)
    batch_id: Optional[str] = Field(default=None, foreign_key="batches.id", index=True)

    # File metadata
    file_name: str
    original_name: str
    file_size: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    mime_type: str = Field(default="application/octet-stream")
    checksum: Optional[str] = Field(default=None)

    # Blob location
    storage_path: str = Field(index=True)

    # Uploader info (link uploads)
    uploader_name: Optional[str] = Field(default=None)
    uploader_email: Optional[str] = Field(default=None)

    # Set when the blob is gone but the row could not be removed
    requires_cleanup: bool = Field(default=False, index=True)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
