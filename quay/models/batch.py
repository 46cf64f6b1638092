"""Batch data model.

A Batch groups the files delivered through one link upload session.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class BatchStatus(str, Enum):
    """Batch lifecycle status."""

    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class Batch(SQLModel, table=True):
    """Batch - one uploader session on a link."""

    __tablename__ = "batches"

    id: str = Field(primary_key=True)
    link_id: str = Field(foreign_key="links.id", ondelete="CASCADE", index=True)

    # Null for base/custom links, the link's source folder for generated links
    target_folder_id: Optional[str] = Field(default=None, foreign_key="folders.id")

    # Uploader info
    uploader_name: str
    uploader_email: Optional[str] = Field(default=None)
    uploader_message: Optional[str] = Field(default=None)

    status: str = Field(default=BatchStatus.UPLOADING.value)
    total_files: int = Field(default=0)
    total_size: int = Field(default=0)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)
