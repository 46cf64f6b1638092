"""Pending upload data model.

A PendingUpload holds a reserved destination between the moment an upload is
admitted and the moment its blob is verified. Only then is the File row
created. Abandoned entries are purged by the expired_upload GC task.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class PendingUpload(SQLModel, table=True):
    """Reserved upload destination awaiting blob verification."""

    __tablename__ = "pending_uploads"

    # Same id as the blob store's resumable session
    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)

    # Target (mirrors File columns)
    workspace_id: Optional[str] = Field(default=None)
    link_id: Optional[str] = Field(default=None)
    batch_id: Optional[str] = Field(default=None)
    folder_id: Optional[str] = Field(default=None, index=True)

    file_name: str
    original_name: str
    storage_path: str = Field(unique=True)
    expected_size: int = Field(sa_column=Column(BigInteger, nullable=False))
    mime_type: str = Field(default="application/octet-stream")

    uploader_name: Optional[str] = Field(default=None)
    uploader_email: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)

    def is_expired(self) -> bool:
        return utcnow() > self.expires_at
