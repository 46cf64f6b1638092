"""SQLModel data models."""

from quay.models.workspace import Workspace
from quay.models.link import Link, LinkType
from quay.models.permission import Permission, PermissionRole
from quay.models.folder import Folder
from quay.models.batch import Batch, BatchStatus
from quay.models.file import File
from quay.models.storage import StorageCounter, UsageAdjustment
from quay.models.upload import PendingUpload

# Registers trigger DDL on SQLModel.metadata
import quay.models.constraints  # noqa: F401, E402

__all__ = [
    "Batch",
    "BatchStatus",
    "File",
    "Folder",
    "Link",
    "LinkType",
    "PendingUpload",
    "Permission",
    "PermissionRole",
    "StorageCounter",
    "UsageAdjustment",
    "Workspace",
]
