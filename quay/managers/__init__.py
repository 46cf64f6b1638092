"""Manager layer - business logic."""

from quay.managers.file import FileManager
from quay.managers.folder import FolderManager
from quay.managers.link import LinkManager
from quay.managers.upload import UploadManager
from quay.managers.workspace import WorkspaceManager

__all__ = ["FileManager", "FolderManager", "LinkManager", "UploadManager", "WorkspaceManager"]
