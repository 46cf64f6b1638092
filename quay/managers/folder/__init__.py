"""Folder manager."""

from quay.managers.folder.folder import FolderDeletion, FolderManager

__all__ = ["FolderDeletion", "FolderManager"]
