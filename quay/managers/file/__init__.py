"""File manager."""

from quay.managers.file.file import BulkDeleteResult, FileDeletion, FileManager

__all__ = ["BulkDeleteResult", "FileDeletion", "FileManager"]
