"""Upload manager."""

from quay.managers.upload.upload import CompletedUpload, UploadManager

__all__ = ["CompletedUpload", "UploadManager"]
