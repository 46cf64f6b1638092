"""Application-level invariant checks (mirrored by database triggers)."""

from quay.validators.context import Context, validate_context
from quay.validators.names import sanitize_file_name, slugify, validate_folder_name, validate_slug
from quay.validators.shapes import (
    GeneratedLinkUpload,
    LinkUpload,
    PersonalUpload,
    UploadShape,
    shape_columns,
    shape_of,
    validate_batch_target,
    validate_generated_source,
    validate_upload_shape,
)

__all__ = [
    "Context",
    "GeneratedLinkUpload",
    "LinkUpload",
    "PersonalUpload",
    "UploadShape",
    "sanitize_file_name",
    "shape_columns",
    "shape_of",
    "slugify",
    "validate_context",
    "validate_batch_target",
    "validate_folder_name",
    "validate_generated_source",
    "validate_slug",
    "validate_upload_shape",
]
