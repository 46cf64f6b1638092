"""Upload-tracking shapes of a File row.

The files table stores workspace_id / link_id / batch_id as nullable columns.
In application code a file's origin is one of three explicit shapes, so call
sites never combine the nullable columns by hand.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from quay.errors import ContextError, ValidationError
from quay.models.link import LinkType

if TYPE_CHECKING:
    from quay.models.folder import Folder
    from quay.models.link import Link


@dataclass(frozen=True)
class PersonalUpload:
    """Owner's own file in their workspace."""

    workspace_id: str


@dataclass(frozen=True)
class LinkUpload:
    """File delivered through a base/custom link; lives in the link's tree."""

    link_id: str
    batch_id: str


@dataclass(frozen=True)
class GeneratedLinkUpload:
    """File delivered through a generated link; lands in the workspace folder."""

    workspace_id: str
    batch_id: str


UploadShape = Union[PersonalUpload, LinkUpload, GeneratedLinkUpload]


def shape_columns(shape: UploadShape) -> dict[str, str | None]:
    """Column values for a File/PendingUpload row of the given shape."""
    if isinstance(shape, PersonalUpload):
        return {"workspace_id": shape.workspace_id, "link_id": None, "batch_id": None}
    if isinstance(shape, LinkUpload):
        return {"workspace_id": None, "link_id": shape.link_id, "batch_id": shape.batch_id}
    if isinstance(shape, GeneratedLinkUpload):
        return {"workspace_id": shape.workspace_id, "link_id": None, "batch_id": shape.batch_id}
    raise ValidationError(f"Unknown upload shape: {type(shape).__name__}")


def shape_of(row: Any) -> UploadShape:
    """Classify a row's columns into one of the three shapes.

    Raises:
        ContextError: If the columns match none of the allowed shapes
    """
    workspace_id, link_id, batch_id = row.workspace_id, row.link_id, row.batch_id

    if workspace_id is not None and link_id is None:
        if batch_id is None:
            return PersonalUpload(workspace_id=workspace_id)
        return GeneratedLinkUpload(workspace_id=workspace_id, batch_id=batch_id)
    if workspace_id is None and link_id is not None and batch_id is not None:
        return LinkUpload(link_id=link_id, batch_id=batch_id)

    raise ContextError(
        message="File columns match no upload-tracking shape",
        details={
            "reason": "invalid_shape",
            "workspace_id": workspace_id,
            "link_id": link_id,
            "batch_id": batch_id,
        },
    )


def validate_batch_target(link: "Link", target_folder_id: str | None) -> None:
    """Batch target folder must be null for base/custom links and the
    source folder for generated links."""
    if link.link_type == LinkType.GENERATED.value:
        if target_folder_id is None or target_folder_id != link.source_folder_id:
            raise ContextError(
                message="Batches on generated links must target the link's source folder",
                details={
                    "reason": "batch_target_mismatch",
                    "link_id": link.id,
                    "target_folder_id": target_folder_id,
                },
            )
    elif target_folder_id is not None:
        raise ContextError(
            message="Batches on base/custom links cannot target a folder",
            details={
                "reason": "batch_target_mismatch",
                "link_id": link.id,
                "target_folder_id": target_folder_id,
            },
        )


def validate_generated_source(folder: "Folder | None", workspace_id: str) -> None:
    """A generated link's source must be a folder of the link's own workspace."""
    if folder is None:
        raise ContextError(
            message="Generated links require a source folder",
            details={"reason": "missing_source_folder"},
        )
    if folder.link_id is not None or folder.workspace_id != workspace_id:
        raise ContextError(
            message="Generated links can only share workspace folders",
            details={
                "reason": "source_not_workspace_folder",
                "folder_id": folder.id,
            },
        )


def validate_upload_shape(shape: UploadShape, *, folder: "Folder | None" = None) -> None:
    """Check a shape before it is written, optionally against its target folder.

    A folder must live in the context the shape writes to: the workspace for
    personal and generated-link uploads, the link for link uploads.
    """
    columns = shape_columns(shape)
    if folder is None:
        return
    if isinstance(shape, LinkUpload):
        expected = {"workspace_id": None, "link_id": shape.link_id}
    else:
        expected = {"workspace_id": columns["workspace_id"], "link_id": None}
    actual = {"workspace_id": folder.workspace_id, "link_id": folder.link_id}
    if actual != expected:
        raise ContextError(
            message="Upload target folder is outside the upload's context",
            details={"reason": "context_mismatch", "folder_id": folder.id, **expected},
        )
