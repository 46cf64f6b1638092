"""Blob path layout.

    workspaces/{owner_id}/{workspace_id}/folders/{folder_id}/{file_name}
    workspaces/{owner_id}/{workspace_id}/files/{file_name}
    links/{owner_id}/{link_id}/folders/{folder_id}/{file_name}
    links/{owner_id}/{link_id}/files/{file_name}
"""

from __future__ import annotations

from quay.validators.context import Context


def context_prefix(owner_id: str, context: Context) -> str:
    if context.workspace_id is not None:
        return f"workspaces/{owner_id}/{context.workspace_id}"
    return f"links/{owner_id}/{context.link_id}"


def blob_path(owner_id: str, context: Context, folder_id: str | None, file_name: str) -> str:
    """Destination path for a file in a folder (or the context root)."""
    prefix = context_prefix(owner_id, context)
    if folder_id is not None:
        return f"{prefix}/folders/{folder_id}/{file_name}"
    return f"{prefix}/files/{file_name}"
