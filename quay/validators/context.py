"""Context validation for files and folders.

A context is the owning scope of a node: a workspace (personal) or a link
(shared). Exactly one of the two identifiers must be set, and a node must
share its parent folder's context.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from quay.errors import ContextError


@dataclass(frozen=True)
class Context:
    """Owning scope of a file or folder."""

    workspace_id: str | None = None
    link_id: str | None = None

    @classmethod
    def of(cls, node: Any) -> "Context":
        """Read the context columns of a Folder, File or PendingUpload."""
        return cls(workspace_id=node.workspace_id, link_id=node.link_id)

    @classmethod
    def workspace(cls, workspace_id: str) -> "Context":
        return cls(workspace_id=workspace_id)

    @classmethod
    def link(cls, link_id: str) -> "Context":
        return cls(link_id=link_id)

    @property
    def kind(self) -> str:
        return "workspace" if self.workspace_id is not None else "link"

    @property
    def owner_key(self) -> str:
        """The single non-null identifier."""
        return self.workspace_id if self.workspace_id is not None else self.link_id


def validate_context(candidate: Context, parent: Context | None = None) -> None:
    """Validate a candidate context against the single-context rules.

    Rules:
    1. Exactly one of workspace_id / link_id is set
    2. If a parent exists, the candidate context equals the parent's

    Args:
        candidate: Context of the file/folder about to be written
        parent: Context of its parent folder, if any

    Raises:
        ContextError: If either rule is violated
    """
    has_workspace = candidate.workspace_id is not None
    has_link = candidate.link_id is not None

    if has_workspace and has_link:
        raise ContextError(
            message="A node cannot belong to both a workspace and a link",
            details={"reason": "both_contexts", **_as_details(candidate)},
        )
    if not has_workspace and not has_link:
        raise ContextError(
            message="A node must belong to a workspace or a link",
            details={"reason": "no_context"},
        )

    if parent is not None and parent != candidate:
        raise ContextError(
            message="A node must share its parent folder's context",
            details={
                "reason": "context_mismatch",
                "candidate": _as_details(candidate),
                "parent": _as_details(parent),
            },
        )


def _as_details(context: Context) -> dict[str, str | None]:
    return {"workspace_id": context.workspace_id, "link_id": context.link_id}
