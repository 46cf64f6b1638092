"""Workspace manager."""

from quay.managers.workspace.workspace import WorkspaceManager

__all__ = ["WorkspaceManager"]
