"""Workspace data model.

A Workspace is the private root namespace of one owner. It is created once
at onboarding and holds personal (non-shared) folders and files.
"""

from datetime import datetime

from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class Workspace(SQLModel, table=True):
    """Workspace - one per owner."""

    __tablename__ = "workspaces"

    id: str = Field(primary_key=True)
    owner_id: str = Field(unique=True, index=True)
    name: str = Field(default="My Workspace")

    # Subscription plan key, written by the billing system
    plan: str = Field(default="free")

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
