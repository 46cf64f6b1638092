"""Storage accounting models.

StorageCounter is the per-owner byte counter used for quota checks. It is
only ever changed through atomic SQL increments (see QuotaService).
UsageAdjustment records applied adjustments so retries are no-ops.
"""

from datetime import datetime

from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel

from quay.utils.datetime import utcnow


class StorageCounter(SQLModel, table=True):
    """Per-owner storage usage counter."""

    __tablename__ = "storage_counters"

    owner_id: str = Field(primary_key=True)
    bytes_used: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    updated_at: datetime = Field(default_factory=utcnow)


class UsageAdjustment(SQLModel, table=True):
    """Idempotency ledger for counter adjustments."""

    __tablename__ = "usage_adjustments"

    # Composite primary key: operation + file_id
    operation: str = Field(primary_key=True)  # upload | delete | copy
    file_id: str = Field(primary_key=True)

    owner_id: str = Field(index=True)
    delta: int = Field(sa_column=Column(BigInteger, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
