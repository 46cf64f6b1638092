"""GC coordination across instances.

Only NoopCoordinator exists: every instance runs its own cycle. Deletes are
idempotent and counter rewrites converge, so overlapping cycles are tolerated.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator


class GCCoordinator(ABC):
    """Decides whether this instance runs a GC cycle."""

    @abstractmethod
    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[bool]:
        """Yield True if this instance should run the cycle.

        Usage:
            async with coordinator.acquire() as acquired:
                if acquired:
                    ...
        """
        ...


class NoopCoordinator(GCCoordinator):
    """Always runs (single instance, or tasks tolerate overlap)."""

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[bool]:
        yield True
