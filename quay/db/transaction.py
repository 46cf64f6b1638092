"""Transaction boundary helper for multi-row writes."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quay.db.errors import is_reference_violation, is_rule_violation
from quay.errors import ContextError, NotFoundError

logger = structlog.get_logger()


@asynccontextmanager
async def atomic(
    session: AsyncSession,
    operation: str,
    **context,
) -> AsyncGenerator[AsyncSession, None]:
    """Run the block as one unit: commit on exit, roll back everything on error.

    Invariant violations raised by the database (CHECK constraints, triggers)
    surface as ContextError. A reference to a row deleted in the meantime
    surfaces as NotFoundError. Unique violations propagate as IntegrityError so
    the caller can decide what the conflict means.

    Usage:
        async with atomic(self._db, "link.create", slug=slug):
            self._db.add(link)
            await self._db.flush()
            ...
    """
    log = logger.bind(operation=operation, **context)
    try:
        yield session
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        log.info("db.transaction.rolled_back", reason="integrity_error")
        if is_rule_violation(e):
            raise ContextError(
                "Write rejected by database invariant",
                details={"operation": operation, "reason": "constraint_violation"},
            ) from e
        if is_reference_violation(e):
            raise NotFoundError(
                "Referenced resource no longer exists", details={"operation": operation}
            ) from e
        raise
    except Exception:
        await session.rollback()
        log.info("db.transaction.rolled_back", reason="error")
        raise
