"""QuotaService - storage limits and usage counters.

Admission (check_quota) reads a cached counter; staleness is bounded by
quota.usage_cache_ttl_seconds. Adjustments (adjust_usage) are atomic
``bytes_used + delta`` updates, recorded in usage_adjustments so a retried
(operation, file_id) pair is applied once.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

import structlog
from sqlalchemy import case, func, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quay.config import QuotaConfig, get_settings
from quay.db.errors import is_unique_violation
from quay.db.session import get_async_session
from quay.db.transaction import atomic
from quay.errors import QuotaExceededError, RateLimitedError
from quay.models.file import File
from quay.models.link import Link
from quay.models.storage import StorageCounter, UsageAdjustment
from quay.models.workspace import Workspace
from quay.services.quota.ratelimit import SlidingWindowRateLimiter, get_upload_rate_limiter
from quay.utils.datetime import from_timestamp, utcnow

logger = structlog.get_logger()

REASON_QUOTA_EXCEEDED = "quota_exceeded"
REASON_FILE_TOO_LARGE = "file_too_large"
REASON_RATE_LIMITED = "rate_limited"


@dataclass
class QuotaDecision:
    """Outcome of an admission check."""

    allowed: bool
    reason: str | None
    plan: str
    bytes_used: int
    storage_limit: int
    max_file_size: int
    incoming_bytes: int = 0
    retry_after: float | None = None

    @property
    def available(self) -> int:
        return max(self.storage_limit - self.bytes_used, 0)

    def to_details(self) -> dict:
        return {
            "reason": self.reason,
            "plan": self.plan,
            "bytes_used": self.bytes_used,
            "storage_limit": self.storage_limit,
            "max_file_size": self.max_file_size,
            "available": self.available,
            "incoming_bytes": self.incoming_bytes,
            "retry_after": self.retry_after,
        }


class UsageCache:
    """Per-owner counter cache with a fixed TTL."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}

    def get(self, owner_id: str) -> int | None:
        entry = self._entries.get(owner_id)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at > self._ttl:
            del self._entries[owner_id]
            return None
        return value

    def set(self, owner_id: str, value: int) -> None:
        self._entries[owner_id] = (value, self._clock())

    def invalidate(self, owner_id: str) -> None:
        self._entries.pop(owner_id, None)


@lru_cache
def get_usage_cache() -> UsageCache:
    """Process-wide usage cache."""
    return UsageCache(get_settings().quota.usage_cache_ttl_seconds)


class QuotaService:
    """Quota checks and counter maintenance for one DB session."""

    def __init__(
        self,
        db_session: AsyncSession,
        config: QuotaConfig | None = None,
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        cache: UsageCache | None = None,
    ) -> None:
        self._db = db_session
        self._config = config or get_settings().quota
        self._rate_limiter = rate_limiter or get_upload_rate_limiter()
        self._cache = cache or get_usage_cache()
        self._log = logger.bind(service="quota")

    async def plan_for(self, owner_id: str) -> str:
        result = await self._db.execute(
            select(Workspace.plan).where(Workspace.owner_id == owner_id)
        )
        plan = result.scalars().first()
        return plan or self._config.default_plan

    async def get_usage(self, owner_id: str, *, fresh: bool = False) -> int:
        """Current byte count, from cache unless fresh=True."""
        if not fresh:
            cached = self._cache.get(owner_id)
            if cached is not None:
                return cached

        result = await self._db.execute(
            select(StorageCounter.bytes_used).where(StorageCounter.owner_id == owner_id)
        )
        bytes_used = result.scalars().first() or 0
        self._cache.set(owner_id, bytes_used)
        return bytes_used

    async def check_quota(
        self,
        owner_id: str,
        incoming_bytes: int,
        *,
        count_attempt: bool = True,
    ) -> QuotaDecision:
        """Decide whether an upload of incoming_bytes may be admitted.

        Checks, in order: per-file size limit, plan storage limit, upload rate.
        The rate window only records attempts that passed the size checks.

        Args:
            owner_id: Owner whose storage the upload counts against
            incoming_bytes: Size of the upload
            count_attempt: Record this check in the rate window

        Returns:
            QuotaDecision (allowed, or denied with a reason)
        """
        plan = await self.plan_for(owner_id)
        limits = self._config.limits_for(plan)
        bytes_used = await self.get_usage(owner_id)

        decision = QuotaDecision(
            allowed=True,
            reason=None,
            plan=plan,
            bytes_used=bytes_used,
            storage_limit=limits.storage_limit_bytes,
            max_file_size=limits.max_file_size_bytes,
            incoming_bytes=incoming_bytes,
        )

        if incoming_bytes > limits.max_file_size_bytes:
            decision.allowed = False
            decision.reason = REASON_FILE_TOO_LARGE
        elif bytes_used + incoming_bytes > limits.storage_limit_bytes:
            decision.allowed = False
            decision.reason = REASON_QUOTA_EXCEEDED
        elif count_attempt and self._config.rate_limit.enabled:
            rate = self._rate_limiter.hit(f"upload:{owner_id}")
            if not rate.allowed:
                decision.allowed = False
                decision.reason = REASON_RATE_LIMITED
                decision.retry_after = rate.retry_after

        if not decision.allowed:
            self._log.info(
                "quota.denied",
                owner_id=owner_id,
                reason=decision.reason,
                bytes_used=bytes_used,
                incoming_bytes=incoming_bytes,
                storage_limit=decision.storage_limit,
            )
        return decision

    async def enforce_quota(
        self,
        owner_id: str,
        incoming_bytes: int,
        *,
        count_attempt: bool = True,
    ) -> QuotaDecision:
        """check_quota() that raises on denial.

        Raises:
            QuotaExceededError: Plan storage or file size limit
            RateLimitedError: Too many uploads in the window
        """
        decision = await self.check_quota(owner_id, incoming_bytes, count_attempt=count_attempt)
        if decision.reason == REASON_RATE_LIMITED:
            raise RateLimitedError(details=decision.to_details())
        if decision.reason == REASON_FILE_TOO_LARGE:
            raise QuotaExceededError(
                f"File exceeds the {decision.plan} plan limit of {decision.max_file_size} bytes",
                details=decision.to_details(),
            )
        if decision.reason == REASON_QUOTA_EXCEEDED:
            raise QuotaExceededError(
                f"Upload needs {incoming_bytes} bytes but only {decision.available} are available",
                details=decision.to_details(),
            )
        return decision

    async def _ensure_counter(self, owner_id: str, *, updated_at: datetime | None = None) -> None:
        """Insert a zero counter row unless one exists (race-free upsert)."""
        dialect = self._db.bind.dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(StorageCounter.__table__)
            .values(owner_id=owner_id, bytes_used=0, updated_at=updated_at or utcnow())
            .on_conflict_do_nothing(index_elements=["owner_id"])
        )
        await self._db.execute(stmt)

    async def adjust_usage(
        self,
        owner_id: str,
        delta: int,
        *,
        operation: str,
        file_id: str,
    ) -> bool:
        """Atomically add delta to the owner's counter (clamped at zero).

        Returns:
            True if applied, False if (operation, file_id) was already applied
        """
        new_value = StorageCounter.bytes_used + delta
        try:
            async with atomic(
                self._db, "quota.adjust", owner_id=owner_id, operation=operation, file_id=file_id
            ):
                self._db.add(
                    UsageAdjustment(
                        operation=operation,
                        file_id=file_id,
                        owner_id=owner_id,
                        delta=delta,
                    )
                )
                await self._db.flush()
                await self._ensure_counter(owner_id)
                await self._db.execute(
                    update(StorageCounter)
                    .where(StorageCounter.owner_id == owner_id)
                    .values(
                        bytes_used=case((new_value < 0, 0), else_=new_value),
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError as e:
            if is_unique_violation(e):
                self._log.info(
                    "quota.adjust.duplicate",
                    owner_id=owner_id,
                    operation=operation,
                    file_id=file_id,
                )
                return False
            raise

        self._cache.invalidate(owner_id)
        self._log.info(
            "quota.adjusted",
            owner_id=owner_id,
            delta=delta,
            operation=operation,
            file_id=file_id,
        )
        return True

    def _stored_bytes(self, owner_id: str):
        """Scalar subquery summing the owner's file sizes.

        Covers workspace files and files still in the owner's links. Rows
        flagged requires_cleanup are left out: their blob is gone and their
        size was subtracted when it was deleted.
        """
        workspace_ids = select(Workspace.id).where(Workspace.owner_id == owner_id)
        link_ids = select(Link.id).where(Link.workspace_id.in_(workspace_ids))
        return (
            select(func.coalesce(func.sum(File.file_size), 0))
            .where(
                File.requires_cleanup == False,  # noqa: E712
                or_(File.workspace_id.in_(workspace_ids), File.link_id.in_(link_ids)),
            )
            .scalar_subquery()
        )

    async def reconcile_usage(self, owner_id: str, *, settled_before: datetime) -> bool:
        """Rewrite the counter from file sizes in one UPDATE.

        The sum is evaluated inside the statement, never read back into
        Python. Counters changed at or after settled_before are left alone,
        so an adjustment that lands mid-cycle is kept. A missing counter is
        created as settled.

        Returns:
            True if the counter was rewritten
        """
        stored = self._stored_bytes(owner_id)
        async with atomic(self._db, "quota.reconcile", owner_id=owner_id):
            await self._ensure_counter(owner_id, updated_at=from_timestamp(0))
            result = await self._db.execute(
                update(StorageCounter)
                .where(
                    StorageCounter.owner_id == owner_id,
                    StorageCounter.updated_at < settled_before,
                    StorageCounter.bytes_used != stored,
                )
                .values(bytes_used=stored, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        rewritten = bool(result.rowcount)
        if rewritten:
            self._cache.invalidate(owner_id)
        return rewritten


async def apply_usage_adjustment(owner_id: str, delta: int, operation: str, file_id: str) -> None:
    """Background-task entry point: adjust usage in a fresh session.

    Failures are logged; the storage_reconcile GC task corrects any drift.
    """
    try:
        async with get_async_session() as session:
            await QuotaService(session).adjust_usage(
                owner_id, delta, operation=operation, file_id=file_id
            )
    except Exception as e:
        logger.exception(
            "quota.adjust.failed",
            owner_id=owner_id,
            delta=delta,
            operation=operation,
            file_id=file_id,
            error=str(e),
        )
