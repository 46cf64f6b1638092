"""Quota API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel

from quay.api.dependencies import AuthDep, QuotaServiceDep

router = APIRouter()


class QuotaResponse(BaseModel):
    plan: str
    bytes_used: int
    storage_limit: int
    available: int
    max_file_size: int


class QuotaCheckResponse(QuotaResponse):
    allowed: bool
    reason: str | None
    incoming_bytes: int


@router.get("", response_model=QuotaResponse)
async def get_quota(
    quota: QuotaServiceDep,
    principal: AuthDep,
) -> QuotaResponse:
    """Current usage and plan limits (usage may lag by the cache TTL)."""
    decision = await quota.check_quota(principal.id, 0, count_attempt=False)
    return QuotaResponse(
        plan=decision.plan,
        bytes_used=decision.bytes_used,
        storage_limit=decision.storage_limit,
        available=decision.available,
        max_file_size=decision.max_file_size,
    )


@router.get("/check", response_model=QuotaCheckResponse)
async def check_quota(
    quota: QuotaServiceDep,
    principal: AuthDep,
    size: int = Query(..., ge=0),
) -> QuotaCheckResponse:
    """Dry-run admission check; does not count against the upload rate."""
    decision = await quota.check_quota(principal.id, size, count_attempt=False)
    return QuotaCheckResponse(
        plan=decision.plan,
        bytes_used=decision.bytes_used,
        storage_limit=decision.storage_limit,
        available=decision.available,
        max_file_size=decision.max_file_size,
        allowed=decision.allowed,
        reason=decision.reason,
        incoming_bytes=decision.incoming_bytes,
    )
