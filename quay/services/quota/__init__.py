"""Quota accounting: plan limits, upload rate limit, storage counters."""

from quay.services.quota.ratelimit import (
    RateLimitResult,
    SlidingWindowRateLimiter,
    get_upload_rate_limiter,
)
from quay.services.quota.service import (
    QuotaDecision,
    QuotaService,
    UsageCache,
    apply_usage_adjustment,
    get_usage_cache,
)

__all__ = [
    "QuotaDecision",
    "QuotaService",
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "UsageCache",
    "apply_usage_adjustment",
    "get_upload_rate_limiter",
    "get_usage_cache",
]
