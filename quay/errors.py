"""Quay error types.

Error codes are stable strings for programmatic handling. Every error maps to
one HTTP status in the API layer.

Propagation:
- ValidationError / ConflictError: expected outcomes, returned to the caller.
- QuotaExceededError / RateLimitedError: upload denials, carry usage and limit.
- InfrastructureError: blob store or database unavailable, caller retries.
"""

from __future__ import annotations

from typing import Any


class QuayError(Exception):
    """Base error for all Quay exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Serialize to the API error envelope."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if request_id:
            error["request_id"] = request_id
        return {"error": error}


class ValidationError(QuayError):
    """Malformed input or violated structural invariant (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class ContextError(ValidationError):
    """File/folder ownership context is invalid (400)."""

    code = "invalid_context"
    message = "Invalid resource context"


class InvalidNameError(ValidationError):
    """File, folder or slug name is not acceptable (400)."""

    code = "invalid_name"
    message = "Invalid name"


class UnauthorizedError(QuayError):
    """Authentication required (401)."""

    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class ForbiddenError(QuayError):
    """Permission denied (403)."""

    code = "forbidden"
    message = "Permission denied"
    status_code = 403


class NotFoundError(QuayError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class ConflictError(QuayError):
    """State conflict or detected race (409)."""

    code = "conflict"
    message = "Conflict"
    status_code = 409


class SlugTakenError(ConflictError):
    """Link slug already claimed (409)."""

    code = "slug_taken"
    message = "Slug is already taken"


class NameCollisionExhaustedError(ConflictError):
    """No free upload name could be found (409)."""

    code = "name_collision_exhausted"
    message = "Could not find a free file name"


class QuotaExceededError(QuayError):
    """Upload would exceed the plan storage or file size limit (413)."""

    code = "quota_exceeded"
    message = "Storage quota exceeded"
    status_code = 413


class RateLimitedError(QuayError):
    """Too many uploads in the sliding window (429)."""

    code = "rate_limited"
    message = "Too many uploads, slow down"
    status_code = 429


class InfrastructureError(QuayError):
    """Blob store or database unavailable (503)."""

    code = "infrastructure_error"
    message = "Storage backend unavailable"
    status_code = 503
