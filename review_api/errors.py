"""
Typed failures raised by the review and verification services.

Every failure carries a machine-readable ``kind``, the HTTP status the API
layer answers with, and a small dict of structured context (ids, field
names). User-facing wording is left to whoever renders the response.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for all expected service failures."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.message, "context": self.context}


class ValidationFailed(ServiceError):
    """Content violates bounds or requiredness."""

    kind = "validation_failed"
    status_code = 422

    def __init__(self, field: str, message: str, **context: Any):
        super().__init__(message, field=field, **context)
        self.field = field


class NotFound(ServiceError):
    kind = "not_found"
    status_code = 404


class ReviewNotFound(NotFound):
    kind = "review_not_found"

    def __init__(self, review_id: int):
        super().__init__(f"Review {review_id} not found", review_id=review_id)


class VoteNotFound(NotFound):
    kind = "vote_not_found"

    def __init__(self, review_id: int, voter_id: Optional[int]):
        super().__init__(
            f"No verification vote on review {review_id}",
            review_id=review_id,
            voter_id=voter_id,
        )


class Unauthorized(ServiceError):
    """Capability or ownership check failed."""

    kind = "unauthorized"
    status_code = 403


class VerificationLocked(ServiceError):
    """Vote attempted on a locked or non-active review."""

    kind = "verification_locked"
    status_code = 409

    def __init__(self, review_id: int, reason: str = "locked"):
        super().__init__(
            f"Verification is closed on review {review_id} ({reason})",
            review_id=review_id,
            reason=reason,
        )


class Conflict(ServiceError):
    """Concurrent-mutation retries exhausted; the caller may retry."""

    kind = "conflict"
    status_code = 409


class RateLimited(ServiceError):
    kind = "rate_limited"
    status_code = 429


class StorageUnavailable(ServiceError):
    """Persistence failed; nothing from the unit of work was committed."""

    kind = "storage_unavailable"
    status_code = 503
