"""
Pydantic models for Review Verification API requests and responses.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================


class Verdict(str, Enum):
    """Fact-check style verdict a voter assigns to a review."""
    TRUE = "true"
    MOSTLY_TRUE = "mostly_true"
    MIXED = "mixed"
    MOSTLY_FALSE = "mostly_false"
    FALSE = "false"
    INCONCLUSIVE = "inconclusive"   # Counts as a vote, never moves the score


class VerificationStatus(str, Enum):
    """Coarse label derived from the verification score."""
    UNVERIFIED = "unverified"
    PENDING = "pending"
    ACCURATE = "accurate"
    MOSTLY_ACCURATE = "mostly-accurate"
    MIXED = "mixed"
    MOSTLY_INACCURATE = "mostly-inaccurate"
    INACCURATE = "inaccurate"


class SortMode(str, Enum):
    """Orderings available when listing reviews for a page."""
    SMART = "smart"
    NEWEST = "newest"
    OLDEST = "oldest"
    HIGHEST_RATING = "highest-rating"
    LOWEST_RATING = "lowest-rating"
    MOST_VERIFIED = "most-verified"


class ReviewStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class FlagReason(str, Enum):
    """Reasons a reader may flag a review for moderation."""
    SPAM = "spam"
    INAPPROPRIATE = "inappropriate"
    FAKE = "fake"
    OUTDATED = "outdated"
    OTHER = "other"


class LogAction(str, Enum):
    """Kinds of entries in the append-only review action log."""
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    FLAG = "flag"
    CLAIM = "claim"
    LOCK = "lock"
    UNLOCK = "unlock"


class Capability(str, Enum):
    """Rights checked against the caller's identity."""
    SUBMIT = "review-submit"
    VERIFY = "review-verify"
    FLAG = "review-flag"
    MODERATE = "review-moderate"


# =============================================================================
# Request Models
# =============================================================================


class CreateReviewRequest(BaseModel):
    """Request to submit a new review on a page."""

    page_id: int = Field(..., gt=0, description="ID of the page being reviewed")
    rating: int = Field(..., ge=1, le=5, description="Star rating, 1 to 5")
    name: str = Field(..., description="Display name of the reviewer")
    experience: str = Field(..., description="How the reviewer knows the subject")
    text: str = Field(default="", description="Free-text review body")
    remember: bool = Field(
        default=False,
        description="Anonymous only: issue a session token so the review can be edited later"
    )


class UpdateReviewRequest(BaseModel):
    """Partial update of a review's content fields."""

    rating: Optional[int] = Field(default=None, ge=1, le=5)
    name: Optional[str] = None
    experience: Optional[str] = None
    text: Optional[str] = None


class VoteRequest(BaseModel):
    """Cast or change a verification vote."""

    verdict: Verdict


class FlagRequest(BaseModel):
    reason: FlagReason
    comment: str = Field(default="", max_length=500)


class RefreshScoresRequest(BaseModel):
    """Request to recompute derived scores (admin only)."""

    page_id: Optional[int] = Field(
        default=None,
        description="Restrict the refresh to one page (None = all pages)"
    )
    batch_size: Optional[int] = Field(default=None, gt=0, le=5000)


# =============================================================================
# Response Models
# =============================================================================


class VerificationSummary(BaseModel):
    """Verification state of a single review."""

    status: VerificationStatus
    total: int
    score: float
    locked: bool = False

    # Per-verdict breakdown, hidden while the status is still pending
    verdicts: Optional[Dict[Verdict, int]] = None


class ReviewResponse(BaseModel):
    """Response containing a single review."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    page_id: int
    user_id: Optional[int] = None
    reviewer_name: str
    rating: int
    experience: str
    review_text: str
    status: ReviewStatus

    verify_score: float
    sort_score: float
    verify_locked: bool
    verification: Optional[VerificationSummary] = None

    stale: bool = False
    can_edit: bool = False

    created_at: datetime
    updated_at: datetime


class CreateReviewResponse(BaseModel):
    success: bool = True
    review_id: int
    sort_score: float
    session_token: Optional[str] = None


class PageStatsResponse(BaseModel):
    """Aggregate statistics over the active reviews of a page."""

    page_id: int
    review_count: int = 0
    avg_rating: Optional[float] = None
    histogram: Dict[int, int] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None


class ReviewListResponse(BaseModel):
    page_id: int
    sort: SortMode
    reviews: List[ReviewResponse]
    total: int
    avg_rating: Optional[float] = None


class VoteResponse(BaseModel):
    """Result of casting, changing or withdrawing a verification vote."""

    success: bool = True
    review_id: int
    verdict: Optional[Verdict] = None
    changed: bool
    verification: VerificationSummary


class VerificationDetailResponse(BaseModel):
    review_id: int
    verification: VerificationSummary
    my_verdict: Optional[Verdict] = None
    can_verify: bool = False


class FlagResponse(BaseModel):
    success: bool = True
    review_id: int
    already_flagged: bool = False


class ClaimResponse(BaseModel):
    claimed: int


class RefreshResultResponse(BaseModel):
    """Response from a sort-score refresh run."""

    success: bool
    reviews_updated: int
    duration_seconds: float
    refreshed_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    database_connected: bool
    reviews_count: int = 0
    votes_count: int = 0
