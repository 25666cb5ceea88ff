"""
API routes for submitting, editing, listing and flagging reviews.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from review_api.config import Settings, get_settings
from review_api.database import Review, get_db
from review_api.errors import ReviewNotFound, Unauthorized
from review_api.identity import (
    Actor, Clock, can_edit_review, get_actor, get_clock, new_session_token
)
from review_api.ledger import VerificationLedger
from review_api.models import (
    Capability, ClaimResponse, CreateReviewRequest, CreateReviewResponse,
    FlagRequest, FlagResponse, PageStatsResponse, ReviewListResponse,
    ReviewResponse, SortMode, UpdateReviewRequest
)
from review_api.ratelimit import RateLimiter
from review_api.repository import ReviewRepository
from review_api.scoring import is_stale
from review_api.security import log_auth_failure, log_suspicious_flag
from review_api.validation import ReviewValidator


router = APIRouter(prefix="/reviews", tags=["Reviews"])


# =============================================================================
# Submit Review
# =============================================================================


@router.post("/", response_model=CreateReviewResponse, status_code=201)
def submit_review(
    request: CreateReviewRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> CreateReviewResponse:
    """
    Submit a new review on a page.

    Anonymous callers may ask to be remembered; they get a session token
    back that lets them edit or delete the review later.
    """
    if not actor.is_allowed(Capability.SUBMIT):
        raise Unauthorized("Missing submit capability", capability=Capability.SUBMIT.value)

    if not actor.is_registered and not settings.allow_anonymous:
        raise Unauthorized("Anonymous reviews are disabled")

    content = ReviewValidator(settings).validate(
        request.rating, request.name, request.experience, request.text
    )

    RateLimiter(db, settings, clock).check_review_submission(actor)

    session_token = None
    if not actor.is_registered and request.remember:
        session_token = actor.session_token or new_session_token()

    repository = ReviewRepository(db, settings, clock)
    review_id = repository.create_review(
        page_id=request.page_id,
        user_id=actor.user_id if actor.is_registered else None,
        session_token=session_token,
        ip_hash=None if actor.is_registered else actor.ip_hash,
        **content
    )

    review = repository.require_review(review_id)
    return CreateReviewResponse(
        review_id=review_id,
        sort_score=review.sort_score,
        session_token=session_token,
    )


# =============================================================================
# Get Reviews
# =============================================================================


@router.get("/page/{page_id}", response_model=ReviewListResponse)
def get_reviews_for_page(
    page_id: int,
    sort: SortMode = Query(default=SortMode.SMART),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> ReviewListResponse:
    """Get one page of active reviews for a wiki page."""
    repository = ReviewRepository(db, settings, clock)
    ledger = VerificationLedger(db, settings, clock)

    reviews = repository.get_reviews_for_page(page_id, sort, limit, offset)
    stats = repository.get_page_stats(page_id)

    return ReviewListResponse(
        page_id=page_id,
        sort=sort,
        reviews=[_review_to_response(r, actor, ledger, clock, settings) for r in reviews],
        total=stats.review_count if stats else 0,
        avg_rating=stats.avg_rating if stats and stats.review_count else None,
    )


@router.get("/page/{page_id}/stats", response_model=PageStatsResponse)
def get_page_stats(
    page_id: int,
    db: Session = Depends(get_db)
) -> PageStatsResponse:
    """Get review count, average rating and star histogram for a page."""
    stats = ReviewRepository(db).get_page_stats(page_id)

    if not stats:
        return PageStatsResponse(
            page_id=page_id,
            histogram={star: 0 for star in range(1, 6)}
        )

    return PageStatsResponse(
        page_id=page_id,
        review_count=stats.review_count,
        avg_rating=stats.avg_rating if stats.review_count else None,
        histogram=stats.histogram(),
        updated_at=stats.updated_at,
    )


@router.get("/{review_id}", response_model=ReviewResponse)
def get_review(
    review_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> ReviewResponse:
    """Get a single review. Deleted reviews are visible to moderators only."""
    review = ReviewRepository(db, settings, clock).require_review(review_id)

    if not review.is_active and not actor.is_allowed(Capability.MODERATE):
        raise ReviewNotFound(review_id)

    ledger = VerificationLedger(db, settings, clock)
    return _review_to_response(review, actor, ledger, clock, settings)


# =============================================================================
# Edit / Delete Review
# =============================================================================


@router.patch("/{review_id}", response_model=ReviewResponse)
def edit_review(
    review_id: int,
    request: UpdateReviewRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> ReviewResponse:
    """
    Edit a review's content.

    Allowed for the author, the holder of the review's session token, or a
    moderator. Verification tallies and scores are never touched here.
    """
    repository = ReviewRepository(db, settings, clock)
    review = _require_editable(repository, review_id, actor, "edit")

    changes = ReviewValidator(settings).validate_changes(
        rating=request.rating,
        name=request.name,
        experience=request.experience,
        text=request.text,
    )
    repository.update_review(review.id, changes, actor.user_id)

    ledger = VerificationLedger(db, settings, clock)
    return _review_to_response(
        repository.require_review(review_id), actor, ledger, clock, settings
    )


@router.delete("/{review_id}")
def delete_review(
    review_id: int,
    reason: str = Query(default="", max_length=255),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
):
    """Soft-delete a review. Its verification votes are kept."""
    repository = ReviewRepository(db, settings, clock)
    review = _require_editable(repository, review_id, actor, "delete")

    repository.delete_review(review.id, actor.user_id, reason)

    return {"success": True, "review_id": review_id}


# =============================================================================
# Flags / Claims
# =============================================================================


@router.post("/{review_id}/flag", response_model=FlagResponse)
def flag_review(
    review_id: int,
    request: FlagRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> FlagResponse:
    """
    Flag a review for moderation.

    Flagging the same review twice is accepted but counted once.
    """
    if not actor.is_allowed(Capability.FLAG):
        raise Unauthorized("Missing flag capability", capability=Capability.FLAG.value)

    RateLimiter(db, settings, clock).check_flag(actor)

    added = ReviewRepository(db, settings, clock).add_flag(
        review_id, actor, request.reason, request.comment
    )
    if not added:
        log_suspicious_flag(actor.user_id, review_id, request.reason.value, actor.ip_hash)

    return FlagResponse(review_id=review_id, already_flagged=not added)


@router.post("/claim", response_model=ClaimResponse)
def claim_reviews(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> ClaimResponse:
    """Attach anonymous reviews written under the caller's session token to their account."""
    if not actor.is_registered or not actor.session_token:
        raise Unauthorized("Claiming requires a registered user and a session token")

    claimed = ReviewRepository(db, settings, clock).claim_reviews(
        actor.session_token, actor.user_id
    )
    return ClaimResponse(claimed=claimed)


# =============================================================================
# Helper Functions
# =============================================================================


def _require_editable(
    repository: ReviewRepository,
    review_id: int,
    actor: Actor,
    action: str
) -> Review:
    review = repository.require_review(review_id)
    if not review.is_active:
        raise ReviewNotFound(review_id)

    if not can_edit_review(review, actor) and not actor.is_allowed(Capability.MODERATE):
        log_auth_failure(actor.user_id, review_id, action, actor.ip_hash)
        raise Unauthorized(f"Cannot {action} this review", review_id=review_id)

    return review


def _review_to_response(
    review: Review,
    actor: Actor,
    ledger: VerificationLedger,
    clock: Clock,
    settings: Settings
) -> ReviewResponse:
    """Convert database Review to response model."""
    return ReviewResponse(
        id=review.id,
        page_id=review.page_id,
        user_id=review.user_id,
        reviewer_name=review.reviewer_name,
        rating=review.rating,
        experience=review.experience,
        review_text=review.review_text,
        status=review.status,
        verify_score=review.verify_score,
        sort_score=review.sort_score,
        verify_locked=review.verify_locked,
        verification=ledger.verification_summary(review),
        stale=is_stale(review.created_at, clock(), settings.stale_threshold_days),
        can_edit=can_edit_review(review, actor),
        created_at=review.created_at,
        updated_at=review.updated_at,
    )
