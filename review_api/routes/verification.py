"""
API routes for verification votes on reviews.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from review_api.config import Settings, get_settings
from review_api.database import get_db
from review_api.errors import ReviewNotFound
from review_api.identity import Actor, Clock, get_actor, get_clock
from review_api.ledger import VerificationLedger, VoteResult, can_verify
from review_api.models import (
    Capability, Verdict, VerificationDetailResponse, VoteRequest, VoteResponse
)
from review_api.ratelimit import RateLimiter
from review_api.repository import ReviewRepository


router = APIRouter(prefix="/verification", tags=["Verification"])


# =============================================================================
# Cast / Change / Withdraw Vote
# =============================================================================


@router.put("/{review_id}", response_model=VoteResponse)
def cast_vote(
    review_id: int,
    request: VoteRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> VoteResponse:
    """
    Cast or change a verification vote on a review.

    Re-submitting the verdict already held succeeds without changing
    anything. Authors cannot verify their own reviews, and locked or
    deleted reviews accept no votes.
    """
    RateLimiter(db, settings, clock).check_vote(actor)

    result = VerificationLedger(db, settings, clock).vote(review_id, actor, request.verdict)
    return _vote_to_response(result)


@router.delete("/{review_id}", response_model=VoteResponse)
def withdraw_vote(
    review_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> VoteResponse:
    """Withdraw the caller's verification vote on a review."""
    result = VerificationLedger(db, settings, clock).withdraw_vote(review_id, actor)
    return _vote_to_response(result)


# =============================================================================
# Get Verification
# =============================================================================


@router.get("/{review_id}", response_model=VerificationDetailResponse)
def get_verification(
    review_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
) -> VerificationDetailResponse:
    """Get a review's verification summary, the caller's vote, and whether they may vote."""
    review = ReviewRepository(db, settings, clock).get_review(review_id)
    if review is None or (not review.is_active and not actor.is_allowed(Capability.MODERATE)):
        raise ReviewNotFound(review_id)

    ledger = VerificationLedger(db, settings, clock)

    my_vote = ledger.get_user_vote(review_id, actor.user_id) if actor.is_registered else None

    return VerificationDetailResponse(
        review_id=review_id,
        verification=ledger.verification_summary(review),
        my_verdict=Verdict(my_vote.verdict) if my_vote else None,
        can_verify=can_verify(review, actor),
    )


# =============================================================================
# Lock / Unlock (administrative)
# =============================================================================


@router.post("/{review_id}/lock")
def lock_verification(
    review_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
):
    """Freeze verification voting on a review. Requires the moderate capability."""
    changed = VerificationLedger(db, settings, clock).lock_verification(review_id, actor)
    return {"success": True, "review_id": review_id, "locked": True, "changed": changed}


@router.post("/{review_id}/unlock")
def unlock_verification(
    review_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings)
):
    """Reopen verification voting on a review. Requires the moderate capability."""
    changed = VerificationLedger(db, settings, clock).unlock_verification(review_id, actor)
    return {"success": True, "review_id": review_id, "locked": False, "changed": changed}


# =============================================================================
# Helper Functions
# =============================================================================


def _vote_to_response(result: VoteResult) -> VoteResponse:
    return VoteResponse(
        review_id=result.review_id,
        verdict=result.verdict,
        changed=result.changed,
        verification=result.summary,
    )
