"""
Verification ledger: per-user verdict votes on reviews.

The ledger is the only writer of a review's six verdict counters and of
its derived ``verify_score`` / ``sort_score``. Each vote mutation is one
unit of work against the review row:

1. read the review ``FOR UPDATE`` (row lock where the backend has one);
2. re-check that the voter may verify it;
3. insert, replace or delete the vote row;
4. shift the verdict counters and recompute both scores;
5. commit.

The ``reviews`` table also carries an ORM version counter, so on backends
without row locks a concurrent writer is detected as a stale update. Stale
updates and vote-uniqueness races are rolled back and retried; once the
retries run out the caller gets ``Conflict``.

Per (review, voter) the state machine is::

    no-vote --vote(v)--> voted(v) --vote(w)--> voted(w)
                            |
                            +--withdraw--> no-vote

Re-submitting the verdict already held is a successful no-op.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, TypeVar, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from review_api.config import Settings, get_settings
from review_api.database import VERDICT_COLUMNS, Review, ReviewLog, VerificationVote
from review_api.errors import (
    Conflict, NotFound, ReviewNotFound, ServiceError, StorageUnavailable,
    Unauthorized, ValidationFailed, VerificationLocked, VoteNotFound
)
from review_api.identity import Actor, Clock, utcnow
from review_api.models import (
    Capability, LogAction, ReviewStatus, Verdict, VerificationStatus, VerificationSummary
)
from review_api.scoring import ScoringParams, compute_scores, verification_status
from review_api.security import log_security_action


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class VoteResult:
    """Outcome of a vote mutation."""

    review_id: int
    verdict: Optional[Verdict]       # verdict held after the call
    previous: Optional[Verdict]      # verdict held before the call
    changed: bool
    summary: VerificationSummary


def coerce_verdict(value: Union[Verdict, str]) -> Verdict:
    if isinstance(value, Verdict):
        return value
    try:
        return Verdict(value)
    except ValueError:
        raise ValidationFailed(
            "verdict",
            f"Unknown verdict {value!r}",
            allowed=[verdict.value for verdict in Verdict],
        )


def verification_denial(review: Optional[Review], actor: Actor) -> Optional[ServiceError]:
    """
    Why the actor may not verify this review, or None if they may.

    Evaluated again inside every vote mutation; a check made when the
    voting controls were displayed is never trusted.
    """
    if review is None:
        return NotFound("Review not found")

    if not actor.is_registered:
        return Unauthorized("Only registered users can verify reviews", review_id=review.id)

    if not actor.is_allowed(Capability.VERIFY):
        return Unauthorized(
            "Missing verify capability",
            review_id=review.id,
            capability=Capability.VERIFY.value,
        )

    if review.user_id is not None and review.user_id == actor.user_id:
        return Unauthorized("Cannot verify your own review", review_id=review.id)

    if not review.is_active:
        return VerificationLocked(review.id, reason="inactive")

    if review.verify_locked:
        return VerificationLocked(review.id, reason="locked")

    return None


def can_verify(review: Optional[Review], actor: Actor) -> bool:
    return verification_denial(review, actor) is None


class VerificationLedger:
    """Vote mutations, score recomputation and verification locking."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.params = ScoringParams.from_settings(self.settings)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_user_vote(self, review_id: int, voter_id: int) -> Optional[VerificationVote]:
        return self.db.query(VerificationVote).filter(
            VerificationVote.review_id == review_id,
            VerificationVote.voter_id == voter_id
        ).first()

    def get_votes_for_review(self, review_id: int) -> List[VerificationVote]:
        return self.db.query(VerificationVote).filter(
            VerificationVote.review_id == review_id
        ).order_by(VerificationVote.updated_at.desc()).all()

    def verification_summary(self, review: Review) -> VerificationSummary:
        """Status, total and score of a review; counts hidden while pending."""
        counts = review.verdict_counts()
        total = sum(counts.values())
        status = verification_status(
            review.verify_score, total, self.params.pending_threshold
        )

        return VerificationSummary(
            status=status,
            total=total,
            score=review.verify_score,
            locked=review.verify_locked,
            verdicts=None if status == VerificationStatus.PENDING else counts,
        )

    # =========================================================================
    # Vote mutations
    # =========================================================================

    def vote(self, review_id: int, actor: Actor, verdict: Union[Verdict, str]) -> VoteResult:
        """Cast a vote, or change the verdict of an existing one."""
        verdict = coerce_verdict(verdict)

        def apply(review: Review) -> VoteResult:
            self._check_can_verify(review, actor)

            existing = self._locked_vote(review.id, actor.user_id)
            previous = Verdict(existing.verdict) if existing else None

            if previous == verdict:
                return VoteResult(
                    review.id, verdict, previous, False, self.verification_summary(review)
                )

            now = self.clock()
            if existing:
                existing.verdict = verdict.value
                existing.updated_at = now
            else:
                self.db.add(VerificationVote(
                    review_id=review.id,
                    voter_id=actor.user_id,
                    verdict=verdict.value,
                    updated_at=now,
                ))

            self._shift_counts(review, previous, verdict)
            self._recompute(review, now)
            self.db.flush()

            logger.info(
                f"User {actor.user_id} voted {verdict.value} on review {review.id}"
                + (f" (was {previous.value})" if previous else "")
            )
            return VoteResult(review.id, verdict, previous, True, self.verification_summary(review))

        return self._mutate(review_id, "vote", apply)

    def withdraw_vote(self, review_id: int, actor: Actor) -> VoteResult:
        """Remove the actor's vote from a review."""

        def apply(review: Review) -> VoteResult:
            self._check_can_verify(review, actor)

            existing = self._locked_vote(review.id, actor.user_id)
            if existing is None:
                raise VoteNotFound(review.id, actor.user_id)

            previous = Verdict(existing.verdict)
            self.db.delete(existing)

            self._shift_counts(review, previous, None)
            self._recompute(review, self.clock())
            self.db.flush()

            logger.info(f"User {actor.user_id} withdrew {previous.value} vote on review {review.id}")
            return VoteResult(review.id, None, previous, True, self.verification_summary(review))

        return self._mutate(review_id, "withdraw", apply)

    # =========================================================================
    # Locking
    # =========================================================================

    def lock_verification(self, review_id: int, actor: Actor) -> bool:
        """Freeze voting on a review. Returns False if it was already locked."""
        return self._set_locked(review_id, actor, True)

    def unlock_verification(self, review_id: int, actor: Actor) -> bool:
        """Reopen voting on a review. Returns False if it was not locked."""
        return self._set_locked(review_id, actor, False)

    def _set_locked(self, review_id: int, actor: Actor, locked: bool) -> bool:
        if not actor.is_allowed(Capability.MODERATE):
            raise Unauthorized(
                "Missing moderate capability",
                review_id=review_id,
                capability=Capability.MODERATE.value,
            )

        action = LogAction.LOCK if locked else LogAction.UNLOCK

        def apply(review: Review) -> bool:
            if review.verify_locked == locked:
                return False

            # Tallies and scores are left exactly as they are
            review.verify_locked = locked
            self.db.add(ReviewLog(
                review_id=review.id,
                actor_id=actor.user_id,
                action=action.value,
                created_at=self.clock(),
            ))
            return True

        changed = self._mutate(review_id, action.value, apply)
        if changed:
            log_security_action(actor.user_id, action.value, review_id=review_id)
        return changed

    # =========================================================================
    # Score maintenance
    # =========================================================================

    def recalculate_scores(self, review_id: int) -> VerificationSummary:
        """Recompute the derived scores of one review from its counters."""

        def apply(review: Review) -> VerificationSummary:
            self._recompute(review, self.clock())
            return self.verification_summary(review)

        return self._mutate(review_id, "recalculate", apply)

    def refresh_sort_scores(
        self,
        batch_size: Optional[int] = None,
        page_id: Optional[int] = None
    ) -> int:
        """
        Recompute scores of active reviews so recency keeps decaying.

        Works in id-ordered batches, one commit per batch. A batch that loses
        a race with a vote is skipped; the vote already stored fresh scores
        for that review and the next run picks up the rest.
        """
        batch_size = batch_size or self.settings.score_refresh_batch_size
        now = self.clock()
        updated = 0
        last_id = 0

        while True:
            query = self.db.query(Review).filter(
                Review.status == ReviewStatus.ACTIVE.value,
                Review.id > last_id
            )
            if page_id is not None:
                query = query.filter(Review.page_id == page_id)

            batch = query.order_by(Review.id).limit(batch_size).all()
            if not batch:
                break

            for review in batch:
                self._recompute(review, now)
            last_id = batch[-1].id

            try:
                self.db.commit()
                updated += len(batch)
            except StaleDataError:
                self.db.rollback()
                logger.warning(f"Skipped score refresh batch ending at review {last_id}")
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.exception("Error refreshing sort scores")
                raise StorageUnavailable("Could not refresh sort scores") from e

        logger.info(f"Refreshed sort scores for {updated} reviews")
        return updated

    # =========================================================================
    # Helper Functions
    # =========================================================================

    def _mutate(self, review_id: int, action: str, apply: Callable[[Review], T]) -> T:
        """Run ``apply`` on the locked review as one committed unit of work."""
        attempts = self.settings.vote_max_retries

        for attempt in range(1, attempts + 1):
            try:
                review = self._lock_review(review_id)
                if review is None:
                    raise ReviewNotFound(review_id)

                result = apply(review)
                self.db.commit()
                return result
            except ServiceError:
                self.db.rollback()
                raise
            except (IntegrityError, StaleDataError) as e:
                self.db.rollback()
                logger.warning(
                    f"Concurrent {action} on review {review_id} "
                    f"(attempt {attempt}/{attempts}): {e.__class__.__name__}"
                )
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.exception(f"Error during {action} on review {review_id}")
                raise StorageUnavailable(f"Could not {action}", review_id=review_id) from e

        raise Conflict(
            f"Review {review_id} kept changing during {action}",
            review_id=review_id,
            attempts=attempts,
        )

    def _lock_review(self, review_id: int) -> Optional[Review]:
        return self.db.query(Review).filter(
            Review.id == review_id
        ).with_for_update().populate_existing().first()

    def _locked_vote(self, review_id: int, voter_id: int) -> Optional[VerificationVote]:
        return self.db.query(VerificationVote).filter(
            VerificationVote.review_id == review_id,
            VerificationVote.voter_id == voter_id
        ).populate_existing().first()

    def _check_can_verify(self, review: Review, actor: Actor):
        denial = verification_denial(review, actor)
        if denial is not None:
            raise denial

    @staticmethod
    def _shift_counts(review: Review, old: Optional[Verdict], new: Optional[Verdict]):
        if old is not None:
            column = VERDICT_COLUMNS[old]
            setattr(review, column, max(0, getattr(review, column) - 1))
        if new is not None:
            column = VERDICT_COLUMNS[new]
            setattr(review, column, getattr(review, column) + 1)

    def _recompute(self, review: Review, now: datetime):
        verify, ranking = compute_scores(
            review.verdict_counts(), review.created_at, now, self.params
        )
        review.verify_score = verify
        review.sort_score = ranking
