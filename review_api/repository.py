"""
Review repository: review records, page statistics and the action log.

Owns the content fields and lifecycle status of reviews. Verdict counters
and derived scores are seeded here when a review is created and never
touched again; after that they belong to the verification ledger.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import case, func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from review_api.config import Settings, get_settings
from review_api.database import PageStats, Review, ReviewLog, VerificationVote
from review_api.errors import (
    Conflict, ReviewNotFound, StorageUnavailable, Unauthorized, ValidationFailed
)
from review_api.identity import Actor, Clock, utcnow
from review_api.models import FlagReason, LogAction, ReviewStatus, SortMode
from review_api.scoring import seed_sort_score


logger = logging.getLogger(__name__)


CONTENT_FIELDS = ("rating", "reviewer_name", "experience", "review_text")

# ORDER BY clauses per sort mode; every list ends with an id tie-break so
# paging stays deterministic
SORT_ORDERS = {
    SortMode.SMART: (Review.sort_score.desc(), Review.created_at.desc()),
    SortMode.NEWEST: (Review.created_at.desc(),),
    SortMode.OLDEST: (Review.created_at.asc(),),
    SortMode.HIGHEST_RATING: (Review.rating.desc(), Review.sort_score.desc()),
    SortMode.LOWEST_RATING: (Review.rating.asc(), Review.created_at.desc()),
    SortMode.MOST_VERIFIED: (Review.verify_score.desc(), Review.created_at.desc()),
}


# Dialect INSERTs that support ON CONFLICT DO UPDATE
UPSERT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def coerce_sort_mode(value: Union[SortMode, str]) -> SortMode:
    """Resolve a sort mode, rejecting unknown values."""
    if isinstance(value, SortMode):
        return value
    try:
        return SortMode(value)
    except ValueError:
        raise ValidationFailed(
            "sort",
            f"Unknown sort mode {value!r}",
            allowed=[mode.value for mode in SortMode],
        )


class ReviewRepository:
    """
    Persistence operations for reviews.

    Every write commits its own unit of work. Storage failures roll the
    session back and surface as ``StorageUnavailable``.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    # =========================================================================
    # Reads
    # =========================================================================

    def get_review(self, review_id: int) -> Optional[Review]:
        return self.db.query(Review).filter(Review.id == review_id).first()

    def require_review(self, review_id: int) -> Review:
        review = self.get_review(review_id)
        if review is None:
            raise ReviewNotFound(review_id)
        return review

    def get_reviews_for_page(
        self,
        page_id: int,
        sort: Union[SortMode, str] = SortMode.SMART,
        limit: int = 10,
        offset: int = 0,
        status: ReviewStatus = ReviewStatus.ACTIVE
    ) -> List[Review]:
        """
        Get one page of reviews for a wiki page.

        Ordering reads the persisted ``sort_score``; nothing is recomputed
        at read time.
        """
        sort = coerce_sort_mode(sort)

        return self.db.query(Review).filter(
            Review.page_id == page_id,
            Review.status == ReviewStatus(status).value
        ).order_by(
            *SORT_ORDERS[sort], Review.id.desc()
        ).offset(offset).limit(limit).all()

    def get_page_stats(self, page_id: int) -> Optional[PageStats]:
        return self.db.query(PageStats).filter(PageStats.page_id == page_id).first()

    # =========================================================================
    # Writes
    # =========================================================================

    def create_review(
        self,
        page_id: int,
        rating: int,
        reviewer_name: str,
        experience: str,
        review_text: str = "",
        user_id: Optional[int] = None,
        session_token: Optional[str] = None,
        ip_hash: Optional[str] = None
    ) -> int:
        """
        Create a review and return its id.

        The review starts unvoted and unlocked with the seed sort score.
        """
        now = self.clock()

        review = Review(
            page_id=page_id,
            user_id=user_id,
            session_token=session_token,
            ip_hash=ip_hash,
            reviewer_name=reviewer_name,
            rating=rating,
            experience=experience,
            review_text=review_text,
            status=ReviewStatus.ACTIVE.value,
            verify_true=0,
            verify_mostly_true=0,
            verify_mixed=0,
            verify_mostly_false=0,
            verify_false=0,
            verify_inconclusive=0,
            verify_score=0.0,
            sort_score=seed_sort_score(
                self.settings.sort_verification_weight,
                self.settings.sort_recency_weight
            ),
            verify_locked=False,
            flag_count=0,
            outdated_count=0,
            created_at=now,
            updated_at=now,
        )

        try:
            self.db.add(review)
            self.db.flush()

            self.refresh_page_stats(page_id)
            self._log_action(
                review.id, user_id, LogAction.CREATE,
                data=self._snapshot(review), ip_hash=ip_hash
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Error creating review")
            raise StorageUnavailable("Could not create review", page_id=page_id) from e

        self._commit("create", review.id)

        logger.info(f"Created review {review.id} on page {page_id}")
        return review.id

    def update_review(self, review_id: int, changes: Dict[str, Any], actor_id: Optional[int]) -> bool:
        """
        Update content fields of a review.

        Only ``rating``, ``reviewer_name``, ``experience`` and
        ``review_text`` may change. Page statistics are rebuilt when the
        rating changes.
        """
        unknown = set(changes) - set(CONTENT_FIELDS)
        if unknown:
            raise ValidationFailed(
                sorted(unknown)[0], "Field cannot be edited", fields=sorted(unknown)
            )

        review = self.require_review(review_id)
        old = {field: getattr(review, field) for field in changes}

        for field, value in changes.items():
            setattr(review, field, value)
        review.updated_at = self.clock()

        try:
            if "rating" in changes and changes["rating"] != old["rating"]:
                self.refresh_page_stats(review.page_id)

            self._log_action(
                review.id, actor_id, LogAction.EDIT,
                data={"old": old, "new": changes}
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"Error updating review {review_id}")
            raise StorageUnavailable("Could not update review", review_id=review_id) from e

        self._commit("edit", review_id)
        return True

    def delete_review(self, review_id: int, actor_id: Optional[int], reason: str = "") -> bool:
        """Soft-delete a review. Verification votes are kept."""
        review = self.require_review(review_id)
        snapshot = self._snapshot(review)

        review.status = ReviewStatus.DELETED.value
        review.updated_at = self.clock()

        try:
            self.refresh_page_stats(review.page_id)
            self._log_action(review.id, actor_id, LogAction.DELETE, reason=reason, data=snapshot)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"Error deleting review {review_id}")
            raise StorageUnavailable("Could not delete review", review_id=review_id) from e

        self._commit("delete", review_id)

        logger.info(f"Deleted review {review_id} (actor={actor_id})")
        return True

    def refresh_page_stats(self, page_id: int) -> PageStats:
        """
        Rebuild the aggregate statistics row for a page.

        A full recount over active reviews, not an incremental update, so it
        is safe to run repeatedly. The row is written with an upsert, so two
        writers refreshing the same page never collide on ``page_id``; the
        last one wins. Does not commit.
        """
        self.db.flush()

        row = self.db.query(
            func.count(Review.id),
            func.avg(Review.rating),
            *[
                func.sum(case((Review.rating == star, 1), else_=0))
                for star in range(1, 6)
            ]
        ).filter(
            Review.page_id == page_id,
            Review.status == ReviewStatus.ACTIVE.value
        ).one()

        count, average, *buckets = row

        values = {
            "review_count": int(count or 0),
            "avg_rating": round(float(average or 0), 2),
            "updated_at": self.clock(),
            **{
                f"rating_{star}": int(bucket or 0)
                for star, bucket in zip(range(1, 6), buckets)
            },
        }

        insert = UPSERT_INSERTS[self.db.get_bind().dialect.name]
        self.db.execute(
            insert(PageStats)
            .values(page_id=page_id, **values)
            .on_conflict_do_update(index_elements=["page_id"], set_=values)
        )

        return self.db.query(PageStats).filter(
            PageStats.page_id == page_id
        ).populate_existing().one()

    # =========================================================================
    # Flags
    # =========================================================================

    def has_flagged(self, review_id: int, actor: Actor) -> bool:
        """
        Whether this actor already flagged the review.

        Registered users are matched by id, anonymous ones by IP hash.
        """
        query = self.db.query(func.count(ReviewLog.id)).filter(
            ReviewLog.review_id == review_id,
            ReviewLog.action == LogAction.FLAG.value
        )

        if actor.is_registered:
            query = query.filter(ReviewLog.actor_id == actor.user_id)
        elif actor.ip_hash:
            query = query.filter(
                ReviewLog.actor_id.is_(None),
                ReviewLog.ip_hash == actor.ip_hash
            )
        else:
            return False

        return (query.scalar() or 0) > 0

    def add_flag(
        self,
        review_id: int,
        actor: Actor,
        reason: FlagReason,
        comment: str = ""
    ) -> bool:
        """
        Flag a review for moderation.

        Returns False without changing anything when the actor has already
        flagged this review.
        """
        review = self.require_review(review_id)
        if not review.is_active:
            raise ReviewNotFound(review_id)

        if actor.is_registered and review.user_id == actor.user_id:
            raise Unauthorized("Cannot flag your own review", review_id=review_id)

        if self.has_flagged(review_id, actor):
            return False

        try:
            self._log_action(
                review.id, actor.user_id, LogAction.FLAG,
                reason=reason.value, data={"comment": comment}, ip_hash=actor.ip_hash
            )

            review.flag_count = Review.flag_count + 1
            if reason == FlagReason.OUTDATED:
                review.outdated_count = Review.outdated_count + 1
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailable("Could not flag review", review_id=review_id) from e

        self._commit("flag", review_id)
        return True

    def count_recent_flags(self, actor: Actor, since: datetime) -> int:
        query = self.db.query(func.count(ReviewLog.id)).filter(
            ReviewLog.action == LogAction.FLAG.value,
            ReviewLog.created_at >= since
        )

        if actor.is_registered:
            query = query.filter(ReviewLog.actor_id == actor.user_id)
        elif actor.ip_hash:
            query = query.filter(ReviewLog.ip_hash == actor.ip_hash)
        else:
            return 0

        return query.scalar() or 0

    # =========================================================================
    # Anonymous reviews
    # =========================================================================

    def count_recent_reviews(
        self,
        user_id: Optional[int],
        ip_hash: Optional[str],
        since: datetime
    ) -> int:
        query = self.db.query(func.count(Review.id)).filter(Review.created_at >= since)

        if user_id:
            query = query.filter(Review.user_id == user_id)
        elif ip_hash:
            query = query.filter(Review.ip_hash == ip_hash)
        else:
            return 0

        return query.scalar() or 0

    def claim_reviews(self, session_token: str, user_id: int) -> int:
        """
        Attach anonymous reviews written under a session token to a user.

        Reviews the user has already voted on stay anonymous, otherwise
        the user would end up with a vote on their own review.
        """
        voted = select(VerificationVote.review_id).where(VerificationVote.voter_id == user_id)

        reviews = self.db.query(Review).filter(
            Review.session_token == session_token,
            Review.user_id.is_(None),
            Review.id.not_in(voted)
        ).all()

        try:
            for review in reviews:
                review.user_id = user_id
                review.session_token = None
                self._log_action(review.id, user_id, LogAction.CLAIM)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailable("Could not claim reviews", user_id=user_id) from e

        self._commit("claim", None)

        if reviews:
            logger.info(f"User {user_id} claimed {len(reviews)} anonymous reviews")
        return len(reviews)

    # =========================================================================
    # Helper Functions
    # =========================================================================

    def _log_action(
        self,
        review_id: int,
        actor_id: Optional[int],
        action: LogAction,
        reason: Optional[str] = None,
        data: Optional[Dict] = None,
        ip_hash: Optional[str] = None
    ):
        self.db.add(ReviewLog(
            review_id=review_id,
            actor_id=actor_id,
            ip_hash=ip_hash,
            action=action.value,
            reason=reason,
            data=json.dumps(data, default=str) if data else None,
            created_at=self.clock(),
        ))

    @staticmethod
    def _snapshot(review: Review) -> Dict[str, Any]:
        return {
            "page_id": review.page_id,
            "user_id": review.user_id,
            **{field: getattr(review, field) for field in CONTENT_FIELDS},
        }

    def _commit(self, action: str, review_id: Optional[int]):
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise Conflict(
                f"Review changed concurrently during {action}", review_id=review_id
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"Error committing {action} for review {review_id}")
            raise StorageUnavailable(f"Could not {action} review", review_id=review_id) from e
