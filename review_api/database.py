"""
Database models and session management for the Review Verification API.

Uses SQLAlchemy with SQLite for the standalone service.
Can be configured for PostgreSQL in production, where vote mutations take a
row lock on the review they change.
"""

from datetime import datetime, UTC
from typing import Dict, List, Optional

from sqlalchemy import (
    Integer, String, Float, Text, DateTime, Boolean,
    ForeignKey, Index, UniqueConstraint, CheckConstraint, create_engine
)
from sqlalchemy.orm import (
    DeclarativeBase, relationship, sessionmaker, Mapped, mapped_column
)

from review_api.config import get_settings
from review_api.models import ReviewStatus, Verdict


# =============================================================================
# Database Setup
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def get_engine():
    """Create database engine."""
    settings = get_settings()
    return create_engine(
        settings.database_url,
        connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
        echo=settings.debug
    )


engine = get_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# Column holding the tally for each verdict
VERDICT_COLUMNS: Dict[Verdict, str] = {
    Verdict.TRUE: "verify_true",
    Verdict.MOSTLY_TRUE: "verify_mostly_true",
    Verdict.MIXED: "verify_mixed",
    Verdict.MOSTLY_FALSE: "verify_mostly_false",
    Verdict.FALSE: "verify_false",
    Verdict.INCONCLUSIVE: "verify_inconclusive",
}


# =============================================================================
# Database Models
# =============================================================================


class Review(Base):
    """
    A star rating and free-text review of a wiki page's subject.

    Authored either by a registered user (``user_id``) or anonymously, in
    which case ``session_token`` and ``ip_hash`` identify the author.
    The six verdict counters and the derived scores are written only by
    the verification ledger; content and status only by the repository.
    """

    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    page_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    # Authorship
    user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    session_token: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    ip_hash: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)

    # Content
    reviewer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    experience: Mapped[str] = mapped_column(String(255), default="")
    review_text: Mapped[str] = mapped_column(Text, default="")

    status: Mapped[str] = mapped_column(
        String(20),
        default=ReviewStatus.ACTIVE.value,
        index=True,
        nullable=False
    )

    # Verification tallies (one per verdict)
    verify_true: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verify_mostly_true: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verify_mixed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verify_mostly_false: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verify_false: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verify_inconclusive: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Derived fields, recomputed on every vote mutation
    verify_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    sort_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    verify_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Moderation counters
    flag_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    outdated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )

    # Bumped on every UPDATE; a concurrent writer sees a stale version
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    votes: Mapped[List["VerificationVote"]] = relationship(
        "VerificationVote", back_populates="review"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_reviews_page_status_sort', 'page_id', 'status', 'sort_score'),
        CheckConstraint('rating >= 1 AND rating <= 5', name='ck_reviews_rating'),
    )

    def verdict_counts(self) -> Dict[Verdict, int]:
        """Current tallies keyed by verdict."""
        return {
            verdict: getattr(self, column) or 0
            for verdict, column in VERDICT_COLUMNS.items()
        }

    @property
    def total_votes(self) -> int:
        return sum(self.verdict_counts().values())

    @property
    def is_active(self) -> bool:
        return self.status == ReviewStatus.ACTIVE.value


class VerificationVote(Base):
    """
    A registered user's verdict on a review.

    At most one row per (review, voter); changing a vote replaces the verdict
    and withdrawing it deletes the row.
    """

    __tablename__ = "verification_votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    review_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("reviews.id", ondelete="CASCADE"), index=True
    )
    voter_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    verdict: Mapped[str] = mapped_column(String(20), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )

    # Relationships
    review: Mapped["Review"] = relationship("Review", back_populates="votes")

    __table_args__ = (
        UniqueConstraint('review_id', 'voter_id', name='uq_vote_review_voter'),
    )


class PageStats(Base):
    """
    Aggregate rating statistics over the active reviews of a page.

    Always rebuilt from scratch, so refreshes are idempotent.
    """

    __tablename__ = "page_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    page_id: Mapped[int] = mapped_column(Integer, unique=True, index=True, nullable=False)

    review_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_rating: Mapped[float] = mapped_column(Float, default=0.0)

    rating_1: Mapped[int] = mapped_column(Integer, default=0)
    rating_2: Mapped[int] = mapped_column(Integer, default=0)
    rating_3: Mapped[int] = mapped_column(Integer, default=0)
    rating_4: Mapped[int] = mapped_column(Integer, default=0)
    rating_5: Mapped[int] = mapped_column(Integer, default=0)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    def histogram(self) -> Dict[int, int]:
        return {star: getattr(self, f"rating_{star}") or 0 for star in range(1, 6)}


class ReviewLog(Base):
    """
    Append-only audit log of actions taken on reviews.

    ``ip_hash`` is stored as its own indexed column so anonymous flag
    deduplication is an exact lookup rather than a scan of ``data``.
    """

    __tablename__ = "review_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    review_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    ip_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index('ix_review_log_action_review_ip', 'action', 'review_id', 'ip_hash'),
        Index('ix_review_log_action_created', 'action', 'created_at'),
    )
