"""
Storage-backed rate limits for review submission, flagging and voting.

Called by the API layer before a write reaches the repository or ledger.
Windows are counted from rows already in the database, so limits hold
across workers without shared in-process state.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from review_api.config import Settings, get_settings
from review_api.database import VerificationVote
from review_api.errors import RateLimited
from review_api.identity import Actor, Clock, utcnow
from review_api.repository import ReviewRepository
from review_api.security import log_rate_limit_hit


HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


class RateLimiter:

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.repository = ReviewRepository(db, self.settings, clock)

    def check_review_submission(self, actor: Actor):
        """Raise ``RateLimited`` when the actor has submitted too many reviews."""
        now = self.clock()
        user_id = actor.user_id if actor.is_registered else None

        hourly = self.repository.count_recent_reviews(user_id, actor.ip_hash, now - HOUR)
        if hourly >= self.settings.rate_limit_per_hour:
            self._deny(actor, "submit", limit=self.settings.rate_limit_per_hour, window="hour")

        daily = self.repository.count_recent_reviews(user_id, actor.ip_hash, now - DAY)
        if daily >= self.settings.rate_limit_per_day:
            self._deny(actor, "submit", limit=self.settings.rate_limit_per_day, window="day")

    def check_flag(self, actor: Actor):
        recent = self.repository.count_recent_flags(actor, self.clock() - HOUR)
        if recent >= self.settings.flag_rate_limit_per_hour:
            self._deny(actor, "flag", limit=self.settings.flag_rate_limit_per_hour, window="hour")

    def check_vote(self, actor: Actor):
        if not actor.is_registered:
            return

        recent = self.db.query(func.count(VerificationVote.id)).filter(
            VerificationVote.voter_id == actor.user_id,
            VerificationVote.updated_at >= self.clock() - HOUR
        ).scalar() or 0

        if recent >= self.settings.vote_rate_limit_per_hour:
            self._deny(actor, "verify", limit=self.settings.vote_rate_limit_per_hour, window="hour")

    def _deny(self, actor: Actor, action: str, **context):
        log_rate_limit_hit(actor.user_id, action, actor.ip_hash)
        raise RateLimited(f"Too many {action} requests", action=action, **context)
