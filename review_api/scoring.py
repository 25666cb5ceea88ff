"""
Score calculation for review verification and ranking.

Everything here is a pure function of its arguments: vote tallies, review
age and the configured weights. Nothing reads the clock, the settings or
the database, so the ledger can recompute scores inside its transaction
and tests can pin every input.

Three numbers come out of this module:

- the verification score, a weighted average of verdict votes in [-2, 2];
- the verification status, a coarse label bucketed from that score;
- the sort score, which blends normalized verification, recency and a
  small confidence bonus into the default ranking value.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Mapping, Tuple

from review_api.models import Verdict, VerificationStatus


VERDICT_WEIGHTS: Mapping[Verdict, int] = {
    Verdict.TRUE: 2,
    Verdict.MOSTLY_TRUE: 1,
    Verdict.MIXED: 0,
    Verdict.MOSTLY_FALSE: -1,
    Verdict.FALSE: -2,
}

# Lower bucket edges, checked top-down; each edge is inclusive
STATUS_BUCKETS: Tuple[Tuple[float, VerificationStatus], ...] = (
    (1.5, VerificationStatus.ACCURATE),
    (0.5, VerificationStatus.MOSTLY_ACCURATE),
    (-0.5, VerificationStatus.MIXED),
    (-1.5, VerificationStatus.MOSTLY_INACCURATE),
)

NEUTRAL_VERIFICATION = 0.5
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ScoringParams:
    """Weights and thresholds used to compute derived review scores."""

    verification_weight: float
    recency_weight: float
    half_life_days: float
    stale_threshold_days: float
    stale_penalty: float
    confidence_threshold: int
    confidence_weight: float
    pending_threshold: int

    @classmethod
    def from_settings(cls, settings) -> "ScoringParams":
        return cls(
            verification_weight=settings.sort_verification_weight,
            recency_weight=settings.sort_recency_weight,
            half_life_days=settings.sort_recency_half_life_days,
            stale_threshold_days=settings.stale_threshold_days,
            stale_penalty=settings.stale_penalty,
            confidence_threshold=settings.sort_confidence_threshold,
            confidence_weight=settings.sort_confidence_weight,
            pending_threshold=settings.verification_pending_threshold,
        )


def total_votes(counts: Mapping[Verdict, int]) -> int:
    """Total votes, inconclusive included."""
    return sum(counts.get(verdict, 0) for verdict in Verdict)


def verification_score(counts: Mapping[Verdict, int]) -> float:
    """
    Weighted average of verdict votes, in [-2, 2].

    Inconclusive votes are left out of both the numerator and the
    denominator. With no scored votes the score is 0.
    """
    scored = sum(counts.get(verdict, 0) for verdict in VERDICT_WEIGHTS)
    if scored == 0:
        return 0.0

    weighted = sum(
        counts.get(verdict, 0) * weight
        for verdict, weight in VERDICT_WEIGHTS.items()
    )
    return weighted / scored


def verification_status(
    score: float,
    total: int,
    pending_threshold: int
) -> VerificationStatus:
    """Bucket a verification score into a status label."""
    if total == 0:
        return VerificationStatus.UNVERIFIED

    # Too few votes to show a verdict without inviting brigading
    if total < pending_threshold:
        return VerificationStatus.PENDING

    for lower_edge, status in STATUS_BUCKETS:
        if score >= lower_edge:
            return status
    return VerificationStatus.INACCURATE


def recency_score(
    age_days: float,
    half_life_days: float,
    stale_threshold_days: float,
    stale_penalty: float
) -> float:
    """
    Harmonic decay ``1 / (1 + age / half_life)``.

    Past the stale threshold the result is additionally multiplied by the
    stale penalty, which makes the score step down at the threshold.
    """
    score = 1.0 / (1.0 + age_days / half_life_days)
    if age_days > stale_threshold_days:
        score *= stale_penalty
    return score


def confidence_bonus(total: int, threshold: int, weight: float) -> float:
    """Ranking bonus for verification engagement, capped at ``weight``."""
    if total <= 0:
        return 0.0
    return min(total / threshold, 1.0) * weight


def normalized_verification_score(score: float, total: int) -> float:
    """Map a [-2, 2] verification score into [0, 1]; 0.5 when unvoted."""
    if total == 0:
        return NEUTRAL_VERIFICATION
    return (score + 2.0) / 4.0


def sort_score(
    normalized_verification: float,
    recency: float,
    bonus: float,
    verification_weight: float,
    recency_weight: float
) -> float:
    return (
        verification_weight * normalized_verification
        + recency_weight * recency
        + bonus
    )


def seed_sort_score(verification_weight: float, recency_weight: float) -> float:
    """Sort score of a review at the instant it is created.

    Neutral verification and full freshness, with no confidence bonus.
    """
    return verification_weight * NEUTRAL_VERIFICATION + recency_weight * 1.0


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def age_in_days(created_at: datetime, now: datetime) -> float:
    """Fractional age in days, never negative."""
    seconds = (_as_utc(now) - _as_utc(created_at)).total_seconds()
    return max(seconds, 0.0) / SECONDS_PER_DAY


def is_stale(created_at: datetime, now: datetime, stale_threshold_days: float) -> bool:
    return age_in_days(created_at, now) > stale_threshold_days


def compute_scores(
    counts: Mapping[Verdict, int],
    created_at: datetime,
    now: datetime,
    params: ScoringParams
) -> Tuple[float, float]:
    """Recompute ``(verify_score, sort_score)`` for a review."""
    total = total_votes(counts)
    verify = verification_score(counts)

    recency = recency_score(
        age_in_days(created_at, now),
        params.half_life_days,
        params.stale_threshold_days,
        params.stale_penalty,
    )
    bonus = confidence_bonus(total, params.confidence_threshold, params.confidence_weight)

    ranking = sort_score(
        normalized_verification_score(verify, total),
        recency,
        bonus,
        params.verification_weight,
        params.recency_weight,
    )
    return verify, ranking
