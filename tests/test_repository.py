"""Tests for review persistence, page statistics, flags and claims."""
import json

import pytest

from review_api.database import Review, ReviewLog
from review_api.errors import ReviewNotFound, Unauthorized, ValidationFailed
from review_api.ledger import VerificationLedger
from review_api.models import FlagReason, LogAction, ReviewStatus, SortMode, Verdict
from review_api.repository import ReviewRepository, coerce_sort_mode
from review_api.scoring import seed_sort_score

from tests.conftest import anonymous, make_settings, registered


def add_review(repository, page_id=10, rating=4, **kwargs):
    values = {"reviewer_name": "Dana", "experience": "Local guide"}
    values.update(kwargs)
    return repository.create_review(page_id=page_id, rating=rating, **values)


class TestCreate:

    def test_new_review_gets_seed_score(self, repository):
        review = repository.get_review(add_review(repository))

        assert review.status == ReviewStatus.ACTIVE.value
        assert review.total_votes == 0
        assert review.verify_locked is False
        assert review.sort_score == seed_sort_score(0.6, 0.3)

    def test_seed_score_follows_configured_weights(self, db_session, clock):
        settings = make_settings(sort_verification_weight=0.2, sort_recency_weight=0.7)
        repository = ReviewRepository(db_session, settings, clock)

        review = repository.get_review(add_review(repository))
        assert review.sort_score == 0.2 * 0.5 + 0.7 * 1.0

    def test_create_is_logged(self, db_session, repository):
        review_id = add_review(repository, user_id=5)

        entry = db_session.query(ReviewLog).filter(ReviewLog.review_id == review_id).one()
        assert entry.action == LogAction.CREATE.value
        assert entry.actor_id == 5
        assert json.loads(entry.data)["rating"] == 4

    def test_missing_review(self, repository):
        assert repository.get_review(404) is None
        with pytest.raises(ReviewNotFound):
            repository.require_review(404)


class TestPageStats:

    def test_stats_follow_active_reviews(self, repository):
        add_review(repository, rating=5)
        add_review(repository, rating=5)
        doomed = add_review(repository, rating=2)

        stats = repository.get_page_stats(10)
        assert stats.review_count == 3
        assert stats.avg_rating == 4.0
        assert stats.histogram() == {1: 0, 2: 1, 3: 0, 4: 0, 5: 2}

        repository.delete_review(doomed, actor_id=None)

        stats = repository.get_page_stats(10)
        assert stats.review_count == 2
        assert stats.avg_rating == 5.0
        assert stats.rating_2 == 0

    def test_refresh_is_idempotent(self, repository):
        add_review(repository, rating=3)

        first = repository.refresh_page_stats(10)
        counts = (first.review_count, first.avg_rating, first.histogram())
        second = repository.refresh_page_stats(10)

        assert (second.review_count, second.avg_rating, second.histogram()) == counts

    def test_unknown_page(self, repository):
        assert repository.get_page_stats(77) is None

    def test_concurrent_first_stats_row_keeps_both_reviews(
        self, file_sessions, settings, clock, monkeypatch
    ):
        with file_sessions() as db_a, file_sessions() as db_b:
            first_writer = ReviewRepository(db_b, settings, clock)
            second_writer = ReviewRepository(db_a, settings, clock)

            # The second writer decided the stats row was missing before the first committed
            monkeypatch.setattr(second_writer, "get_page_stats", lambda page_id: None)

            add_review(first_writer, page_id=7, rating=5)
            add_review(second_writer, page_id=7, rating=3)

        with file_sessions() as db:
            repository = ReviewRepository(db, settings, clock)
            stats = repository.get_page_stats(7)

            assert db.query(Review).filter(Review.page_id == 7).count() == 2
            assert stats.review_count == 2
            assert stats.avg_rating == 4.0

    def test_refresh_overwrites_stale_loaded_row(self, file_sessions, settings, clock):
        with file_sessions() as db_a, file_sessions() as db_b:
            reader = ReviewRepository(db_a, settings, clock)
            writer = ReviewRepository(db_b, settings, clock)

            add_review(writer, page_id=8, rating=2)
            stale = reader.get_page_stats(8)
            add_review(writer, page_id=8, rating=4)

            fresh = reader.refresh_page_stats(8)
            db_a.commit()

            assert fresh is stale
            assert fresh.review_count == 2
            assert fresh.avg_rating == 3.0


class TestUpdateDelete:

    def test_update_content_keeps_scores(self, db_session, repository, ledger):
        review_id = add_review(repository, user_id=1)
        ledger.vote(review_id, registered(2), Verdict.TRUE)
        before = repository.get_review(review_id)
        scores = (before.verify_score, before.sort_score, before.verdict_counts())

        repository.update_review(review_id, {"rating": 1, "review_text": "Changed"}, actor_id=1)

        db_session.expire_all()
        review = repository.get_review(review_id)
        assert review.rating == 1
        assert review.review_text == "Changed"
        assert (review.verify_score, review.sort_score, review.verdict_counts()) == scores
        assert repository.get_page_stats(10).rating_1 == 1

    def test_update_rejects_non_content_fields(self, repository):
        review_id = add_review(repository)

        with pytest.raises(ValidationFailed) as exc:
            repository.update_review(review_id, {"sort_score": 99.0}, actor_id=1)
        assert exc.value.field == "sort_score"

    def test_soft_delete_keeps_votes(self, db_session, repository, ledger):
        review_id = add_review(repository, user_id=1)
        ledger.vote(review_id, registered(2), Verdict.MIXED)

        repository.delete_review(review_id, actor_id=1, reason="duplicate")

        db_session.expire_all()
        review = repository.get_review(review_id)
        assert review.status == ReviewStatus.DELETED.value
        assert review.verify_mixed == 1
        assert ledger.get_user_vote(review_id, 2) is not None

        entry = db_session.query(ReviewLog).filter(
            ReviewLog.action == LogAction.DELETE.value
        ).one()
        assert entry.reason == "duplicate"


class TestListing:

    def test_sort_modes(self, repository, ledger, clock):
        old = add_review(repository, rating=2, user_id=1)
        clock.advance(days=1)
        new = add_review(repository, rating=5, user_id=1)
        clock.advance(days=1)
        middle = add_review(repository, rating=3, user_id=1)

        ledger.vote(old, registered(2), Verdict.TRUE)
        ledger.vote(new, registered(2), Verdict.FALSE)

        def ids(sort):
            return [r.id for r in repository.get_reviews_for_page(10, sort)]

        assert ids(SortMode.NEWEST) == [middle, new, old]
        assert ids(SortMode.OLDEST) == [old, new, middle]
        assert ids(SortMode.HIGHEST_RATING) == [new, middle, old]
        assert ids(SortMode.LOWEST_RATING) == [old, middle, new]
        assert ids("most-verified")[0] == old
        assert ids(SortMode.SMART)[0] == old

    def test_secondary_orderings(self, repository, ledger, clock):
        # Same rating everywhere; only the first review gets a vote
        first = add_review(repository, rating=4, user_id=1)
        clock.advance(days=1)
        second = add_review(repository, rating=4, user_id=1)
        clock.advance(days=1)
        third = add_review(repository, rating=4, user_id=1)

        ledger.vote(first, registered(2), Verdict.TRUE)

        second_review = repository.get_review(second)
        third_review = repository.get_review(third)
        assert second_review.sort_score == third_review.sort_score
        assert second_review.verify_score == third_review.verify_score == 0.0
        assert repository.get_review(first).sort_score > third_review.sort_score

        def ids(sort):
            return [r.id for r in repository.get_reviews_for_page(10, sort)]

        # Equal sort_score falls back to newest
        assert ids(SortMode.SMART) == [first, third, second]
        # Equal rating falls back to sort_score
        assert ids(SortMode.HIGHEST_RATING) == [first, third, second]
        # Equal rating falls back to newest, not sort_score
        assert ids(SortMode.LOWEST_RATING) == [third, second, first]
        # Equal verify_score falls back to newest
        assert ids(SortMode.MOST_VERIFIED) == [first, third, second]

    def test_full_tie_orders_by_id(self, repository):
        earlier = add_review(repository, page_id=20)
        later = add_review(repository, page_id=20)

        for sort in SortMode:
            ids = [r.id for r in repository.get_reviews_for_page(20, sort)]
            assert ids == [later, earlier]

    def test_deleted_reviews_are_hidden(self, repository):
        kept = add_review(repository)
        gone = add_review(repository)
        repository.delete_review(gone, actor_id=None)

        assert [r.id for r in repository.get_reviews_for_page(10)] == [kept]
        deleted = repository.get_reviews_for_page(10, status=ReviewStatus.DELETED)
        assert [r.id for r in deleted] == [gone]

    def test_paging(self, repository):
        for _ in range(5):
            add_review(repository)

        first = repository.get_reviews_for_page(10, SortMode.NEWEST, limit=2)
        rest = repository.get_reviews_for_page(10, SortMode.NEWEST, limit=10, offset=2)

        assert len(first) == 2
        assert len(rest) == 3
        assert not {r.id for r in first} & {r.id for r in rest}

    def test_unknown_sort_mode(self, repository):
        with pytest.raises(ValidationFailed):
            repository.get_reviews_for_page(10, "loudest")
        assert coerce_sort_mode("smart") == SortMode.SMART


class TestFlags:

    def test_registered_flag_counts_once(self, db_session, repository):
        review_id = add_review(repository, user_id=1)

        assert repository.add_flag(review_id, registered(2), FlagReason.SPAM) is True
        assert repository.add_flag(review_id, registered(2), FlagReason.FAKE) is False
        assert repository.add_flag(review_id, registered(3), FlagReason.OUTDATED) is True

        db_session.expire_all()
        review = repository.get_review(review_id)
        assert review.flag_count == 2
        assert review.outdated_count == 1

    def test_anonymous_flags_dedupe_by_ip(self, db_session, repository):
        review_id = add_review(repository)

        assert repository.add_flag(review_id, anonymous("ip-a"), FlagReason.SPAM)
        assert not repository.add_flag(review_id, anonymous("ip-a"), FlagReason.SPAM)
        assert repository.add_flag(review_id, anonymous("ip-b"), FlagReason.SPAM)

        db_session.expire_all()
        assert repository.get_review(review_id).flag_count == 2

    def test_cannot_flag_own_review(self, repository):
        review_id = add_review(repository, user_id=1)

        with pytest.raises(Unauthorized):
            repository.add_flag(review_id, registered(1), FlagReason.SPAM)

    def test_cannot_flag_deleted_review(self, repository):
        review_id = add_review(repository)
        repository.delete_review(review_id, actor_id=None)

        with pytest.raises(ReviewNotFound):
            repository.add_flag(review_id, registered(2), FlagReason.SPAM)


class TestClaim:

    def test_claim_moves_anonymous_reviews(self, db_session, repository):
        token = "a" * 64
        first = add_review(repository, session_token=token, ip_hash="anon")
        second = add_review(repository, session_token=token, ip_hash="anon")
        add_review(repository, session_token="b" * 64, ip_hash="other")

        assert repository.claim_reviews(token, user_id=7) == 2

        db_session.expire_all()
        for review_id in (first, second):
            review = repository.get_review(review_id)
            assert review.user_id == 7
            assert review.session_token is None

    def test_claim_skips_reviews_the_user_voted_on(self, db_session, repository, clock):
        token = "c" * 64
        voted = add_review(repository, session_token=token)
        free = add_review(repository, session_token=token)
        VerificationLedger(db_session, repository.settings, clock).vote(
            voted, registered(7), Verdict.TRUE
        )

        assert repository.claim_reviews(token, user_id=7) == 1

        db_session.expire_all()
        assert repository.get_review(free).user_id == 7
        assert db_session.get(Review, voted).user_id is None
