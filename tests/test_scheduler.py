"""Tests for the periodic score refresh."""
import asyncio

from review_api.errors import StorageUnavailable
from review_api.scheduler import ScoreRefreshScheduler

from tests.conftest import TestingSessionLocal


def test_refresh_records_run(repository, clock):
    repository.create_review(page_id=1, rating=3, reviewer_name="Finn", experience="Once")
    repository.create_review(page_id=2, rating=4, reviewer_name="Gus", experience="Twice")

    scheduler = ScoreRefreshScheduler(
        interval_minutes=5, session_factory=TestingSessionLocal, clock=clock
    )
    run = asyncio.run(scheduler.refresh())

    assert run.succeeded
    assert run.reviews_updated == 2

    status = scheduler.get_status()
    assert status["last_run"]["reviews_updated"] == 2
    assert status["refreshing"] is False
    assert status["recent_failures"] == 0


def test_status_before_start():
    scheduler = ScoreRefreshScheduler(interval_minutes=15, session_factory=TestingSessionLocal)

    status = scheduler.get_status()
    assert status["running"] is False
    assert status["interval_minutes"] == 15
    assert status["next_run"] is None
    assert status["last_run"] is None


def test_failed_refresh_is_reported(clock):
    def broken_session():
        raise StorageUnavailable("database offline")

    scheduler = ScoreRefreshScheduler(session_factory=broken_session, clock=clock)
    run = scheduler.refresh_blocking()

    assert not run.succeeded
    assert run.error == "database offline"


def test_overlapping_refresh_is_skipped(clock):
    scheduler = ScoreRefreshScheduler(session_factory=TestingSessionLocal, clock=clock)
    scheduler._refreshing = True

    assert asyncio.run(scheduler.refresh()) is None
    assert scheduler.last_run is None
