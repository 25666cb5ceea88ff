"""
Periodic sort-score refresh.

Vote mutations recompute a review's scores immediately, but the recency
part of ``sort_score`` keeps decaying while nobody votes. An APScheduler
interval job recomputes the scores of all active reviews so the persisted
ranking keeps up with review age.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from review_api.config import get_settings
from review_api.database import SessionLocal
from review_api.errors import ServiceError
from review_api.identity import Clock, utcnow
from review_api.ledger import VerificationLedger


logger = logging.getLogger(__name__)

JOB_ID = "sort_score_refresh"
HISTORY_SIZE = 10


@dataclass
class RefreshRun:
    """One completed refresh, successful or not."""

    started_at: datetime
    finished_at: datetime
    reviews_updated: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "success": self.succeeded,
            "reviews_updated": self.reviews_updated,
            "duration_seconds": (self.finished_at - self.started_at).total_seconds(),
            "finished_at": self.finished_at.isoformat(),
            "error": self.error,
        }


class ScoreRefreshScheduler:
    """Runs ``VerificationLedger.refresh_sort_scores`` on an interval."""

    def __init__(
        self,
        interval_minutes: Optional[int] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utcnow
    ):
        self.interval_minutes = interval_minutes or get_settings().score_refresh_interval_minutes
        self.session_factory = session_factory
        self.clock = clock
        self.scheduler = AsyncIOScheduler()
        self.history: Deque[RefreshRun] = deque(maxlen=HISTORY_SIZE)
        self._refreshing = False

    @property
    def last_run(self) -> Optional[RefreshRun]:
        return self.history[-1] if self.history else None

    async def refresh(self) -> Optional[RefreshRun]:
        """
        Run one refresh off the event loop.

        Returns None when a previous run is still going.
        """
        if self._refreshing:
            logger.warning("Score refresh still running, skipping this tick")
            return None

        self._refreshing = True
        try:
            run = await asyncio.to_thread(self.refresh_blocking)
        finally:
            self._refreshing = False

        self.history.append(run)
        return run

    def refresh_blocking(self) -> RefreshRun:
        """Refresh every active review in a fresh session."""
        started = self.clock()

        try:
            with self.session_factory() as db:
                updated = VerificationLedger(db, clock=self.clock).refresh_sort_scores()
        except (ServiceError, SQLAlchemyError) as e:
            logger.error(f"Score refresh failed: {e}")
            return RefreshRun(started, self.clock(), error=str(e))

        run = RefreshRun(started, self.clock(), reviews_updated=updated)
        logger.info(
            f"Score refresh updated {updated} reviews "
            f"in {run.to_dict()['duration_seconds']:.2f}s"
        )
        return run

    def start(self):
        if self.scheduler.running:
            logger.warning("Score refresh scheduler is already running")
            return

        self.scheduler.add_job(
            self.refresh,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="Sort score refresh",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(f"Score refresh scheduled every {self.interval_minutes} minutes")

    def stop(self):
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Score refresh scheduler stopped")

    def get_status(self) -> dict:
        last = self.last_run
        return {
            "running": self.scheduler.running,
            "interval_minutes": self.interval_minutes,
            "refreshing": self._refreshing,
            "next_run": self._next_run_time(),
            "last_run": last.to_dict() if last else None,
            "recent_failures": sum(1 for run in self.history if not run.succeeded),
        }

    def _next_run_time(self) -> Optional[str]:
        job = self.scheduler.get_job(JOB_ID) if self.scheduler.running else None
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()


_scheduler: Optional[ScoreRefreshScheduler] = None


def get_scheduler() -> ScoreRefreshScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = ScoreRefreshScheduler()
    return _scheduler


def start_scheduler():
    get_scheduler().start()


def stop_scheduler():
    global _scheduler
    if _scheduler is None:
        return
    _scheduler.stop()
    _scheduler = None


async def _serve(interval_minutes: Optional[int]):
    scheduler = ScoreRefreshScheduler(interval_minutes=interval_minutes)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Refresh review sort scores")
    parser.add_argument("--once", action="store_true", help="Refresh once and exit")
    parser.add_argument(
        "--interval", type=int, default=None,
        help="Minutes between refreshes (default from settings)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.once:
        result = ScoreRefreshScheduler().refresh_blocking()
        print(f"Refreshed {result.reviews_updated} reviews" if result.succeeded else result.error)
    else:
        try:
            asyncio.run(_serve(args.interval))
        except KeyboardInterrupt:
            pass
