"""
API routes for score maintenance and monitoring.
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from review_api.config import Settings, get_settings
from review_api.database import Review, VerificationVote, get_db
from review_api.errors import Unauthorized
from review_api.identity import Clock, get_clock
from review_api.ledger import VerificationLedger
from review_api.models import HealthResponse, RefreshResultResponse, RefreshScoresRequest
from review_api.scheduler import get_scheduler


router = APIRouter(prefix="/maintenance", tags=["Maintenance"])


# =============================================================================
# Refresh Scores
# =============================================================================


@router.post("/refresh-scores", response_model=RefreshResultResponse)
def refresh_scores(
    request: RefreshScoresRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
    x_api_key: Optional[str] = Header(default=None)
) -> RefreshResultResponse:
    """
    Recompute verification and sort scores of active reviews.

    Sort scores decay with review age, so this normally runs on a schedule;
    this endpoint triggers a run by hand. Requires API key if configured.
    """
    if settings.api_key and x_api_key != settings.api_key:
        raise Unauthorized("Invalid API key")

    start_time = time.time()

    updated = VerificationLedger(db, settings, clock).refresh_sort_scores(
        batch_size=request.batch_size,
        page_id=request.page_id
    )

    return RefreshResultResponse(
        success=True,
        reviews_updated=updated,
        duration_seconds=time.time() - start_time,
        refreshed_at=clock(),
    )


@router.get("/scheduler")
def get_scheduler_status():
    """Get the status of the periodic score refresh."""
    return get_scheduler().get_status()


# =============================================================================
# Health Check
# =============================================================================


@router.get("/health", response_model=HealthResponse)
def health_check(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """
    Health check endpoint.

    Returns service health status and basic statistics.
    """
    try:
        db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError:
        db_connected = False

    if not db_connected:
        return HealthResponse(
            status="degraded",
            version=settings.app_version,
            database_connected=False,
        )

    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        database_connected=True,
        reviews_count=db.query(func.count(Review.id)).scalar() or 0,
        votes_count=db.query(func.count(VerificationVote.id)).scalar() or 0,
    )
