"""
Review Verification API Service - FastAPI Application.

REST API for star-rated reviews on wiki pages, with community
verification votes that feed each review's ranking.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from review_api.config import get_settings
from review_api.database import init_db
from review_api.errors import ServiceError
from review_api.routes import maintenance_router, reviews_router, verification_router
from review_api.scheduler import start_scheduler, stop_scheduler


settings = get_settings()

API_PREFIX = "/api"

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info(f"{settings.app_name} {settings.app_version} started")

    if settings.score_refresh_enabled:
        start_scheduler()

    yield

    stop_scheduler()
    logger.info(f"{settings.app_name} stopped")


app = FastAPI(
    title=settings.app_name,
    description="""
## Review Verification API

Readers leave 1-5 star reviews on wiki pages. Other registered readers
then vote on whether each review is accurate.

### Key Concepts

- **Reviews**: A rating plus free text, written by a registered user or
  anonymously (with an optional session token for later edits)
- **Verification votes**: One verdict per user per review, from "true"
  to "false", or "inconclusive"
- **Sort score**: Blend of verification score, recency decay and a
  confidence bonus, persisted on every vote

### API Flow

1. A reader submits a review (POST /api/reviews)
2. Other readers vote on it (PUT /api/verification/{id})
3. Listings order by the stored sort score (GET /api/reviews/page/{id})
4. Scores are refreshed periodically as reviews age
    """,
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Render typed service failures as JSON with their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


for router in (reviews_router, verification_router, maintenance_router):
    app.include_router(router, prefix=API_PREFIX)


@app.get("/")
def root():
    """Service name, version and where to find things."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": app.docs_url,
        "endpoints": {
            "reviews": f"{API_PREFIX}/reviews",
            "verification": f"{API_PREFIX}/verification",
            "maintenance": f"{API_PREFIX}/maintenance",
            "health": f"{API_PREFIX}/maintenance/health",
        }
    }


@app.get("/health")
def liveness():
    """Liveness probe; does not touch the database."""
    return {"status": "ok", "version": settings.app_version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "review_api.app:app",
        host="0.0.0.0",
        port=8002,
        reload=settings.debug
    )
