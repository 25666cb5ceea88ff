"""Pytest fixtures for the review service."""
import os

# Must be set before review_api builds its engine and settings
os.environ.setdefault("REVIEWS_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REVIEWS_SCORE_REFRESH_ENABLED", "false")

from datetime import datetime, timedelta, UTC

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from review_api.app import app
from review_api.config import Settings, get_settings
from review_api.database import Base, get_db
from review_api.identity import Actor, get_clock
from review_api.ledger import VerificationLedger
from review_api.repository import ReviewRepository


# In-memory SQLite for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

VERIFIER_RIGHTS = frozenset({"review-submit", "review-verify", "review-flag"})
MODERATOR_RIGHTS = VERIFIER_RIGHTS | {"review-moderate"}


class FrozenClock:
    """Time source that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def override_get_db():
    """Override database dependency for testing."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


def make_settings(**overrides) -> Settings:
    values = {
        "rate_limit_per_hour": 100,
        "rate_limit_per_day": 1000,
        "flag_rate_limit_per_hour": 100,
        "vote_rate_limit_per_hour": 100,
        "score_refresh_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def registered(user_id: int, rights=VERIFIER_RIGHTS) -> Actor:
    return Actor(user_id=user_id, ip_hash=f"ip-{user_id}", rights=frozenset(rights))


def anonymous(ip_hash: str = "anon-ip", session_token=None) -> Actor:
    return Actor(
        session_token=session_token,
        ip_hash=ip_hash,
        rights=frozenset({"review-submit", "review-flag"}),
    )


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def repository(db_session, settings, clock):
    return ReviewRepository(db_session, settings, clock)


@pytest.fixture
def ledger(db_session, settings, clock):
    return VerificationLedger(db_session, settings, clock)


@pytest.fixture
def review_id(repository):
    """An active five-star review written by user 1 on page 10."""
    return repository.create_review(
        page_id=10,
        rating=5,
        reviewer_name="Alice",
        experience="Visited twice",
        review_text="Great place.",
        user_id=1,
    )


@pytest.fixture(scope="function")
def client(db_session, settings, clock):
    """Test client with database, clock and settings overrides."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_settings] = lambda: settings

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    def build(user_id: int, rights=None, token=None):
        headers = {"X-User-Id": str(user_id)}
        if rights is not None:
            headers["X-User-Rights"] = ",".join(sorted(rights))
        if token is not None:
            headers["X-Session-Token"] = token
        return headers
    return build


@pytest.fixture
def file_sessions(tmp_path):
    """Session factory on a file-backed database, so sessions get separate connections."""
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'reviews.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=file_engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    file_engine.dispose()
