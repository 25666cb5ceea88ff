"""
Configuration settings for the Review Verification API.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="REVIEWS_")

    # API Settings
    app_name: str = "Review Verification API"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./reviews.db"

    # Ranking weights (sort_score = vw * verification + rw * recency + bonus)
    sort_verification_weight: float = Field(default=0.6, ge=0)
    sort_recency_weight: float = Field(default=0.3, ge=0)
    sort_recency_half_life_days: float = Field(default=30.0, gt=0)
    sort_confidence_threshold: int = Field(default=10, gt=0)
    sort_confidence_weight: float = Field(default=0.1, ge=0)

    # Stale reviews get an extra multiplicative penalty on recency
    stale_threshold_days: float = Field(default=365.0, ge=0)
    stale_penalty: float = Field(default=0.5, ge=0, le=1)

    # Below this many votes the status is "pending" and counts are hidden
    verification_pending_threshold: int = Field(default=3, ge=1)

    # Review content bounds
    max_name_length: int = 100
    max_experience_length: int = 200
    max_review_length: int = 5000
    min_review_length: int = 0
    require_review_text: bool = False
    link_policy: Literal["allow", "strip"] = "allow"
    allow_anonymous: bool = True

    # Rate limits
    rate_limit_per_hour: int = 5
    rate_limit_per_day: int = 20
    flag_rate_limit_per_hour: int = 10
    vote_rate_limit_per_hour: int = 60

    # Vote mutations retried this many times on a concurrent-write conflict
    vote_max_retries: int = Field(default=3, ge=1)

    # Periodic sort_score refresh (recency decays as reviews age)
    score_refresh_enabled: bool = True
    score_refresh_interval_minutes: int = 60
    score_refresh_batch_size: int = 500

    # Identity
    ip_hash_salt: str = "change-me"
    registered_rights: str = "review-submit,review-verify,review-flag"
    anonymous_rights: str = "review-submit,review-flag"

    # API Security
    api_key: Optional[str] = None  # Optional API key for maintenance endpoints and identity headers
    allowed_origins: str = "http://localhost:8000,http://localhost:3000"

    # Logging
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
