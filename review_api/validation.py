"""
Validation and sanitization of review content.

Runs before content reaches the repository; the repository and the
scoring core assume what they receive is already clean and in bounds.
"""

import re
from typing import Dict, Optional

from review_api.config import Settings, get_settings
from review_api.errors import ValidationFailed


_URL_RE = re.compile(r"https?://[^\s<>\[\]]+")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class ReviewValidator:
    """Bounds checks and cleanup driven by the configured limits."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def validate_rating(self, rating: Optional[int]) -> int:
        if rating is None:
            raise ValidationFailed("rating", "A rating is required")
        if not 1 <= int(rating) <= 5:
            raise ValidationFailed("rating", "Rating must be between 1 and 5")
        return int(rating)

    def validate_name(self, name: str) -> str:
        name = self.sanitize(name)
        if not name:
            raise ValidationFailed("name", "A name is required")
        if len(name) > self.settings.max_name_length:
            raise ValidationFailed(
                "name", "Name is too long", max_length=self.settings.max_name_length
            )
        return name

    def validate_experience(self, experience: str) -> str:
        experience = self.sanitize(experience)
        if not experience:
            raise ValidationFailed("experience", "Experience is required")
        if len(experience) > self.settings.max_experience_length:
            raise ValidationFailed(
                "experience",
                "Experience is too long",
                max_length=self.settings.max_experience_length,
            )
        return experience

    def validate_text(self, text: str) -> str:
        text = self.sanitize(text)

        if self.settings.require_review_text:
            if not text:
                raise ValidationFailed("text", "Review text is required")
            if len(text) < self.settings.min_review_length:
                raise ValidationFailed(
                    "text",
                    "Review text is too short",
                    min_length=self.settings.min_review_length,
                )

        if len(text) > self.settings.max_review_length:
            raise ValidationFailed(
                "text", "Review text is too long", max_length=self.settings.max_review_length
            )
        return self.process_links(text)

    def validate(self, rating: int, name: str, experience: str, text: str) -> Dict:
        """Validate a complete submission, returning the cleaned fields."""
        return {
            "rating": self.validate_rating(rating),
            "reviewer_name": self.validate_name(name),
            "experience": self.validate_experience(experience),
            "review_text": self.validate_text(text),
        }

    def validate_changes(
        self,
        rating: Optional[int] = None,
        name: Optional[str] = None,
        experience: Optional[str] = None,
        text: Optional[str] = None
    ) -> Dict:
        """Validate only the fields present in a partial update."""
        changes = {}
        if rating is not None:
            changes["rating"] = self.validate_rating(rating)
        if name is not None:
            changes["reviewer_name"] = self.validate_name(name)
        if experience is not None:
            changes["experience"] = self.validate_experience(experience)
        if text is not None:
            changes["review_text"] = self.validate_text(text)

        if not changes:
            raise ValidationFailed("changes", "No changes were submitted")
        return changes

    def process_links(self, text: str) -> str:
        if self.settings.link_policy == "strip":
            return _URL_RE.sub("[link removed]", text)
        return text

    @staticmethod
    def sanitize(text: str) -> str:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = _CONTROL_RE.sub("", text).strip()
        return _BLANK_LINES_RE.sub("\n\n", text)
