"""
Review Verification API Service.

Star-rated reviews on wiki pages with community verification.

The service allows users to:
- Submit, edit and delete reviews, registered or anonymously
- Cast verification verdicts on other people's reviews
- List reviews ordered by a ranking that blends verification and recency
- Flag reviews for moderation
"""

__version__ = "0.1.0"
