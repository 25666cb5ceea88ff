"""
Routes package for the Review Verification API.
"""

from review_api.routes.maintenance import router as maintenance_router
from review_api.routes.reviews import router as reviews_router
from review_api.routes.verification import router as verification_router

__all__ = ["reviews_router", "verification_router", "maintenance_router"]
