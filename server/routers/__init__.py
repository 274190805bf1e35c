"""
API Routers
===========

FastAPI routers for different API endpoints.
"""

from .blueprints import router as blueprints_router

__all__ = [
    "blueprints_router",
]
