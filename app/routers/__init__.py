"""
Routers package for API endpoints.

This package contains all API route handlers organized by functionality.
"""

from .videos import router as videos_router
from .pipeline import router as pipeline_router
from .status import router as status_router
from .fragments import router as fragments_router

__all__ = [
    "videos_router",
    "pipeline_router",
    "status_router",
    "fragments_router",
]
