"""
API routes initialization.

This module aggregates all API routers and provides a single router
to include in the main application.
"""

from fastapi import APIRouter

from chronos.api.routes import content, search

# Create main API router
api_router = APIRouter()

# Content pipeline routes
api_router.include_router(content.router)

# Search routes
api_router.include_router(search.router)
