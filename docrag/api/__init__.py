"""
API routes initialization.

This module aggregates all API routers and provides a single router
to include in the main application.
"""

from fastapi import APIRouter

from docrag.api.routes import chat, documents, quality, search

# Create main API router
api_router = APIRouter()

# Search routes
api_router.include_router(search.router)

# Chat routes
api_router.include_router(chat.router)

# Quality verification routes
api_router.include_router(quality.router)

# Document classification routes
api_router.include_router(documents.router)
