"""
API route modules.

Import all route modules here for easy access.
"""

from docrag.api.routes import chat, documents, quality, search

__all__ = ["chat", "documents", "quality", "search"]
