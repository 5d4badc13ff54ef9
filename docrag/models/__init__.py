"""
Database Models

Import models from here so SQLAlchemy registers every table:

    from docrag.models import Document, DocumentChunk
"""

from docrag.models.document import Document, DocumentChunk

__all__ = ["Document", "DocumentChunk"]
