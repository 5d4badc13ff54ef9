"""
Document storage.

- DocumentStore: read-only access contract used by the pipeline
- InMemoryDocumentStore: in-process filtering and scanning
- SQLDocumentStore: PostgreSQL/pgvector with filter and vector pushdown
"""

import logging
from typing import Optional

from docrag.core.config import settings
from docrag.services.storage.base import DocumentStore, SearchOptions
from docrag.services.storage.filters import (
    FilterOperator,
    FilterValueType,
    LogicalOperator,
    MetadataFilter,
    matches_filters,
)
from docrag.services.storage.memory import InMemoryDocumentStore

logger = logging.getLogger(__name__)

_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """SQL store when DATABASE_URL is set, otherwise the process-wide in-memory store."""
    global _document_store

    if _document_store is None:
        if settings.DATABASE_URL:
            from docrag.services.storage.sql import create_sql_store
            _document_store = create_sql_store()
        else:
            _document_store = InMemoryDocumentStore()
        logger.info(f"Using document store: {type(_document_store).__name__}")

    return _document_store


__all__ = [
    "DocumentStore",
    "SearchOptions",
    "InMemoryDocumentStore",
    "MetadataFilter",
    "FilterOperator",
    "FilterValueType",
    "LogicalOperator",
    "matches_filters",
    "get_document_store",
]
