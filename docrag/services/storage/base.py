"""
Document storage capability.

Stores hand out plain candidate dicts, one per searchable passage:

    {
        'candidate_id': 'chunk:42:0',
        'document_id': 42,
        'chunk_id': '42:0',          # None for whole-document candidates
        'chunk_index': 0,
        'file_name': 'Rossi_contract.pdf',
        'category': 'contracts',
        'owner_id': 'u1',
        'tenant_id': 't1',
        'visibility': 'private',
        'uploaded_at': datetime(...),
        'text': '...',
        'embedding': [...] or None,
    }

Records are read-only for the pipeline; every call returns fresh dicts.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from docrag.services.storage.filters import MetadataFilter


class SearchOptions(BaseModel):
    """Value object describing what to search and how many results to keep."""

    top_k: int = Field(default=10, ge=1, description="Number of results to return")
    min_similarity: float = Field(default=0.5, ge=0.0, le=1.0, description="Vector similarity floor")
    category: Optional[str] = Field(default=None, description="Exact category filter")
    owner_id: Optional[str] = Field(default=None, description="Requesting user; restricts to accessible documents")
    tenant_id: Optional[str] = Field(default=None, description="Tenant scope")
    visibility: Optional[List[str]] = Field(default=None, description="Allowed visibility scopes")
    document_ids: Optional[List[Any]] = Field(default=None, description="Restrict to these documents")
    filters: List[MetadataFilter] = Field(default_factory=list, description="Structured metadata filters")
    search_chunks: bool = Field(default=True, description="Search chunks where a document has them")


def is_accessible(document: Dict[str, Any], options: SearchOptions) -> bool:
    """Owner / tenant / visibility / category / id checks for in-process filtering."""
    if options.document_ids is not None and document.get("document_id") not in options.document_ids:
        return False

    if options.category and document.get("category") != options.category:
        return False

    visibility = document.get("visibility") or "private"
    if options.visibility and visibility not in options.visibility:
        return False

    if options.tenant_id is not None and visibility != "public":
        if document.get("tenant_id") != options.tenant_id:
            return False

    if options.owner_id is not None:
        if document.get("owner_id") == options.owner_id or visibility == "public":
            return True
        if visibility == "organization" and options.tenant_id is not None:
            return document.get("tenant_id") == options.tenant_id
        return False

    return True


def document_candidates(document: Dict[str, Any], search_chunks: bool = True) -> List[Dict[str, Any]]:
    """Expand a document record into candidate dicts (its chunks, or itself)."""
    base = {
        "document_id": document.get("document_id"),
        "file_name": document.get("file_name") or "",
        "category": document.get("category"),
        "owner_id": document.get("owner_id"),
        "tenant_id": document.get("tenant_id"),
        "visibility": document.get("visibility"),
        "uploaded_at": document.get("uploaded_at"),
    }

    chunks = document.get("chunks") or []
    if search_chunks and chunks:
        return [
            {
                **base,
                "candidate_id": f"chunk:{chunk['chunk_id']}",
                "chunk_id": chunk["chunk_id"],
                "chunk_index": chunk.get("chunk_index"),
                "text": chunk.get("chunk_text") or "",
                "embedding": list(chunk["embedding"]) if chunk.get("embedding") is not None else None,
            }
            for chunk in chunks
        ]

    return [{
        **base,
        "candidate_id": f"doc:{document.get('document_id')}",
        "chunk_id": None,
        "chunk_index": None,
        "text": document.get("text") or "",
        "embedding": list(document["embedding"]) if document.get("embedding") is not None else None,
    }]


class DocumentStore(ABC):
    """Read access to documents/chunks with optional filter and vector pushdown."""

    # True when vector_search runs inside the store
    supports_vector_pushdown: bool = False

    @abstractmethod
    async def fetch_candidates(self, options: SearchOptions, limit: int) -> List[Dict[str, Any]]:
        """Accessible, filter-matching candidates from the newest `limit` documents."""

    async def vector_search(
        self,
        query_embedding: List[float],
        options: SearchOptions,
        limit: int,
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Similarity search inside the store.

        Returns candidates carrying 'vector_score', or None when the store
        cannot push vector predicates down.
        """
        return None

    @abstractmethod
    async def get_documents(self, document_ids: List[Any]) -> List[Dict[str, Any]]:
        """Document records by id (unknown ids are skipped)."""

    @abstractmethod
    async def count_documents(self, options: Optional[SearchOptions] = None) -> int:
        """Number of documents visible under the given options."""

    async def close(self) -> None:
        """Release resources. Default is a no-op."""
