"""
In-process document store.

Used when no database is configured and throughout the tests. Filtering
happens in Python; vector similarity is left to the hybrid search service.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from docrag.services.storage.base import DocumentStore, SearchOptions, document_candidates, is_accessible
from docrag.services.storage.filters import matches_filters

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed store.

    Usage:
    ------
    store = InMemoryDocumentStore()
    store.add_document(1, text="...", file_name="Rossi_contract.pdf", embedding=[...])
    store.replace_chunks(1, [{"chunk_text": "...", "embedding": [...]}])
    """

    def __init__(self):
        self._documents: Dict[Any, Dict[str, Any]] = {}

    def add_document(
        self,
        document_id: Any,
        text: str,
        file_name: str,
        category: Optional[str] = None,
        owner_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        visibility: str = "private",
        embedding: Optional[List[float]] = None,
        uploaded_at: Optional[datetime] = None,
        chunks: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Insert or replace a document record."""
        document = {
            "document_id": document_id,
            "owner_id": owner_id,
            "tenant_id": tenant_id,
            "file_name": file_name,
            "category": category,
            "text": text,
            "embedding": list(embedding) if embedding is not None else None,
            "visibility": visibility,
            "uploaded_at": _as_utc(uploaded_at) if uploaded_at is not None else datetime.now(timezone.utc),
            "chunks": [],
        }
        self._documents[document_id] = document
        if chunks:
            self.replace_chunks(document_id, chunks)
        return copy.deepcopy(document)

    def replace_chunks(self, document_id: Any, chunks: List[Dict[str, Any]]) -> None:
        """
        Replace a document's chunks as one set.

        Chunk indices are reassigned 0..n-1 so the sequence stays gapless.
        """
        document = self._documents[document_id]
        new_chunks = []
        offset = 0
        for index, chunk in enumerate(chunks):
            chunk_text = chunk.get("chunk_text") or ""
            start = chunk.get("start_offset", offset)
            end = chunk.get("end_offset", start + len(chunk_text))
            new_chunks.append({
                "chunk_id": f"{document_id}:{index}",
                "document_id": document_id,
                "chunk_index": index,
                "chunk_text": chunk_text,
                "start_offset": start,
                "end_offset": end,
                "embedding": list(chunk["embedding"]) if chunk.get("embedding") is not None else None,
                "token_count": chunk.get("token_count", int(len(chunk_text) * 0.25)),
            })
            offset = end
        document["chunks"] = new_chunks

    def update_metadata(self, document_id: Any, category: Optional[str] = None, visibility: Optional[str] = None) -> None:
        """Edit category/visibility; embeddings stay valid."""
        document = self._documents[document_id]
        if category is not None:
            document["category"] = category
        if visibility is not None:
            document["visibility"] = visibility

    def remove_document(self, document_id: Any) -> bool:
        return self._documents.pop(document_id, None) is not None

    def _visible(self, options: SearchOptions) -> List[Dict[str, Any]]:
        documents = [
            d for d in self._documents.values()
            if is_accessible(d, options) and matches_filters(d, options.filters)
        ]
        documents.sort(key=lambda d: d["uploaded_at"], reverse=True)
        return documents

    async def fetch_candidates(self, options: SearchOptions, limit: int) -> List[Dict[str, Any]]:
        documents = self._visible(options)[:limit]
        candidates = []
        for document in documents:
            candidates.extend(document_candidates(document, options.search_chunks))
        logger.debug(f"In-memory store returned {len(candidates)} candidates from {len(documents)} documents")
        return candidates

    async def get_documents(self, document_ids: List[Any]) -> List[Dict[str, Any]]:
        return [copy.deepcopy(self._documents[i]) for i in document_ids if i in self._documents]

    async def count_documents(self, options: Optional[SearchOptions] = None) -> int:
        if options is None:
            return len(self._documents)
        return len(self._visible(options))
