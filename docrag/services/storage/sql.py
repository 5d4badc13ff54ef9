"""
PostgreSQL + pgvector document store.

Owner/tenant/visibility/category/id filters and AND-only structured
filters are pushed down into SQL; vector similarity is computed by pgvector
(`cosine_distance`). Filter chains using OR/NOT are evaluated in-process
on the fetched rows.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from docrag.models.document import Document, DocumentChunk
from docrag.services.storage.base import DocumentStore, SearchOptions, document_candidates
from docrag.services.storage.filters import (
    FIELD_RECORD_KEYS,
    FilterOperator,
    LogicalOperator,
    MetadataFilter,
    matches_filters,
)

logger = logging.getLogger(__name__)

_COLUMNS = {
    "category": Document.category,
    "uploaded_at": Document.uploaded_at,
    "file_name": Document.file_name,
    "owner_id": Document.owner_id,
}


def _filter_clause(flt: MetadataFilter):
    """SQL expression for one filter, or None when it cannot be pushed down."""
    column = _COLUMNS.get(FIELD_RECORD_KEYS.get(flt.field, flt.field))
    if column is None:
        return None

    op = flt.operator
    value = flt.value
    if isinstance(value, str) and flt.field != "upload_date":
        column = func.lower(column)
        value = value.lower()

    if op == FilterOperator.EQUALS:
        return column == value
    if op == FilterOperator.NOT_EQUALS:
        return column != value
    if op == FilterOperator.GREATER_THAN:
        return column > value
    if op == FilterOperator.GREATER_THAN_OR_EQUAL:
        return column >= value
    if op == FilterOperator.LESS_THAN:
        return column < value
    if op == FilterOperator.LESS_THAN_OR_EQUAL:
        return column <= value
    if op == FilterOperator.CONTAINS:
        return column.contains(value)
    if op == FilterOperator.NOT_CONTAINS:
        return ~column.contains(value)
    if op == FilterOperator.STARTS_WITH:
        return column.startswith(value)
    if op == FilterOperator.ENDS_WITH:
        return column.endswith(value)
    if op in (FilterOperator.IN, FilterOperator.NOT_IN):
        values = [v.lower() if isinstance(v, str) else v for v in (value if isinstance(value, list) else [value])]
        clause = column.in_(values)
        return clause if op == FilterOperator.IN else ~clause
    return None


class SQLDocumentStore(DocumentStore):
    """
    Store backed by the documents / document_chunks tables.

    Usage:
    ------
    store = SQLDocumentStore(get_session_factory())
    candidates = await store.vector_search(query_embedding, options, limit=20)
    """

    supports_vector_pushdown = True

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def _access_clauses(self, options: SearchOptions) -> list:
        clauses = []

        if options.document_ids is not None:
            clauses.append(Document.id.in_(options.document_ids))
        if options.category:
            clauses.append(Document.category == options.category)
        if options.visibility:
            clauses.append(Document.visibility.in_(options.visibility))
        if options.tenant_id is not None:
            clauses.append(or_(Document.tenant_id == options.tenant_id, Document.visibility == "public"))
        if options.owner_id is not None:
            access = [Document.owner_id == options.owner_id, Document.visibility == "public"]
            if options.tenant_id is not None:
                access.append(and_(Document.visibility == "organization", Document.tenant_id == options.tenant_id))
            clauses.append(or_(*access))

        return clauses

    def _pushdown(self, options: SearchOptions) -> tuple[list, bool]:
        """SQL clauses for the filter chain, and whether the rest must run in-process."""
        filters = options.filters
        if any(f.logical_operator != LogicalOperator.AND for f in filters):
            return [], bool(filters)

        clauses = []
        residual = False
        for flt in filters:
            clause = _filter_clause(flt)
            if clause is None:
                residual = True
            else:
                clauses.append(clause)
        return clauses, residual

    async def fetch_candidates(self, options: SearchOptions, limit: int) -> List[Dict[str, Any]]:
        filter_clauses, residual = self._pushdown(options)

        query = (
            select(Document)
            .where(*self._access_clauses(options), *filter_clauses)
            .order_by(Document.uploaded_at.desc())
            .limit(limit)
        )

        async with self.session_factory() as session:
            documents = (await session.execute(query)).scalars().all()
            records = [d.to_record() for d in documents]

        if residual:
            records = [r for r in records if matches_filters(r, options.filters)]

        candidates = []
        for record in records:
            candidates.extend(document_candidates(record, options.search_chunks))
        return candidates

    async def vector_search(
        self,
        query_embedding: List[float],
        options: SearchOptions,
        limit: int,
    ) -> Optional[List[Dict[str, Any]]]:
        filter_clauses, residual = self._pushdown(options)
        access = self._access_clauses(options)

        if options.search_chunks:
            distance = DocumentChunk.embedding.cosine_distance(query_embedding).label("distance")
            query = (
                select(DocumentChunk, Document, distance)
                .join(Document, DocumentChunk.document_id == Document.id)
                .where(DocumentChunk.embedding.isnot(None), *access, *filter_clauses)
            )
        else:
            distance = Document.embedding.cosine_distance(query_embedding).label("distance")
            query = select(Document, distance).where(Document.embedding.isnot(None), *access, *filter_clauses)

        # distance = 1 - similarity
        query = query.where(distance <= 1.0 - options.min_similarity).order_by(distance).limit(limit)

        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()

        results = []
        for row in rows:
            if options.search_chunks:
                chunk, document, dist = row
                record = document.to_record()
                record["chunks"] = [chunk.to_record()]
            else:
                document, dist = row
                record = document.to_record()
                record["chunks"] = []

            if residual and not matches_filters(record, options.filters):
                continue

            candidate = document_candidates(record, options.search_chunks)[0]
            candidate["vector_score"] = max(0.0, 1.0 - float(dist))
            results.append(candidate)

        logger.debug(f"pgvector search returned {len(results)} candidates")
        return results

    async def get_documents(self, document_ids: List[Any]) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(select(Document).where(Document.id.in_(document_ids)))
            return [d.to_record() for d in result.scalars().all()]

    async def count_documents(self, options: Optional[SearchOptions] = None) -> int:
        query = select(func.count(Document.id))
        if options is not None:
            filter_clauses, _ = self._pushdown(options)
            query = query.where(*self._access_clauses(options), *filter_clauses)
        async with self.session_factory() as session:
            return int((await session.execute(query)).scalar_one())


def create_sql_store(session_factory: Optional[async_sessionmaker] = None) -> SQLDocumentStore:
    if session_factory is None:
        from docrag.db.session import get_session_factory
        session_factory = get_session_factory()
    return SQLDocumentStore(session_factory)
