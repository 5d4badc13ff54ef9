"""
Search API Routes

- Hybrid search through the retrieval pipeline (no answer synthesis)
- Self-query search (filters extracted from the natural-language query)
- Filter registry listing
"""

import logging
from typing import List

from fastapi import APIRouter, HTTPException, status

from docrag.api.deps import Orchestrator, SelfQuery, pipeline_config
from docrag.core.exceptions import QueryValidationError
from docrag.schemas.rag import (
    FilterDefinitionResponse,
    SearchRequest,
    SearchResponse,
    SelfQueryRequest,
    SelfQueryResponse,
)
from docrag.services.rag.orchestrator import public_candidate
from docrag.services.storage.base import SearchOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["search"])


@router.post("", response_model=SearchResponse)
async def search(request: SearchRequest, orchestrator: Orchestrator, self_query: SelfQuery):
    """
    Ranked candidates for a query.

    Caller-supplied filters are validated strictly: an unknown field is
    ignored, an unsupported operator or malformed value is a 400.
    """
    try:
        cfg = pipeline_config(orchestrator.config, request.options, request.top_k)
        filters = self_query.validate_and_normalize_filters(
            [f.model_dump() for f in request.filters], strict=True
        )
        options = SearchOptions(
            top_k=request.top_k,
            min_similarity=cfg.min_similarity,
            owner_id=request.user_id,
            category=request.category,
            document_ids=request.document_ids or None,
            filters=filters,
        )

        outcome = await orchestrator.search(request.query, options, config=cfg)
        return SearchResponse(
            results=outcome['results'],
            total=len(outcome['results']),
            metadata=outcome['metadata'],
        )

    except QueryValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error searching: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Search failed: {str(e)}"
        )


@router.post("/self-query", response_model=SelfQueryResponse)
async def search_self_query(request: SelfQueryRequest, self_query: SelfQuery):
    """Extract filters from the query, then search the filtered candidates."""
    try:
        outcome = await self_query.execute_self_query(request.query, user_id=request.user_id, top_k=request.top_k)
        return SelfQueryResponse(
            results=[public_candidate(r) for r in outcome['results']],
            semantic_query=outcome['semantic_query'],
            applied_filters=[f.model_dump() for f in outcome['applied_filters']],
            statistics=outcome['statistics'],
        )

    except QueryValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error in self-query search: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Self-query search failed: {str(e)}"
        )


@router.get("/filters", response_model=List[FilterDefinitionResponse])
async def list_filters(self_query: SelfQuery):
    """Filterable fields with their types, operators and example phrasings."""
    return [d.model_dump() for d in self_query.get_available_filters()]
