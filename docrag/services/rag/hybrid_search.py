"""
Hybrid Search

This module implements retrieval combining:
1. Vector similarity (cosine over document/chunk embeddings)
2. Lexical keyword scoring (filename, category, body text)

Scores are tracked separately on every candidate ('vector_score',
'lexical_score', 'combined_score', 'vector_rank', 'lexical_rank', 'rank')
so later stages can refine without losing them.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from docrag.core.exceptions import ProviderError, QueryValidationError
from docrag.services.providers.base import EmbeddingProvider, with_timeout
from docrag.services.rag.cache import CacheService, hash_key
from docrag.services.rag.scoring import LexicalScorer, cosine_similarity
from docrag.services.storage.base import DocumentStore, SearchOptions

logger = logging.getLogger(__name__)

RRF_K = 60


def _recency(candidate: Dict[str, Any]) -> float:
    uploaded_at = candidate.get("uploaded_at")
    if isinstance(uploaded_at, datetime):
        return uploaded_at.timestamp()
    if isinstance(uploaded_at, str):
        try:
            return datetime.fromisoformat(uploaded_at).timestamp()
        except ValueError:
            return 0.0
    return 0.0


def ranking_key(candidate: Dict[str, Any]):
    """Combined score, then vector score, then most recent upload."""
    return (
        candidate.get("combined_score", 0.0),
        candidate.get("vector_score", 0.0),
        _recency(candidate),
    )


class HybridSearchService:
    """
    Hybrid retrieval combining vector and lexical signals.

    Retrieval Pipeline:
    -------------------
    1. Query embedding (skipped when a pre-computed one is supplied; on
       provider failure the search falls back to lexical only)

    2. Vector stage
       - Pushed down to the store when it supports it, otherwise a bounded
         scan of the newest max(top_k * 10, 100) documents
       - Candidates below min_similarity are dropped
       - Keeps top_k * candidate_multiplier for later re-ranking

    3. Lexical stage
       - Keywords shorter than 2 characters are ignored
       - Skipped entirely when no keywords remain

    4. Score fusion
       - Weighted sum (default 0.6 vector / 0.4 lexical), or RRF (k=60)
       - When only one stage ran, its score is the combined score
       - Ties: vector score, then newest upload

    Usage:
    ------
    search = HybridSearchService(store, embedder)

    results = await search.search(
        "penalty clause in the Rossi contract",
        SearchOptions(top_k=5, owner_id="u1")
    )
    """

    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingProvider,
        vector_weight: float = 0.6,
        lexical_weight: float = 0.4,
        candidate_multiplier: int = 2,
        fusion_method: str = "weighted",
        lexical_scorer: Optional[LexicalScorer] = None,
        provider_timeout: Optional[float] = None,
        cache: Optional[CacheService] = None
    ):
        """
        Args:
            store: Document store
            embedder: Embedding provider for the query
            vector_weight: Weight of the vector score (default: 0.6)
            lexical_weight: Weight of the lexical score (default: 0.4)
            candidate_multiplier: Per-stage over-fetch factor (default: 2)
            fusion_method: "weighted" or "rrf"
            lexical_scorer: Custom keyword scorer
            provider_timeout: Seconds allowed for the query embedding call
            cache: Optional cache for raw search results
        """
        self.store = store
        self.embedder = embedder
        self.vector_weight = vector_weight
        self.lexical_weight = lexical_weight
        self.candidate_multiplier = max(1, candidate_multiplier)
        self.fusion_method = fusion_method
        self.lexical_scorer = lexical_scorer or LexicalScorer()
        self.provider_timeout = provider_timeout
        self.cache = cache

        total_weight = vector_weight + lexical_weight
        if total_weight <= 0:
            raise ValueError("Vector and lexical weights must not both be zero")
        if abs(total_weight - 1.0) > 0.01:
            logger.warning(
                f"Weights sum to {total_weight}, not 1.0. "
                f"Normalizing: vector={vector_weight/total_weight:.2f}, "
                f"lexical={lexical_weight/total_weight:.2f}"
            )
            self.vector_weight = vector_weight / total_weight
            self.lexical_weight = lexical_weight / total_weight

    async def search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        query_embedding: Optional[List[float]] = None
    ) -> List[Dict[str, Any]]:
        """
        Search for the candidates most relevant to the query.

        Args:
            query: Natural-language query
            options: Top-k, similarity floor and filters
            query_embedding: Pre-computed query vector (skips the provider call)

        Returns:
            At most options.top_k candidate dicts sorted by 'combined_score'.
            An empty list means "no relevant context", not a failure.

        Raises:
            QueryValidationError: query is empty and no embedding was supplied
        """
        outcome = await self.search_with_status(query, options, query_embedding)
        return outcome['results']

    async def search_with_status(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        query_embedding: Optional[List[float]] = None
    ) -> Dict[str, Any]:
        """
        Same as search(), also reporting whether the vector stage was lost.

        Returns:
            {'results': [...], 'vector_degraded': bool}. vector_degraded is
            True when the query embedding failed and the results are
            lexical-only; such results are never written to the cache.
        """
        options = options or SearchOptions()
        if (not query or not query.strip()) and query_embedding is None:
            raise QueryValidationError("Query must not be empty")

        cache_parts = (
            query,
            options.model_dump(mode="json"),
            hash_key(query_embedding) if query_embedding is not None else None,
        )
        if self.cache is not None:
            cached = await self.cache.get_search_results("hybrid", *cache_parts)
            if cached is not None:
                return {'results': cached, 'vector_degraded': False}

        logger.info(f"Hybrid search: top_k={options.top_k}, min_similarity={options.min_similarity}")

        vector_degraded = False
        if query_embedding is None:
            query_embedding = await self._embed_query(query)
            vector_degraded = query_embedding is None

        stage_limit = options.top_k * self.candidate_multiplier
        pool_limit = max(options.top_k * 10, 100)
        pool: Optional[List[Dict[str, Any]]] = None

        # Step 1: Vector stage
        vector_results: Optional[List[Dict[str, Any]]] = None
        if query_embedding is not None:
            if self.store.supports_vector_pushdown:
                vector_results = await self.store.vector_search(query_embedding, options, stage_limit)
            if vector_results is None:
                pool = await self.store.fetch_candidates(options, pool_limit)
                vector_results = self._score_vectors(query_embedding, pool, options.min_similarity, stage_limit)
            logger.debug(f"Vector stage returned {len(vector_results)} candidates")

        # Step 2: Lexical stage
        keywords = self.lexical_scorer.extract_keywords(query or "")
        lexical_results: Optional[List[Dict[str, Any]]] = None
        if keywords:
            if pool is None:
                pool = await self.store.fetch_candidates(options, pool_limit)
            lexical_results = self._score_lexical(keywords, pool, stage_limit)
            logger.debug(f"Lexical stage returned {len(lexical_results)} candidates for {len(keywords)} keywords")
        else:
            logger.debug("No usable keywords; lexical stage skipped")

        # Step 3: Fuse
        merged = self._merge(vector_results, lexical_results)

        # Step 4: Rank and truncate
        ranked = sorted(merged, key=ranking_key, reverse=True)[:options.top_k]
        for i, candidate in enumerate(ranked, 1):
            candidate["rank"] = i

        logger.info(f"Hybrid search returned {len(ranked)} results (vector_degraded={vector_degraded})")

        if self.cache is not None and not vector_degraded:
            await self.cache.set_search_results("hybrid", ranked, *cache_parts)

        return {'results': ranked, 'vector_degraded': vector_degraded}

    async def vector_search(
        self,
        query_embedding: List[float],
        options: Optional[SearchOptions] = None
    ) -> List[Dict[str, Any]]:
        """Vector-only search with an explicit embedding (used by HyDE)."""
        options = options or SearchOptions()

        results = None
        if self.store.supports_vector_pushdown:
            results = await self.store.vector_search(query_embedding, options, options.top_k)
        if results is None:
            pool = await self.store.fetch_candidates(options, max(options.top_k * 10, 100))
            results = self._score_vectors(query_embedding, pool, options.min_similarity, options.top_k)

        for i, candidate in enumerate(results, 1):
            candidate["combined_score"] = candidate["vector_score"]
            candidate["rank"] = i
        return results

    async def _embed_query(self, query: str) -> Optional[List[float]]:
        try:
            return await with_timeout(self.embedder.embed(query), self.provider_timeout, self.embedder.name)
        except ProviderError as e:
            logger.warning(f"Query embedding failed ({e}); falling back to lexical search")
            return None

    def _score_vectors(
        self,
        query_embedding: List[float],
        pool: List[Dict[str, Any]],
        min_similarity: float,
        limit: int
    ) -> List[Dict[str, Any]]:
        scored = []
        for candidate in pool:
            embedding = candidate.get("embedding")
            if not embedding:
                # No embedding: lexical scoring may still pick it up
                continue
            similarity = max(0.0, cosine_similarity(query_embedding, embedding))
            if similarity >= min_similarity:
                scored.append({**candidate, "vector_score": similarity})

        scored.sort(key=lambda c: (c["vector_score"], _recency(c)), reverse=True)
        return scored[:limit]

    def _score_lexical(
        self,
        keywords: List[str],
        pool: List[Dict[str, Any]],
        limit: int
    ) -> List[Dict[str, Any]]:
        scored = []
        for candidate in pool:
            score = self.lexical_scorer.score(keywords, candidate)
            if score > 0:
                scored.append({**candidate, "lexical_score": score})

        scored.sort(key=lambda c: (c["lexical_score"], _recency(c)), reverse=True)
        return scored[:limit]

    def _merge(
        self,
        vector_results: Optional[List[Dict[str, Any]]],
        lexical_results: Optional[List[Dict[str, Any]]]
    ) -> List[Dict[str, Any]]:
        """
        Merge both stages by candidate_id and compute 'combined_score'.

        A stage that did not run (None) does not dilute the other: the
        combined score is then the running stage's score alone.
        """
        merged: Dict[str, Dict[str, Any]] = {}

        for rank, result in enumerate(vector_results or [], 1):
            merged[result["candidate_id"]] = {
                **result,
                "vector_score": result.get("vector_score", 0.0),
                "lexical_score": 0.0,
                "vector_rank": rank,
                "lexical_rank": None,
            }

        for rank, result in enumerate(lexical_results or [], 1):
            entry = merged.get(result["candidate_id"])
            if entry is None:
                merged[result["candidate_id"]] = {
                    **result,
                    "vector_score": 0.0,
                    "lexical_score": result["lexical_score"],
                    "vector_rank": None,
                    "lexical_rank": rank,
                }
            else:
                entry["lexical_score"] = result["lexical_score"]
                entry["lexical_rank"] = rank

        vector_ran = vector_results is not None
        lexical_ran = lexical_results is not None

        for entry in merged.values():
            if vector_ran and not lexical_ran:
                entry["combined_score"] = entry["vector_score"]
            elif lexical_ran and not vector_ran:
                entry["combined_score"] = entry["lexical_score"]
            elif self.fusion_method == "rrf":
                entry["combined_score"] = sum(
                    1.0 / (RRF_K + r) for r in (entry["vector_rank"], entry["lexical_rank"]) if r is not None
                )
            else:
                entry["combined_score"] = (
                    self.vector_weight * entry["vector_score"] +
                    self.lexical_weight * entry["lexical_score"]
                )

        return list(merged.values())


def create_hybrid_search(
    store: DocumentStore,
    embedder: EmbeddingProvider,
    config=None,
    cache: Optional[CacheService] = None
) -> HybridSearchService:
    """
    Create a hybrid search service from a RAGPipelineConfig (or defaults).

    Example:
        >>> search = create_hybrid_search(store, embedder, RAGPipelineConfig.from_settings())
        >>> results = await search.search("query", SearchOptions(top_k=5))
    """
    if config is None:
        return HybridSearchService(store, embedder, cache=cache)
    return HybridSearchService(
        store,
        embedder,
        vector_weight=config.vector_weight,
        lexical_weight=config.lexical_weight,
        candidate_multiplier=config.candidate_multiplier,
        fusion_method=config.fusion_method,
        provider_timeout=config.provider_timeout_seconds,
        cache=cache,
    )
