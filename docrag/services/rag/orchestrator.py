"""
RAG Orchestrator

Sequences the retrieval stages into one request/response cycle:

    AnalyzeQuery -> Retrieve -> ReRank (+ MMR) -> Compress -> Synthesize -> (async) Verify

Each cacheable stage looks up a key derived from its inputs first; a hit is
recorded in the response metadata ('<stage>_cached') and the stage is
skipped. Failed stages are never cached.

Enhancement stages (HyDE, rewriting, re-ranking, MMR, compression) degrade
to their unmodified input on failure. Load-bearing stages (retrieval,
synthesis) degrade to an explicit "could not answer" text. Only input
errors (empty query) are raised to the caller.
"""

import asyncio
import logging
import time
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from docrag.core.config import RAGPipelineConfig, settings
from docrag.core.exceptions import QueryValidationError
from docrag.services.providers.base import EmbeddingProvider, LanguageModelProvider, with_timeout
from docrag.services.rag.cache import (
    COMPRESSION_PREFIX,
    QUERY_ANALYSIS_PREFIX,
    RERANKING_PREFIX,
    RETRIEVAL_PREFIX,
    CacheService,
)
from docrag.services.rag.compression import ContextualCompressionService, estimate_token_count
from docrag.services.rag.generator import APPROVAL_KEYWORD, RAGGenerator
from docrag.services.rag.hybrid_search import create_hybrid_search
from docrag.services.rag.hyde import HyDEService
from docrag.services.rag.mmr import MMRService
from docrag.services.rag.quality import QualityService
from docrag.services.rag.query_rewriting import QueryRewritingService
from docrag.services.rag.reranker import CrossEncoderScorer, ReRankingService
from docrag.services.storage.base import DocumentStore, SearchOptions

logger = logging.getLogger(__name__)

NO_DOCUMENTS_ANSWER = "I could not find any relevant documents to answer your question."
GENERATION_FAILED_ANSWER = (
    "I could not generate an answer right now because the language model is unavailable. "
    "Please try again later."
)
END_MARKER = "[DONE]"

# Keys never returned to callers
_INTERNAL_KEYS = ("embedding",)


def validate_query(query: Optional[str]) -> str:
    """Reject empty queries before any provider is called."""
    if query is None or not query.strip():
        raise QueryValidationError("Query must not be empty")
    return query.strip()


def public_candidate(candidate: Dict[str, Any]) -> Dict[str, Any]:
    """Candidate without internal fields (embedding vectors)."""
    return {k: v for k, v in candidate.items() if k not in _INTERNAL_KEYS}


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class _Stages:
    """Stage services built from one request's RAGPipelineConfig."""

    def __init__(self, orchestrator: "RAGOrchestrator", cfg: RAGPipelineConfig):
        timeout = cfg.provider_timeout_seconds
        self.search = create_hybrid_search(orchestrator.store, orchestrator.embedder, cfg)
        self.hyde = HyDEService(
            self.search,
            orchestrator.embedder,
            orchestrator.language_model,
            enabled=cfg.enable_hyde,
            num_documents=cfg.hyde_num_documents,
            default_weight=cfg.hyde_weight,
            provider_timeout=timeout,
        )
        self.rewriting = QueryRewritingService(orchestrator.language_model, provider_timeout=timeout)
        self.reranker = ReRankingService(
            cross_encoder=orchestrator.cross_encoder,
            language_model=orchestrator.language_model,
            enabled=cfg.enable_reranking,
            strategy=cfg.rerank_strategy,
            max_candidates=cfg.max_candidates,
            cross_encoder_weight=cfg.cross_encoder_weight,
            language_model_weight=cfg.language_model_weight,
            min_relevance_score=cfg.min_relevance_score,
            provider_timeout=timeout,
        )
        self.mmr = MMRService(default_lambda=cfg.mmr_lambda)
        self.compression = ContextualCompressionService(
            orchestrator.embedder,
            enabled=cfg.enable_contextual_compression,
            enable_deduplication=False,
            dedup_threshold=cfg.dedup_threshold,
            provider_timeout=timeout,
        )
        self.generator = RAGGenerator(
            orchestrator.language_model,
            max_tokens=settings.ANTHROPIC_MAX_TOKENS,
            provider_timeout=timeout,
        )


class RAGOrchestrator:
    """
    Enhanced RAG pipeline.

    The pipeline configuration is resolved once per request (explicit
    `config` argument, else the orchestrator default) and every stage
    service is built from it, so concurrent requests with different
    configurations never share mutable state. Only the cache is shared.

    Metadata keys:
    --------------
    query_analysis_cached, rewritten_query, query_type, hyde_used,
    hyde_confidence, retrieval_cached, retrieval_method
    (hyde | standard | standard_fallback), vector_degraded, candidates_retrieved,
    reranking_enabled, reranking_cached, reranking_fallback, mmr_enabled,
    compression_enabled, compression_cached, original_tokens,
    compressed_tokens, refinement_iterations, quality_check_scheduled and
    '<stage>_time_ms' timings.

    Usage:
    ------
    orchestrator = RAGOrchestrator(store, embedder, language_model, cache=cache)

    result = await orchestrator.generate_response("What is the Rossi penalty clause?", user_id="u1")
    result['answer'], result['sources'], result['metadata']

    async for fragment in orchestrator.generate_streaming_response(query, user_id="u1"):
        print(fragment, end="")
    """

    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingProvider,
        language_model: LanguageModelProvider,
        cache: Optional[CacheService] = None,
        cross_encoder: Optional[CrossEncoderScorer] = None,
        quality_dispatcher: Optional[Callable[[str, str, List[str]], Any]] = None,
        config: Optional[RAGPipelineConfig] = None
    ):
        """
        Args:
            store: Document store
            embedder: Embedding provider
            language_model: Language model provider
            cache: Shared cache (no caching when None)
            cross_encoder: Second-pass scorer for re-ranking
            quality_dispatcher: Called with (query, answer, source_texts) to
                schedule verification; defaults to Celery or an asyncio task
            config: Default pipeline configuration
        """
        self.store = store
        self.embedder = embedder
        self.language_model = language_model
        self.cache = cache
        self.cross_encoder = cross_encoder
        self.quality_dispatcher = quality_dispatcher
        self.config = config or RAGPipelineConfig.from_settings()
        self._background_tasks: Set[asyncio.Task] = set()

    # ========================================
    # Entry points
    # ========================================

    async def search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        config: Optional[RAGPipelineConfig] = None
    ) -> Dict[str, Any]:
        """
        Retrieval without synthesis: analyze, retrieve, re-rank, MMR.

        Returns:
            {'results': [...], 'metadata': {...}}

        Raises:
            QueryValidationError: empty query
        """
        query = validate_query(query)
        cfg = config or self.config
        options = options or SearchOptions(top_k=cfg.top_k, min_similarity=cfg.min_similarity)
        stages = _Stages(self, cfg)
        metadata: Dict[str, Any] = {}
        start = time.perf_counter()

        analysis = await self._analyze(stages, cfg, query, None, metadata)
        candidates = await self._retrieve(stages, cfg, analysis, options, metadata)
        candidates = await self._rerank(stages, cfg, query, candidates, options.top_k, metadata)

        metadata['total_time_ms'] = _elapsed_ms(start)
        return {'results': [public_candidate(c) for c in candidates], 'metadata': metadata}

    async def generate_response(
        self,
        query: str,
        user_id: Optional[str] = None,
        conversation_id: Optional[Any] = None,
        document_ids: Optional[List[Any]] = None,
        top_k: Optional[int] = None,
        config: Optional[RAGPipelineConfig] = None,
        conversation_history: Optional[List[Dict[str, str]]] = None
    ) -> Dict[str, Any]:
        """
        Full blocking pipeline.

        Returns:
            {
                'answer': str,
                'sources': [...],
                'source_documents': [...],
                'conversation_id': ...,
                'response_time_ms': int,
                'metadata': {...}
            }

        Raises:
            QueryValidationError: empty query
        """
        query = validate_query(query)
        cfg = config or self.config
        top_k = top_k or cfg.top_k
        stages = _Stages(self, cfg)
        metadata: Dict[str, Any] = {}
        start = time.perf_counter()

        logger.info(f"RAG request: user={user_id}, top_k={top_k}, conversation={conversation_id}")

        analysis = await self._analyze(stages, cfg, query, conversation_history, metadata)
        options = self._retrieval_options(cfg, top_k, user_id, document_ids)
        candidates = await self._retrieve(stages, cfg, analysis, options, metadata)
        candidates = await self._rerank(stages, cfg, query, candidates, top_k, metadata)
        candidates = await self._compress(stages, cfg, query, candidates, metadata)

        answer, sources = await self._synthesize(stages, cfg, query, candidates, conversation_history, metadata)

        if candidates and answer not in (NO_DOCUMENTS_ANSWER, GENERATION_FAILED_ANSWER):
            self._schedule_verification(cfg, query, answer, candidates, metadata)

        response_time_ms = _elapsed_ms(start)
        logger.info(f"RAG response in {response_time_ms}ms with {len(sources)} sources")

        return {
            'answer': answer,
            'sources': sources,
            'source_documents': [public_candidate(c) for c in candidates],
            'conversation_id': conversation_id,
            'response_time_ms': response_time_ms,
            'metadata': metadata,
        }

    async def generate_streaming_response(
        self,
        query: str,
        user_id: Optional[str] = None,
        conversation_id: Optional[Any] = None,
        document_ids: Optional[List[Any]] = None,
        top_k: Optional[int] = None,
        config: Optional[RAGPipelineConfig] = None,
        conversation_history: Optional[List[Dict[str, str]]] = None
    ) -> AsyncGenerator[str, None]:
        """
        Streaming pipeline.

        Yields progress markers in stage order, then answer fragments, then
        the end marker. Closing the generator (client disconnect) stops
        further provider calls; verification is scheduled only after a
        complete answer.
        """
        query = validate_query(query)
        cfg = config or self.config
        top_k = top_k or cfg.top_k
        stages = _Stages(self, cfg)
        metadata: Dict[str, Any] = {}

        try:
            yield "Analyzing query...\n"
            analysis = await self._analyze(stages, cfg, query, conversation_history, metadata)
            yield "✓ Query analyzed\n"

            yield "Retrieving documents...\n"
            options = self._retrieval_options(cfg, top_k, user_id, document_ids)
            candidates = await self._retrieve(stages, cfg, analysis, options, metadata)
            yield f"✓ Found {len(candidates)} relevant documents\n"

            if cfg.enable_reranking:
                yield "Re-ranking results...\n"
            candidates = await self._rerank(stages, cfg, query, candidates, top_k, metadata)

            if cfg.enable_contextual_compression:
                yield "Compressing context...\n"
            candidates = await self._compress(stages, cfg, query, candidates, metadata)

            yield "Generating response...\n\n"

            if not candidates:
                yield NO_DOCUMENTS_ANSWER
            else:
                fragments: List[str] = []
                try:
                    async for fragment in stages.generator.generate_stream(
                        query,
                        candidates,
                        conversation_history=conversation_history,
                        max_context_tokens=cfg.max_context_tokens,
                    ):
                        fragments.append(fragment)
                        yield fragment
                except Exception as e:
                    logger.error(f"Streaming generation failed: {e}")
                    yield ("\n\n" if fragments else "") + GENERATION_FAILED_ANSWER
                else:
                    self._schedule_verification(cfg, query, "".join(fragments), candidates, metadata)

            yield f"\n\n{END_MARKER}"

        except asyncio.CancelledError:
            logger.info(f"Streaming request cancelled (conversation={conversation_id})")
            raise

    # ========================================
    # Stages
    # ========================================

    async def _analyze(
        self,
        stages: _Stages,
        cfg: RAGPipelineConfig,
        query: str,
        conversation_history: Optional[List[Dict[str, str]]],
        metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        start = time.perf_counter()
        context = self._history_text(conversation_history)

        async def compute() -> Tuple[Dict[str, Any], bool]:
            analysis = stages.rewriting.analyze_query(query)
            analysis['search_query'] = query
            analysis['hyde_documents'] = []
            analysis['hyde_confidence'] = None
            analysis['query_type'] = None

            complete = True

            if cfg.enable_query_rewriting:
                try:
                    analysis['search_query'] = await stages.rewriting.rewrite_query(query, context)
                except Exception as e:
                    logger.warning(f"Query rewriting failed, using the original query: {e}")
                    complete = False

            if cfg.enable_hyde:
                try:
                    recommendation = await stages.hyde.analyze_query_for_hyde(query)
                    analysis['query_type'] = recommendation['query_type'].value
                    analysis['hyde_confidence'] = recommendation['confidence']
                    if recommendation['is_recommended']:
                        if cfg.hyde_num_documents > 1:
                            analysis['hyde_documents'] = await stages.hyde.generate_multiple_hypothetical_documents(
                                query, cfg.hyde_num_documents
                            )
                        else:
                            analysis['hyde_documents'] = [await stages.hyde.generate_hypothetical_document(query)]
                except Exception as e:
                    logger.warning(f"HyDE analysis failed, continuing without hypothetical documents: {e}")
                    analysis['hyde_documents'] = []
                    complete = False

            return analysis, complete

        analysis = await self._cached(
            cfg,
            metadata,
            "query_analysis",
            self._key(QUERY_ANALYSIS_PREFIX, query, context, cfg.enable_query_rewriting, cfg.enable_hyde,
                      cfg.hyde_num_documents),
            compute,
        )

        metadata['rewritten_query'] = analysis['search_query'] if analysis['search_query'] != query else None
        metadata['query_type'] = analysis.get('query_type')
        metadata['hyde_used'] = bool(analysis['hyde_documents'])
        metadata['hyde_confidence'] = analysis.get('hyde_confidence')
        metadata['analysis_time_ms'] = _elapsed_ms(start)
        return analysis

    async def _retrieve(
        self,
        stages: _Stages,
        cfg: RAGPipelineConfig,
        analysis: Dict[str, Any],
        options: SearchOptions,
        metadata: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        start = time.perf_counter()
        search_query = analysis['search_query']
        documents = analysis['hyde_documents']

        pool_size = options.top_k
        if cfg.enable_reranking or cfg.enable_mmr:
            pool_size = options.top_k * cfg.candidate_multiplier
        wide = options.model_copy(update={"top_k": pool_size})

        async def compute() -> Tuple[Dict[str, Any], bool]:
            try:
                if not documents:
                    outcome = await stages.search.search_with_status(search_query, wide)
                    return {
                        'method': "standard",
                        'candidates': outcome['results'],
                        'vector_degraded': outcome['vector_degraded'],
                    }, not outcome['vector_degraded']

                try:
                    outcome, hyde = await asyncio.gather(
                        stages.search.search_with_status(search_query, wide),
                        stages.hyde.search_with_documents(documents, wide),
                    )
                except Exception as e:
                    logger.warning(f"HyDE retrieval failed, falling back to standard search: {e}")
                    outcome = await stages.search.search_with_status(search_query, wide)
                    return {
                        'method': "standard_fallback",
                        'candidates': outcome['results'],
                        'vector_degraded': outcome['vector_degraded'],
                    }, False

                blended = stages.hyde.blend_results(outcome['results'], hyde, cfg.hyde_weight, wide.top_k)
                return {
                    'method': "hyde",
                    'candidates': blended,
                    'vector_degraded': outcome['vector_degraded'],
                }, not outcome['vector_degraded']

            except Exception as e:
                logger.error(f"Retrieval failed: {e}")
                return {'method': "failed", 'candidates': [], 'vector_degraded': False}, False

        retrieval = await self._cached(
            cfg,
            metadata,
            "retrieval",
            self._key(
                RETRIEVAL_PREFIX,
                search_query,
                documents,
                wide.model_dump(mode="json"),
                cfg.fusion_method,
                cfg.vector_weight,
                cfg.lexical_weight,
                cfg.hyde_weight,
            ),
            compute,
        )

        candidates = retrieval['candidates']
        metadata['retrieval_method'] = retrieval['method']
        metadata['vector_degraded'] = retrieval.get('vector_degraded', False)
        metadata['candidates_retrieved'] = len(candidates)
        metadata['retrieval_time_ms'] = _elapsed_ms(start)
        logger.info(f"Retrieved {len(candidates)} candidates ({retrieval['method']})")
        return candidates

    async def _rerank(
        self,
        stages: _Stages,
        cfg: RAGPipelineConfig,
        query: str,
        candidates: List[Dict[str, Any]],
        top_k: int,
        metadata: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """Re-ranking followed by MMR diversity selection."""
        metadata['reranking_enabled'] = cfg.enable_reranking
        metadata['mmr_enabled'] = cfg.enable_mmr
        rerank_top_k = top_k * cfg.candidate_multiplier if cfg.enable_mmr else top_k

        if cfg.enable_reranking and candidates:
            start = time.perf_counter()

            async def compute() -> Tuple[List[Dict[str, Any]], bool]:
                try:
                    return await stages.reranker.rerank_results(
                        query, candidates, rerank_top_k, fallback_on_error=False
                    ), True
                except Exception as e:
                    logger.warning(f"Re-ranking failed, keeping retrieval order: {e}")
                    metadata['reranking_fallback'] = True
                    return candidates[:rerank_top_k], False

            candidates = await self._cached(
                cfg,
                metadata,
                "reranking",
                self._key(
                    RERANKING_PREFIX,
                    query,
                    [c.get("candidate_id") for c in candidates],
                    rerank_top_k,
                    cfg.rerank_strategy,
                    cfg.max_candidates,
                    cfg.cross_encoder_weight,
                    cfg.language_model_weight,
                ),
                compute,
            )
            metadata['reranking_time_ms'] = _elapsed_ms(start)
        else:
            candidates = candidates[:rerank_top_k]

        if not cfg.enable_mmr:
            return candidates[:top_k]

        start = time.perf_counter()
        try:
            query_vector = await self._query_vector(query, cfg)
            candidates = stages.mmr.rerank_with_mmr(query_vector, candidates, top_k, cfg.mmr_lambda)
        except Exception as e:
            logger.warning(f"MMR failed, keeping ranked order: {e}")
            candidates = candidates[:top_k]
        metadata['mmr_time_ms'] = _elapsed_ms(start)
        return candidates

    async def _compress(
        self,
        stages: _Stages,
        cfg: RAGPipelineConfig,
        query: str,
        candidates: List[Dict[str, Any]],
        metadata: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        metadata['compression_enabled'] = cfg.enable_contextual_compression
        if not cfg.enable_contextual_compression or not candidates:
            return candidates

        start = time.perf_counter()
        metadata['original_tokens'] = sum(estimate_token_count(c.get("text") or "") for c in candidates)

        async def compute() -> Tuple[List[Dict[str, Any]], bool]:
            try:
                unique = await stages.compression.deduplicate_candidates(candidates, cfg.dedup_threshold)
                compressed = await stages.compression.compress_chunks(
                    query,
                    [c.get("text") or "" for c in unique],
                    cfg.max_context_tokens,
                    fallback_on_error=False,
                )
            except Exception as e:
                logger.warning(f"Compression failed, using uncompressed context: {e}")
                return candidates, False

            result = []
            for item in compressed:
                candidate = dict(unique[item['original_index']])
                candidate['compressed_text'] = item['content']
                candidate['compression_ratio'] = item['compression_ratio']
                candidate['token_count'] = item['token_count']
                result.append(candidate)
            return result, True

        candidates = await self._cached(
            cfg,
            metadata,
            "compression",
            self._key(
                COMPRESSION_PREFIX,
                query,
                [c.get("candidate_id") for c in candidates],
                cfg.max_context_tokens,
                cfg.dedup_threshold,
            ),
            compute,
        )

        metadata['compressed_tokens'] = sum(
            estimate_token_count(c.get("compressed_text") or c.get("text") or "") for c in candidates
        )
        metadata['compression_time_ms'] = _elapsed_ms(start)
        return candidates

    async def _synthesize(
        self,
        stages: _Stages,
        cfg: RAGPipelineConfig,
        query: str,
        candidates: List[Dict[str, Any]],
        conversation_history: Optional[List[Dict[str, str]]],
        metadata: Dict[str, Any]
    ) -> Tuple[str, List[Dict[str, Any]]]:
        if not candidates:
            logger.info("No candidates survived retrieval, returning the no-documents answer")
            return NO_DOCUMENTS_ANSWER, []

        start = time.perf_counter()
        try:
            result = await stages.generator.generate(
                query,
                candidates,
                conversation_history=conversation_history,
                max_context_tokens=cfg.max_context_tokens,
            )
        except Exception as e:
            logger.error(f"Answer synthesis failed: {e}")
            metadata['generation_time_ms'] = _elapsed_ms(start)
            return GENERATION_FAILED_ANSWER, []

        answer, iterations = await self._refine(stages.generator, query, result['answer'], candidates,
                                                cfg.max_refinement_iterations)
        sources = result['sources']
        if iterations:
            citations = stages.generator.extract_citations(answer, candidates)
            sources = stages.generator.build_sources_list(candidates, citations or list(range(len(candidates))))

        metadata['refinement_iterations'] = iterations
        metadata['generation_time_ms'] = _elapsed_ms(start)
        return answer, sources

    async def _refine(
        self,
        generator: RAGGenerator,
        query: str,
        answer: str,
        candidates: List[Dict[str, Any]],
        max_iterations: int
    ) -> Tuple[str, int]:
        """
        Bounded review/revise loop.

        States: REVIEW -> (APPROVED: stop) | REVISE -> REVIEW, stopping after
        max_iterations revisions. A failing review or revision keeps the
        current answer.
        """
        iterations = 0
        while iterations < max_iterations:
            try:
                feedback = await generator.review(query, answer, candidates)
                if APPROVAL_KEYWORD in (feedback or "").upper():
                    logger.debug(f"Answer approved after {iterations} revisions")
                    break
                revised = await generator.revise(query, answer, feedback, candidates)
            except Exception as e:
                logger.warning(f"Refinement stopped, keeping current answer: {e}")
                break

            iterations += 1
            if revised and revised.strip():
                answer = revised.strip()

        return answer, iterations

    # ========================================
    # Verification
    # ========================================

    def _schedule_verification(
        self,
        cfg: RAGPipelineConfig,
        query: str,
        answer: str,
        candidates: List[Dict[str, Any]],
        metadata: Dict[str, Any]
    ) -> None:
        metadata['quality_check_scheduled'] = False
        if not cfg.enable_quality_check:
            return

        source_texts = [c.get("compressed_text") or c.get("text") or "" for c in candidates]
        try:
            if self.quality_dispatcher is not None:
                self.quality_dispatcher(query, answer, source_texts)
            elif settings.CELERY_ENABLED:
                from docrag.tasks.quality_tasks import verify_response_task

                verify_response_task.delay(query, answer, source_texts)
            else:
                quality = QualityService(self.store, self.embedder, cfg.provider_timeout_seconds)
                task = asyncio.create_task(
                    quality.verify_response_quality(query, answer, source_texts=source_texts)
                )
                self._background_tasks.add(task)
                task.add_done_callback(self._verification_done)
        except Exception as e:
            logger.error(f"Could not schedule quality verification: {e}")
            return

        metadata['quality_check_scheduled'] = True

    def _verification_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Quality verification failed: {error}")
            return
        report = task.result()
        logger.info(
            f"Quality verification: faithfulness={report['faithfulness_score']:.2f}, "
            f"relevancy={report['answer_relevancy_score']:.2f}, "
            f"hallucinations={len(report['hallucination_detection']['hallucinations'])}"
        )

    # ========================================
    # Helpers
    # ========================================

    async def _cached(
        self,
        cfg: RAGPipelineConfig,
        metadata: Dict[str, Any],
        stage: str,
        key: str,
        compute: Callable[[], Awaitable[Tuple[Any, bool]]]
    ) -> Any:
        """Cache-or-compute for one stage; only successful results are stored."""
        use_cache = cfg.enable_caching and self.cache is not None
        metadata[f"{stage}_cached"] = False

        if use_cache:
            cached = await self.cache.get(key)
            if cached is not None:
                metadata[f"{stage}_cached"] = True
                logger.debug(f"{stage} served from cache")
                return cached

        value, cacheable = await compute()
        if use_cache and cacheable:
            await self.cache.set(key, value, cfg.cache_ttl_seconds)
        return value

    @staticmethod
    def _key(prefix: str, *parts: Any) -> str:
        return CacheService.make_key(prefix, *parts)

    async def _query_vector(self, query: str, cfg: RAGPipelineConfig) -> Optional[List[float]]:
        try:
            return await with_timeout(self.embedder.embed(query), cfg.provider_timeout_seconds, self.embedder.name)
        except Exception as e:
            logger.warning(f"Query embedding for MMR failed, using incoming scores: {e}")
            return None

    @staticmethod
    def _retrieval_options(
        cfg: RAGPipelineConfig,
        top_k: int,
        user_id: Optional[str],
        document_ids: Optional[List[Any]]
    ) -> SearchOptions:
        return SearchOptions(
            top_k=top_k,
            min_similarity=cfg.min_similarity,
            owner_id=user_id,
            document_ids=document_ids or None,
        )

    @staticmethod
    def _history_text(conversation_history: Optional[List[Dict[str, str]]]) -> Optional[str]:
        if not conversation_history:
            return None
        recent = conversation_history[-6:]
        return "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in recent)


# Global instance
_orchestrator: Optional[RAGOrchestrator] = None


async def get_orchestrator() -> RAGOrchestrator:
    """
    Get or create the global orchestrator wired to the configured providers.

    Example:
        >>> orchestrator = await get_orchestrator()
        >>> result = await orchestrator.generate_response("query", user_id="u1")
    """
    global _orchestrator

    if _orchestrator is None:
        from docrag.services.providers import get_embedding_provider, get_language_model_provider
        from docrag.services.rag.cache import get_cache_service
        from docrag.services.rag.reranker import get_cross_encoder
        from docrag.services.storage import get_document_store

        cross_encoder = None
        try:
            cross_encoder = await get_cross_encoder(settings.RERANK_MODEL, settings.EMBEDDING_DEVICE)
        except Exception as e:
            logger.warning(f"Cross-encoder unavailable, re-ranking will use the language model: {e}")

        _orchestrator = RAGOrchestrator(
            store=get_document_store(),
            embedder=await get_embedding_provider(),
            language_model=get_language_model_provider(),
            cache=await get_cache_service(),
            cross_encoder=cross_encoder,
        )
        logger.info("Created global RAGOrchestrator instance")

    return _orchestrator


def reset_orchestrator() -> None:
    """Drop the global orchestrator (tests, shutdown)."""
    global _orchestrator
    _orchestrator = None
