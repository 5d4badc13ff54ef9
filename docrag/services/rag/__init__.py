"""
RAG (Retrieval-Augmented Generation) Services

This package contains the retrieval-and-ranking pipeline:
- Hybrid retrieval (vector + lexical)
- HyDE, query rewriting and self-query
- Re-ranking and MMR diversity selection
- Contextual compression
- Generation, orchestration and caching
- Post-hoc quality verification and document classification
"""

from docrag.services.rag.cache import CacheService, get_cache_service
from docrag.services.rag.classification import ClassificationService
from docrag.services.rag.compression import ContextualCompressionService, estimate_token_count
from docrag.services.rag.generator import RAGGenerator
from docrag.services.rag.hybrid_search import HybridSearchService, create_hybrid_search
from docrag.services.rag.hyde import HyDEService, QueryType
from docrag.services.rag.mmr import MMRService
from docrag.services.rag.orchestrator import RAGOrchestrator, get_orchestrator
from docrag.services.rag.quality import QualityService
from docrag.services.rag.query_rewriting import QueryRewritingService
from docrag.services.rag.reranker import CrossEncoderScorer, ReRankingService, get_cross_encoder, shutdown_cross_encoder
from docrag.services.rag.self_query import SelfQueryService

__all__ = [
    "CacheService",
    "get_cache_service",
    "ClassificationService",
    "ContextualCompressionService",
    "estimate_token_count",
    "RAGGenerator",
    "HybridSearchService",
    "create_hybrid_search",
    "HyDEService",
    "QueryType",
    "MMRService",
    "RAGOrchestrator",
    "get_orchestrator",
    "QualityService",
    "QueryRewritingService",
    "CrossEncoderScorer",
    "ReRankingService",
    "get_cross_encoder",
    "shutdown_cross_encoder",
    "SelfQueryService",
]
