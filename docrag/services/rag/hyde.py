"""
HyDE (Hypothetical Document Embeddings)

Instead of embedding the short user query, ask the language model for a
plausible answer document and search with that document's embedding. The
hypothetical text does not need to be factually right, only to read like
the documents in the corpus.

Modes:
------
- search_with_hyde: HyDE embeddings only (max score per candidate across
  hypothetical documents)
- search_hybrid_with_hyde: standard and HyDE searches run concurrently and
  are blended:
      final = (1 - w) * standard + w * hyde   (candidate in both sets)
      final = own score                       (candidate in one set)
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from docrag.services.providers.base import EmbeddingProvider, LanguageModelProvider, with_timeout
from docrag.services.rag.hybrid_search import HybridSearchService
from docrag.services.storage.base import SearchOptions

logger = logging.getLogger(__name__)

HYDE_SYSTEM_PROMPT = (
    "You are an expert writer of business and technical documents. "
    "Write a hypothetical document that could answer the given question, "
    "in the formal style of real company documents."
)

_IDENTIFIER_RE = re.compile(
    r"\"[^\"]+\"|\b[A-Z]{2,}[-_/]?\d+\b|\b\d{3,}\b|\b\w+\.(pdf|docx?|xlsx?|txt|csv)\b|\b\d{1,4}[-/]\d{1,2}[-/]\d{1,4}\b",
    re.IGNORECASE,
)
_REASONING_RE = re.compile(r"^(why|how)\b|\b(explain|compare|difference between|what if|impact of|cause)\b", re.IGNORECASE)
_CONCEPTUAL_RE = re.compile(r"^(what|which|who|define|describe)\b|\b(meaning of|concept of|overview)\b", re.IGNORECASE)


class QueryType(str, Enum):
    SIMPLE = "Simple"
    CONCEPTUAL = "Conceptual"
    REASONING = "Reasoning"
    EXACT = "Exact"
    COMPLEX = "Complex"


# Heuristic recommendation per query type: (recommended, confidence, suggested weight)
_TYPE_RECOMMENDATIONS = {
    QueryType.SIMPLE: (False, 0.7, 0.3),
    QueryType.EXACT: (False, 0.8, 0.2),
    QueryType.CONCEPTUAL: (True, 0.7, 0.6),
    QueryType.REASONING: (True, 0.75, 0.7),
    QueryType.COMPLEX: (True, 0.65, 0.6),
}


def classify_query_type(query: str) -> QueryType:
    """Heuristic classification from length, identifiers and question form."""
    text = (query or "").strip()
    words = text.split()

    if _IDENTIFIER_RE.search(text):
        return QueryType.EXACT
    if len(words) > 20 or text.count("?") > 1 or len(re.findall(r"\b(and|also|then)\b", text, re.IGNORECASE)) >= 2:
        return QueryType.COMPLEX
    if _REASONING_RE.search(text):
        return QueryType.REASONING
    if len(words) <= 3:
        return QueryType.SIMPLE
    if _CONCEPTUAL_RE.search(text) or text.endswith("?"):
        return QueryType.CONCEPTUAL
    return QueryType.SIMPLE


class HyDEService:
    """
    Hypothetical-document retrieval on top of HybridSearchService.

    Every public search method falls back to the standard search on any
    failure; HyDE never blocks a request.

    Usage:
    ------
    hyde = HyDEService(search, embedder, language_model)
    results = await hyde.search_hybrid_with_hyde("why did churn rise in Q3?", user_id="u1", top_k=5)
    """

    def __init__(
        self,
        search: HybridSearchService,
        embedder: EmbeddingProvider,
        language_model: LanguageModelProvider,
        enabled: bool = True,
        num_documents: int = 1,
        default_weight: float = 0.6,
        target_document_length: int = 200,
        temperature: float = 0.7,
        auto_decide: bool = False,
        provider_timeout: Optional[float] = None
    ):
        self.search = search
        self.embedder = embedder
        self.language_model = language_model
        self.enabled = enabled
        self.num_documents = max(1, num_documents)
        self.default_weight = default_weight
        self.target_document_length = target_document_length
        self.temperature = temperature
        self.auto_decide = auto_decide
        self.provider_timeout = provider_timeout

    # ========================================
    # Generation
    # ========================================

    async def generate_hypothetical_document(self, query: str, domain_context: Optional[str] = None) -> str:
        """One hypothetical answer document. Falls back to the query text on failure."""
        try:
            logger.debug(f"Generating hypothetical document for query: {query}")
            text = await with_timeout(
                self.language_model.complete(
                    [{"role": "user", "content": self._build_prompt(query, domain_context)}],
                    system=HYDE_SYSTEM_PROMPT,
                    temperature=self.temperature,
                    max_tokens=self.target_document_length * 2,
                ),
                self.provider_timeout,
                self.language_model.name,
            )
            text = (text or "").strip()
            if not text:
                return query
            logger.info(f"Generated hypothetical document ({len(text)} chars)")
            return text
        except Exception as e:
            logger.error(f"Error generating hypothetical document: {e}")
            return query

    async def generate_multiple_hypothetical_documents(
        self,
        query: str,
        n: int = 2,
        domain_context: Optional[str] = None
    ) -> List[str]:
        """
        Up to n distinct hypothetical documents.

        One structured request asks for all n; any shortfall is topped up with
        concurrent single generations. Exact repeats are removed.
        """
        documents: List[str] = []
        context = f"Context: {domain_context}\n\n" if domain_context else ""
        prompt = (
            f"Write {n} DIFFERENT hypothetical documents that could answer the question below.\n"
            "Each document should take a slightly different perspective.\n\n"
            f"Question: {query}\n\n{context}"
            'Respond with JSON only: {"documents": ["document 1...", "document 2..."]}'
        )

        try:
            data = await with_timeout(
                self.language_model.complete_json(
                    [{"role": "user", "content": prompt}],
                    required_keys=("documents",),
                    system=HYDE_SYSTEM_PROMPT,
                    temperature=min(1.0, self.temperature + 0.1),
                    max_tokens=self.target_document_length * n * 2,
                ),
                self.provider_timeout,
                self.language_model.name,
            )
            documents = [d.strip() for d in data.get("documents") or [] if isinstance(d, str) and d.strip()]
        except Exception as e:
            logger.warning(f"Multi-document generation failed, generating individually: {e}")

        missing = n - len(documents)
        if missing > 0:
            documents.extend(await asyncio.gather(
                *(self.generate_hypothetical_document(query, domain_context) for _ in range(missing))
            ))

        unique = list(dict.fromkeys(documents))[:n]
        logger.info(f"Generated {len(unique)} hypothetical document variants")
        return unique

    # ========================================
    # Search
    # ========================================

    async def search_with_hyde(
        self,
        query: str,
        user_id: Optional[str] = None,
        top_k: int = 10,
        min_similarity: float = 0.7,
        options: Optional[SearchOptions] = None
    ) -> List[Dict[str, Any]]:
        """
        Search with hypothetical-document embeddings.

        Results carry 'hyde_score' (best similarity across hypothetical
        documents). Falls back to the standard search when HyDE is disabled,
        not recommended (auto_decide), or fails.
        """
        options = self._options(options, user_id, top_k, min_similarity)

        if not self.enabled:
            logger.debug("HyDE is disabled, falling back to standard search")
            return await self.search.search(query, options)

        try:
            if self.auto_decide:
                recommendation = await self.analyze_query_for_hyde(query)
                if not recommendation["is_recommended"]:
                    logger.debug(f"HyDE not recommended for this query: {recommendation['reason']}")
                    return await self.search.search(query, options)

            if self.num_documents > 1:
                documents = await self.generate_multiple_hypothetical_documents(query, self.num_documents)
            else:
                documents = [await self.generate_hypothetical_document(query)]

            return await self.search_with_documents(documents, options)

        except Exception as e:
            logger.error(f"Error in HyDE search, falling back to standard search: {e}")
            return await self.search.search(query, options)

    async def search_with_documents(self, documents: List[str], options: SearchOptions) -> List[Dict[str, Any]]:
        """
        Vector search with already generated hypothetical documents.

        Each candidate keeps its best similarity across the documents as
        'hyde_score'. Raises on provider failure; callers decide the fallback.
        """
        embeddings = await with_timeout(
            self.embedder.embed_batch(documents), self.provider_timeout, self.embedder.name
        )
        result_sets = await asyncio.gather(
            *(self.search.vector_search(embedding, options) for embedding in embeddings)
        )

        aggregated: Dict[str, Dict[str, Any]] = {}
        for results in result_sets:
            for result in results:
                existing = aggregated.get(result["candidate_id"])
                if existing is None or result["vector_score"] > existing["hyde_score"]:
                    aggregated[result["candidate_id"]] = {**result, "hyde_score": result["vector_score"]}

        ranked = sorted(aggregated.values(), key=lambda r: r["hyde_score"], reverse=True)[:options.top_k]
        logger.info(f"HyDE search completed. Found {len(ranked)} unique results")
        return ranked

    async def search_hybrid_with_hyde(
        self,
        query: str,
        user_id: Optional[str] = None,
        top_k: int = 10,
        hyde_weight: Optional[float] = None,
        options: Optional[SearchOptions] = None
    ) -> List[Dict[str, Any]]:
        """
        Standard search and HyDE search run concurrently, blended by hyde_weight.

        Results carry 'standard_score', 'hyde_score' (where present) and
        'final_score'. A weight of 0 is the standard search alone.
        """
        weight = self.default_weight if hyde_weight is None else min(1.0, max(0.0, hyde_weight))
        options = self._options(options, user_id, top_k, 0.5)

        if weight == 0.0 or not self.enabled:
            return await self.search.search(query, options)

        try:
            wide = options.model_copy(update={"top_k": options.top_k * 2})
            standard_results, hyde_results = await asyncio.gather(
                self.search.search(query, wide),
                self.search_with_hyde(query, options=wide),
            )
            return self.blend_results(standard_results, hyde_results, weight, options.top_k)

        except Exception as e:
            logger.error(f"Error in hybrid HyDE search, falling back to standard search: {e}")
            return await self.search.search(query, options)

    @staticmethod
    def blend_results(
        standard_results: List[Dict[str, Any]],
        hyde_results: List[Dict[str, Any]],
        weight: float,
        top_k: int
    ) -> List[Dict[str, Any]]:
        """Merge by candidate id and rank by the weighted 'final_score'."""
        blended: Dict[str, Dict[str, Any]] = {}
        for result in standard_results:
            blended[result["candidate_id"]] = {
                **result,
                "standard_score": result.get("combined_score", 0.0),
            }

        for result in hyde_results:
            hyde_score = result.get("hyde_score", result.get("combined_score", 0.0))
            entry = blended.get(result["candidate_id"])
            if entry is None:
                blended[result["candidate_id"]] = {**result, "hyde_score": hyde_score}
            else:
                entry["hyde_score"] = hyde_score

        for entry in blended.values():
            standard = entry.get("standard_score")
            hyde = entry.get("hyde_score")
            if standard is not None and hyde is not None:
                entry["final_score"] = (1.0 - weight) * standard + weight * hyde
            else:
                entry["final_score"] = standard if standard is not None else hyde

        ranked = sorted(blended.values(), key=lambda r: r["final_score"], reverse=True)[:top_k]
        logger.info(
            f"Hybrid HyDE search combined {len(standard_results)} standard + "
            f"{len(hyde_results)} HyDE results into {len(ranked)}"
        )
        return ranked

    # ========================================
    # Recommendation
    # ========================================

    async def analyze_query_for_hyde(self, query: str) -> Dict[str, Any]:
        """
        Decide whether HyDE is worth it for this query.

        Returns:
            {
                'is_recommended': bool,
                'confidence': float,
                'reason': str,
                'query_type': QueryType,
                'suggested_weight': float
            }
        """
        heuristic = self._heuristic_recommendation(query)

        prompt = (
            "Decide whether HyDE (Hypothetical Document Embeddings) would help retrieval for this query.\n\n"
            f"Query: {query}\n\n"
            "HyDE helps with conceptual, abstract, reasoning-heavy or complex queries.\n"
            "HyDE helps less with simple keyword lookups, exact searches (names, codes, dates) "
            "and very short queries.\n\n"
            "Respond with JSON only:\n"
            '{"isRecommended": true/false, "confidence": 0.0-1.0, "reason": "...", '
            '"queryType": "Simple" | "Conceptual" | "Reasoning" | "Exact" | "Complex", '
            '"suggestedHyDEWeight": 0.0-1.0}'
        )

        try:
            data = await with_timeout(
                self.language_model.complete_json(
                    [{"role": "user", "content": prompt}],
                    required_keys=("isRecommended",),
                    temperature=0.2,
                    max_tokens=200,
                ),
                self.provider_timeout,
                self.language_model.name,
            )
        except Exception as e:
            logger.warning(f"HyDE analysis unavailable, using heuristics: {e}")
            return heuristic

        try:
            query_type = QueryType(data.get("queryType", heuristic["query_type"].value))
        except ValueError:
            query_type = heuristic["query_type"]

        recommendation = {
            "is_recommended": bool(data.get("isRecommended")),
            "confidence": self._clamp(data.get("confidence"), heuristic["confidence"]),
            "reason": str(data.get("reason") or heuristic["reason"]),
            "query_type": query_type,
            "suggested_weight": self._clamp(data.get("suggestedHyDEWeight"), heuristic["suggested_weight"]),
        }
        logger.info(
            f"HyDE analysis: recommended={recommendation['is_recommended']}, "
            f"type={query_type.value}, confidence={recommendation['confidence']:.2f}"
        )
        return recommendation

    def _heuristic_recommendation(self, query: str) -> Dict[str, Any]:
        query_type = classify_query_type(query)
        recommended, confidence, weight = _TYPE_RECOMMENDATIONS[query_type]
        return {
            "is_recommended": recommended,
            "confidence": confidence,
            "reason": f"{query_type.value} query",
            "query_type": query_type,
            "suggested_weight": weight,
        }

    def _build_prompt(self, query: str, domain_context: Optional[str]) -> str:
        parts = [f"Write a company document that could answer the following question:\n\nQuestion: {query}\n"]
        if domain_context and domain_context.strip():
            parts.append(f"Domain context: {domain_context}\n")
        parts.append(
            "Instructions:\n"
            "- Formal, professional style\n"
            "- Terminology appropriate to the business context\n"
            f"- About {self.target_document_length} words\n"
            "- Clear, logical structure\n"
            "- It does NOT need to be factually accurate; this is a HYPOTHETICAL document\n"
            "- The goal is text that reads like the real documents\n\n"
            "Document:"
        )
        return "\n".join(parts)

    @staticmethod
    def _options(
        options: Optional[SearchOptions],
        user_id: Optional[str],
        top_k: int,
        min_similarity: float
    ) -> SearchOptions:
        if options is not None:
            return options
        return SearchOptions(top_k=top_k, min_similarity=min_similarity, owner_id=user_id)

    @staticmethod
    def _clamp(value: Any, default: float) -> float:
        try:
            return min(1.0, max(0.0, float(value)))
        except (TypeError, ValueError):
            return default
