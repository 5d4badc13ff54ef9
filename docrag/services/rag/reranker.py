"""
Re-Ranking

Second-pass relevance scoring over the shortlist produced by hybrid search.

Strategies (RERANK_STRATEGY):
-----------------------------
- cross_encoder: a cross-encoder jointly encodes (query, passage) pairs
- hybrid: cross-encoder score blended with a language-model judgment
  (default 0.6 cross-encoder / 0.4 model)

Model: cross-encoder/ms-marco-MiniLM-L-6-v2
- Fast inference, trained on MS MARCO passage ranking
- Raw logits are squashed to [0, 1] with a sigmoid
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import numpy as np

from docrag.core.config import settings
from docrag.services.providers.base import LanguageModelProvider, with_timeout

logger = logging.getLogger(__name__)

RELEVANCE_TEXT_LIMIT = 1500
BATCH_EXCERPT_LIMIT = 300
DEFAULT_LLM_SCORE = 0.5

_NUMBER_RE = re.compile(r"[-+]?\d*\.?\d+")


class CrossEncoderScorer:
    """
    Scores (query, passage) pairs with a cross-encoder model.

    Cross-Encoder vs Bi-Encoder:
    ----------------------------
    - Bi-Encoder (first-pass retrieval): query and passage embedded
      separately, cheap, no query/passage interaction
    - Cross-Encoder (re-ranking): query + passage encoded together,
      expensive, captures the interaction

    Usage:
    ------
    scorer = CrossEncoderScorer()
    await scorer.initialize()
    scores = await scorer.score("termination notice period", ["passage 1", "passage 2"])
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        device: str = "cpu",
        batch_size: Optional[int] = None
    ):
        self.model_name = model_name or settings.RERANK_MODEL
        self.device = device
        self.batch_size = batch_size or settings.RERANK_BATCH_SIZE

        self.model = None
        self._initialized = False

        logger.info(f"CrossEncoderScorer configured with model={self.model_name}, device={device}")

    async def initialize(self):
        """Load the model in a worker thread. Called lazily on first use."""
        if self._initialized:
            return

        from sentence_transformers import CrossEncoder
        import torch

        def _load_model():
            device = self.device
            if device == "cuda" and not torch.cuda.is_available():
                logger.warning("CUDA not available, falling back to CPU")
                device = "cpu"
            elif device == "mps" and not torch.backends.mps.is_available():
                logger.warning("MPS not available, falling back to CPU")
                device = "cpu"

            model = CrossEncoder(self.model_name, max_length=512, device=device)
            logger.info(f"Loaded cross-encoder model on {device}")
            return model

        self.model = await asyncio.to_thread(_load_model)

        self._initialized = True

    async def score(self, query: str, texts: List[str]) -> List[float]:
        """Relevance of each text to the query, in [0, 1]."""
        if not texts:
            return []

        if not self._initialized:
            await self.initialize()

        pairs = [(query, text) for text in texts]

        def _score_pairs():
            return self.model.predict(pairs, batch_size=self.batch_size, show_progress_bar=False)

        # Cancellation on timeout abandons the worker thread instead of joining it
        logits = await asyncio.to_thread(_score_pairs)

        return [float(s) for s in 1.0 / (1.0 + np.exp(-np.asarray(logits, dtype=np.float64)))]

    def get_model_info(self) -> Dict[str, Any]:
        return {
            'model_name': self.model_name,
            'device': self.device,
            'batch_size': self.batch_size,
            'initialized': self._initialized
        }


class ReRankingService:
    """
    Recomputes relevance for the top candidates and re-orders them.

    Only the first max_candidates inputs are scored; the rest keep their
    incoming order and scores and follow the scored block. Any scorer
    failure (including a provider timeout) returns the incoming order.

    Usage:
    ------
    reranking = ReRankingService(cross_encoder=await get_cross_encoder())
    top = await reranking.rerank_results(query, candidates, top_k=5)
    """

    def __init__(
        self,
        cross_encoder: Optional[CrossEncoderScorer] = None,
        language_model: Optional[LanguageModelProvider] = None,
        enabled: bool = True,
        strategy: str = "cross_encoder",
        max_candidates: int = 30,
        cross_encoder_weight: float = 0.6,
        language_model_weight: float = 0.4,
        min_relevance_score: float = 0.3,
        provider_timeout: Optional[float] = None
    ):
        self.cross_encoder = cross_encoder
        self.language_model = language_model
        self.enabled = enabled
        self.strategy = strategy
        self.max_candidates = max_candidates
        self.cross_encoder_weight = cross_encoder_weight
        self.language_model_weight = language_model_weight
        self.min_relevance_score = min_relevance_score
        self.provider_timeout = provider_timeout

    async def rerank_results(
        self,
        query: str,
        results: List[Dict[str, Any]],
        top_k: int,
        fallback_on_error: bool = True
    ) -> List[Dict[str, Any]]:
        """
        Re-rank results and return the best top_k.

        With re-ranking disabled this is a pass-through: the same dicts, in
        the same order, with untouched scores.

        When scoring fails the retrieval order is kept, or the error is
        re-raised with fallback_on_error=False.
        """
        if not self.enabled:
            return results[:top_k]

        if not results:
            return []

        head = [dict(r) for r in results[:self.max_candidates]]
        tail = results[self.max_candidates:]

        logger.info(f"Re-ranking {len(head)} of {len(results)} candidates (strategy={self.strategy})")

        try:
            scores = await self._score_texts(query, [c.get("text", "") for c in head])
        except Exception as e:
            if not fallback_on_error:
                raise
            logger.warning(f"Re-ranking failed, keeping retrieval order: {e}")
            return results[:top_k]

        for candidate, score in zip(head, scores):
            candidate["rerank_score"] = score

        reranked = sorted(head, key=lambda c: c["rerank_score"], reverse=True) + list(tail)
        reranked = reranked[:top_k]

        for i, candidate in enumerate(reranked, 1):
            if "rerank_score" in candidate:
                candidate["rerank_rank"] = i

        logger.info(f"Re-ranked to top {len(reranked)} results")
        return reranked

    async def calculate_relevance_score(self, query: str, text: str) -> float:
        """Relevance of one text to the query in [0, 1] using the configured strategy."""
        scores = await self._score_texts(query, [text])
        return scores[0]

    async def filter_by_relevance_threshold(
        self,
        query: str,
        results: List[Dict[str, Any]],
        min_score: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """
        Keep results whose relevance is at least min_score.

        Results already carrying a rerank_score at or above the threshold are
        kept without rescoring; the others are scored (and kept if they pass).
        """
        threshold = self.min_relevance_score if min_score is None else min_score
        kept = []
        to_score = []

        for position, result in enumerate(results):
            if result.get("rerank_score", -1.0) >= threshold:
                kept.append((position, result))
            else:
                to_score.append((position, result))

        if to_score:
            try:
                scores = await self._score_texts(query, [r.get("text", "") for _, r in to_score])
            except Exception as e:
                logger.warning(f"Relevance scoring failed during threshold filter: {e}")
                scores = []
            for (position, result), score in zip(to_score, scores):
                if score >= threshold:
                    kept.append((position, {**result, "rerank_score": score}))

        # Incoming order is preserved
        kept.sort(key=lambda item: item[0])
        logger.debug(f"Relevance threshold {threshold}: kept {len(kept)} of {len(results)}")
        return [result for _, result in kept]

    async def _score_texts(self, query: str, texts: List[str]) -> List[float]:
        """Scores for texts, per strategy. Raises on scorer failure."""
        use_llm = self.language_model is not None and (
            self.strategy == "hybrid" or self.cross_encoder is None
        )

        cross_scores = None
        if self.cross_encoder is not None:
            cross_scores = await with_timeout(
                self.cross_encoder.score(query, texts), self.provider_timeout, "cross_encoder"
            )

        if not use_llm:
            if cross_scores is None:
                raise RuntimeError("No re-ranking scorer configured")
            return cross_scores

        if len(texts) == 1:
            llm_scores = [await self._llm_relevance(query, texts[0])]
        else:
            llm_scores = await self._llm_batch_scores(query, texts)

        if cross_scores is None:
            return llm_scores

        return [
            self.cross_encoder_weight * c + self.language_model_weight * m
            for c, m in zip(cross_scores, llm_scores)
        ]

    async def _llm_relevance(self, query: str, text: str) -> float:
        """Ask the model for a bare 0-1 relevance number."""
        prompt = (
            "Rate how relevant the document is to the query on a scale from 0.0 to 1.0.\n"
            "Answer with the number only.\n\n"
            f"Query: {query}\n\n"
            f"Document:\n{text[:RELEVANCE_TEXT_LIMIT]}"
        )
        response = await with_timeout(
            self.language_model.complete([{"role": "user", "content": prompt}], temperature=0.0, max_tokens=10),
            self.provider_timeout,
            self.language_model.name,
        )
        match = _NUMBER_RE.search(response or "")
        if not match:
            return DEFAULT_LLM_SCORE
        return min(1.0, max(0.0, float(match.group())))

    async def _llm_batch_scores(self, query: str, texts: List[str]) -> List[float]:
        """Score several texts in one call; missing scores are padded with 0.5."""
        listing = "\n\n".join(
            f"[{i}] {text[:BATCH_EXCERPT_LIMIT]}" for i, text in enumerate(texts)
        )
        prompt = (
            "Rate the relevance of each document to the query on a scale from 0.0 to 1.0.\n"
            'Respond with JSON only: {"scores": [<score for [0]>, <score for [1]>, ...]}\n\n'
            f"Query: {query}\n\nDocuments:\n{listing}"
        )
        data = await with_timeout(
            self.language_model.complete_json(
                [{"role": "user", "content": prompt}], required_keys=("scores",), temperature=0.0
            ),
            self.provider_timeout,
            self.language_model.name,
        )

        scores = []
        for value in list(data.get("scores") or [])[:len(texts)]:
            try:
                scores.append(min(1.0, max(0.0, float(value))))
            except (TypeError, ValueError):
                scores.append(DEFAULT_LLM_SCORE)
        scores.extend([DEFAULT_LLM_SCORE] * (len(texts) - len(scores)))
        return scores


# Global cross-encoder instance
_cross_encoder: Optional[CrossEncoderScorer] = None


async def get_cross_encoder(model_name: Optional[str] = None, device: str = "cpu") -> CrossEncoderScorer:
    """
    Get or create the global cross-encoder (one model in memory).

    Example:
        >>> scorer = await get_cross_encoder()
        >>> scores = await scorer.score(query, texts)
    """
    global _cross_encoder

    if _cross_encoder is None:
        _cross_encoder = CrossEncoderScorer(model_name=model_name, device=device)
        await _cross_encoder.initialize()
        logger.info("Created global CrossEncoderScorer instance")

    return _cross_encoder


async def shutdown_cross_encoder():
    """Free the global cross-encoder. Called at application shutdown."""
    global _cross_encoder

    if _cross_encoder is not None:
        _cross_encoder.model = None
        _cross_encoder._initialized = False
        _cross_encoder = None
        logger.info("Shut down global CrossEncoderScorer instance")
