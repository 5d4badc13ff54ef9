"""
Contextual Compression

Extractive shortening of retrieved context to fit a token budget.

Pipeline:
---------
1. Drop near-duplicate chunks (embedding similarity above the threshold,
   first occurrence wins)
2. Keep whole chunks, in incoming order, while they fit the budget
3. Compress the first chunk that overflows (if enough budget remains) by
   keeping its most query-relevant sentences, in their original order

Token counts are estimated at a fixed 0.25 tokens per character so that
compression ratios are reproducible.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from docrag.services.providers.base import EmbeddingProvider, with_timeout
from docrag.services.rag.scoring import LexicalScorer, cosine_similarity

logger = logging.getLogger(__name__)

TOKENS_PER_CHAR = 0.25
TOKENS_PER_SENTENCE = 50
MIN_OVERFLOW_TOKENS = 50

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def estimate_token_count(text: Optional[str]) -> int:
    """Approximate token count: 0.25 tokens per character, rounded down."""
    if not text:
        return 0
    return int(len(text) * TOKENS_PER_CHAR)


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text or "") if s.strip()]


class ContextualCompressionService:
    """
    Shrinks retrieved chunks to a token budget.

    Usage:
    ------
    compression = ContextualCompressionService(embedder)
    compressed = await compression.compress_chunks(query, texts, target_token_count=2000)
    context = "\\n\\n".join(c["content"] for c in compressed)
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        enabled: bool = True,
        enable_deduplication: bool = True,
        dedup_threshold: float = 0.85,
        provider_timeout: Optional[float] = None
    ):
        self.embedder = embedder
        self.enabled = enabled
        self.enable_deduplication = enable_deduplication
        self.dedup_threshold = dedup_threshold
        self.provider_timeout = provider_timeout
        self._lexical = LexicalScorer()

    def estimate_token_count(self, text: Optional[str]) -> int:
        return estimate_token_count(text)

    async def compress_chunks(
        self,
        query: str,
        chunks: List[str],
        target_token_count: int,
        fallback_on_error: bool = True
    ) -> List[Dict[str, Any]]:
        """
        Fit chunks into target_token_count tokens.

        Args:
            query: The user query
            chunks: Chunk texts, best first
            target_token_count: Token budget for the whole context

        Returns:
            List of compressed chunk dicts:
            {
                'content': str,
                'original_index': int,
                'compression_ratio': float,
                'relevance_score': float,
                'token_count': int
            }
            On failure the original chunks are returned uncompressed,
            unless fallback_on_error is False.
        """
        if not self.enabled or not chunks:
            return self._passthrough(chunks)

        try:
            logger.debug(f"Compressing {len(chunks)} chunks to target {target_token_count} tokens")

            indices = list(range(len(chunks)))
            if self.enable_deduplication and len(chunks) > 1:
                embeddings = await self._embed_many(chunks)
                indices = self._unique_indices(embeddings, self.dedup_threshold)

            relevance = await self._relevance_scores(query, [chunks[i] for i in indices])

            results: List[Dict[str, Any]] = []
            current_tokens = 0

            for index, score in zip(indices, relevance):
                chunk = chunks[index]
                chunk_tokens = estimate_token_count(chunk)

                if current_tokens + chunk_tokens <= target_token_count:
                    results.append(self._chunk(chunk, index, score, chunk_tokens, chunk_tokens))
                    current_tokens += chunk_tokens
                    continue

                remaining = target_token_count - current_tokens
                if remaining > MIN_OVERFLOW_TOKENS or (not results and remaining > 0):
                    compressed = await self.compress_text(query, chunk, remaining)
                    compressed_tokens = estimate_token_count(compressed)
                    results.append(self._chunk(compressed, index, score, compressed_tokens, chunk_tokens))
                    current_tokens += compressed_tokens
                break

            logger.info(
                f"Compressed {len(chunks)} chunks ({sum(estimate_token_count(c) for c in chunks)} tokens) "
                f"to {len(results)} chunks ({current_tokens} tokens)"
            )
            return results

        except Exception as e:
            logger.error(f"Error compressing chunks: {e}")
            if not fallback_on_error:
                raise
            return self._passthrough(chunks)

    async def compress_text(self, query: str, text: str, max_tokens: int) -> str:
        """
        Compress one text to about max_tokens tokens.

        Text already within budget is returned unchanged. Otherwise the most
        relevant sentences are kept (in original order) while they fit; the
        result can overshoot only when the single best sentence is itself
        larger than the budget.
        """
        if not self.enabled or estimate_token_count(text) <= max_tokens:
            return text

        sentences = split_sentences(text)
        if len(sentences) <= 1:
            return text

        target_sentences = max(1, max_tokens // TOKENS_PER_SENTENCE)
        scores = await self._sentence_scores(query, sentences)
        ranked = sorted(range(len(sentences)), key=lambda i: scores[i], reverse=True)

        chosen: List[int] = []
        used = 0
        for i in ranked:
            if len(chosen) >= target_sentences:
                break
            tokens = estimate_token_count(sentences[i])
            if chosen and used + tokens > max_tokens:
                continue
            chosen.append(i)
            used += tokens

        return " ".join(sentences[i] for i in sorted(chosen))

    async def deduplicate_chunks(
        self,
        chunks: List[str],
        similarity_threshold: Optional[float] = None
    ) -> List[str]:
        """
        Drop chunks whose similarity to an earlier kept chunk exceeds the threshold.

        The first occurrence is kept. On embedding failure the input is
        returned unchanged.
        """
        if len(chunks) <= 1:
            return list(chunks)

        threshold = self.dedup_threshold if similarity_threshold is None else similarity_threshold

        try:
            embeddings = await self._embed_many(chunks)
        except Exception as e:
            logger.error(f"Error deduplicating chunks: {e}")
            return list(chunks)

        unique = [chunks[i] for i in self._unique_indices(embeddings, threshold)]
        logger.info(f"Deduplicated {len(chunks)} chunks to {len(unique)} unique chunks")
        return unique

    async def deduplicate_candidates(
        self,
        candidates: List[Dict[str, Any]],
        similarity_threshold: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """Candidate-level deduplication reusing stored embeddings where present."""
        if len(candidates) <= 1:
            return list(candidates)

        threshold = self.dedup_threshold if similarity_threshold is None else similarity_threshold
        embeddings = [c.get("embedding") for c in candidates]

        missing = [i for i, e in enumerate(embeddings) if not e]
        if missing:
            try:
                fresh = await self._embed_many([candidates[i].get("text", "") for i in missing])
                for i, embedding in zip(missing, fresh):
                    embeddings[i] = embedding
            except Exception as e:
                logger.warning(f"Could not embed {len(missing)} candidates for deduplication: {e}")

        return [candidates[i] for i in self._unique_indices(embeddings, threshold)]

    async def extract_relevant_sentences(
        self,
        query: str,
        text: str,
        max_sentences: int
    ) -> List[str]:
        """Top max_sentences sentences by relevance, in original order."""
        sentences = split_sentences(text)
        if len(sentences) <= max_sentences:
            return sentences

        logger.debug(f"Extracting {max_sentences} most relevant sentences from {len(sentences)} sentences")

        scores = await self._sentence_scores(query, sentences)
        top = sorted(range(len(sentences)), key=lambda i: scores[i], reverse=True)[:max_sentences]
        return [sentences[i] for i in sorted(top)]

    async def _sentence_scores(self, query: str, sentences: List[str]) -> List[float]:
        """Embedding similarity to the query, or keyword overlap when embedding fails."""
        try:
            return await self._relevance_scores(query, sentences, strict=True)
        except Exception as e:
            logger.warning(f"Sentence embedding failed, using keyword overlap: {e}")
            keywords = self._lexical.extract_keywords(query)
            return [self._lexical.score(keywords, {"text": s}) for s in sentences]

    async def _relevance_scores(self, query: str, texts: List[str], strict: bool = False) -> List[float]:
        try:
            vectors = await self._embed_many([query] + texts)
        except Exception as e:
            if strict:
                raise
            logger.warning(f"Relevance scoring unavailable: {e}")
            return [1.0] * len(texts)
        query_vector = vectors[0]
        return [cosine_similarity(query_vector, v) for v in vectors[1:]]

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        return await with_timeout(self.embedder.embed_batch(texts), self.provider_timeout, self.embedder.name)

    @staticmethod
    def _unique_indices(embeddings: List[Optional[List[float]]], threshold: float) -> List[int]:
        kept: List[int] = []
        kept_vectors: List[List[float]] = []
        for i, embedding in enumerate(embeddings):
            if not embedding:
                kept.append(i)
                continue
            if any(cosine_similarity(embedding, other) > threshold for other in kept_vectors):
                continue
            kept.append(i)
            kept_vectors.append(embedding)
        return kept

    @staticmethod
    def _chunk(content: str, index: int, score: float, tokens: int, original_tokens: int) -> Dict[str, Any]:
        return {
            "content": content,
            "original_index": index,
            "compression_ratio": (tokens / original_tokens) if original_tokens else 1.0,
            "relevance_score": score,
            "token_count": tokens,
        }

    def _passthrough(self, chunks: List[str]) -> List[Dict[str, Any]]:
        return [
            self._chunk(c, i, 1.0, estimate_token_count(c), estimate_token_count(c))
            for i, c in enumerate(chunks)
        ]
